from wizterm.events.wire import EventType, Wire, WireEvent

__all__ = ["EventType", "Wire", "WireEvent"]
