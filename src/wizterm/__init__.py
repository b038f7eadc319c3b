"""wizterm — terminal sessions that survive restarts."""

__version__ = "0.1.0"
