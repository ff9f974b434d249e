"""rollcall: offline-first attendance capture with a durable sync queue."""

__version__ = "0.1.0"
