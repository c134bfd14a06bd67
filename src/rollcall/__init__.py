"""rollcall: a minimal in-memory service registry with an HTTP API."""

__version__ = '0.1.0'
