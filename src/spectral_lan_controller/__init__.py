"""Core package for the Spectral LAN Controller - room-based spectral control of networked LED fixtures."""

__all__ = [
    "api",
    "config",
    "db",
    "errors",
    "health",
    "importer",
    "link",
    "logging",
    "metrics",
    "models",
    "repair",
    "rooms",
    "routines",
    "session",
    "spectral",
    "state",
    "store",
    "transport",
]
__version__ = "1.0.0"
