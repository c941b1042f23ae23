"""Board and port selection that follows attached devices."""

__version__ = "0.1.0"
