"""Provider integration and rate-resolution engine."""

__version__ = "1.0.0"
