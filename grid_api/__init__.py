"""Registry-driven dynamic grid data service."""

__version__ = "1.0.0"
