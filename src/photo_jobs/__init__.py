"""Background job engine for a photo-management application."""

__version__ = "0.1.0"
