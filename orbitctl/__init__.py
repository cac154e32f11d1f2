"""Client-side service and project tracking for Orbit environments."""

__version__ = "1.0.0"
