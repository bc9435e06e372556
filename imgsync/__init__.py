"""Local product image cache and synchronization engine."""

__version__ = "0.1.0"
