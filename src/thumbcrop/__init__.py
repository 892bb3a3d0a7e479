"""Subject-aware square thumbnails for product photos."""

__version__ = "1.0.0"
