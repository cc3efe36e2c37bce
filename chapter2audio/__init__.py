"""chapter2audio - narrated audio generation for book chapters."""

__version__ = "0.1.0"
