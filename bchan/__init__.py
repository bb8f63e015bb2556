"""Anonymous /b/ imageboard API."""

__version__ = "1.0.0"
