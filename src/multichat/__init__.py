"""Multi-model chat client with side-by-side comparison streaming."""

__version__ = "0.1.0"

__all__ = ["__version__"]
