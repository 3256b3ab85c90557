"""rlexec - interactive line capture and relay."""

__version__ = "0.1.0"

__all__ = ["__version__"]
