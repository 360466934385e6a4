"""Pull model files from storage and broker load/unload requests to a model runtime."""

__version__ = "0.1.0"
__all__ = ["__version__"]