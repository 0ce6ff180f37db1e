"""commit-smith: pre-flight pipeline with AI-assisted repair and safe dry runs."""

__all__ = ["__version__"]

__version__ = "0.1.0"
