"""Workbench: an autonomous file-workspace agent driven by a generative model."""

__version__ = "0.1.0"

__all__ = ["__version__"]
