"""
Office Conversion Service package.

Prepares the environment of an office conversion engine (fonts, themes,
conversion cache) and exposes a FastAPI application that converts uploaded
documents between office formats.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
