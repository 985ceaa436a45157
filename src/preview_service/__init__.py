"""
Document Preview Service package.

This module provides a FastAPI application that stores office documents,
hands them to an ONLYOFFICE Document Server for editing, and keeps a cached
PDF preview of each one via the Document Server conversion API.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
