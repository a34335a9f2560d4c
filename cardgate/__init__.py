"""
Card-based physical-access service.

This package provides a key-value storage abstraction over file, Redis and
MongoDB backends plus the card verification engine, served by FastAPI.
"""

__version__ = "0.1.0"
