# utils/__init__.py
"""General utility functions for StoryForge."""

from .logging import setup_logging

__all__ = ["setup_logging"]
