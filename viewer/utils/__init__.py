"""Utility helpers for the viewer."""

from .logging import configure_logging

__all__ = ["configure_logging"]
