"""Utility helpers for the receiver."""

from .logging import configure_logging

__all__ = ["configure_logging"]
