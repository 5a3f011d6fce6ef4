"""Utility helpers for continuum."""

from .locks import KeyedLock

__all__ = ["KeyedLock"]
