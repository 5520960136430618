"""Realtime fan-out to live connections."""

from .registry import ConnectionRegistry

__all__ = ["ConnectionRegistry"]
