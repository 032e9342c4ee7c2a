"""HTTP surface for chat callbacks."""

from .webhook import create_app

__all__ = ["create_app"]
