"""FastAPI surface for the novel gateway."""

from .app import create_app as create_app

__all__ = ["create_app"]
