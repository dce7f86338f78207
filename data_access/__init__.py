# data_access/__init__.py
"""Graph persistence for novels, characters, locations, chapters and world state."""

from .graph_store import GraphStore as GraphStore

__all__ = ["GraphStore"]
