# utils/__init__.py
"""General utility functions for the novel gateway."""

from .json_utils import extract_json_from_text, safe_json_loads, truncate_for_log

__all__ = ["extract_json_from_text", "safe_json_loads", "truncate_for_log"]
