# models/context_models.py
"""Aggregated context handed to chapter prompt building."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from core.cache_store import utc_now_iso

from .novel_models import CamelModel


class GenerationContext(CamelModel):
    """Every field is always present; missing data is an empty list or mapping."""

    novel_id: str
    chapter_number: int
    novel: dict[str, Any] = Field(default_factory=dict)
    characters: list[dict[str, Any]] = Field(default_factory=list)
    locations: list[dict[str, Any]] = Field(default_factory=list)
    world_state: dict[str, Any] = Field(default_factory=dict)
    previous_chapter: dict[str, Any] = Field(default_factory=dict)
    similar_content: list[dict[str, Any]] = Field(default_factory=list)
    focus_elements: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)
