# models/novel_models.py
"""Define the novel entities stored by the graph, vector and cache layers.

Wire and storage shapes use camelCase keys (``novelId``, ``wordCount``); the
Python attributes are snake_case. Dump with ``by_alias=True`` before handing a
model to a store or an HTTP response.
"""

from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

NovelStatus = Literal["active", "completed", "paused"]
ChapterStatus = Literal["draft", "published", "archived"]
LocationType = Literal["city", "country", "region", "landmark", "building"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _new_id() -> str:
    return str(uuid.uuid4())


class NovelInput(CamelModel):
    id: str = Field(default_factory=_new_id, min_length=1)
    title: str = Field(..., min_length=1)
    description: str = ""
    genre: str = "Fantasy"
    author: str = "Unknown"
    status: NovelStatus = "active"


class CharacterInput(CamelModel):
    """A character belonging to one novel; list fields keep their input order."""

    id: str = Field(default_factory=_new_id, min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    traits: list[str] = Field(default_factory=list)
    motivations: list[str] = Field(default_factory=list)
    powers: list[str] = Field(default_factory=list)
    fears: list[str] = Field(default_factory=list)
    hidden_desires: list[str] = Field(default_factory=list)
    origin: dict[str, Any] = Field(default_factory=dict)
    affiliations: list[str] = Field(default_factory=list)
    trivia: list[str] = Field(default_factory=list)


class LocationInput(CamelModel):
    id: str = Field(default_factory=_new_id, min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    geography: str = ""
    culture: str = ""
    type: LocationType = "city"


class ChapterInput(CamelModel):
    number: int = Field(..., ge=1)
    title: str = ""
    content: str = ""
    summary: str = ""
    status: ChapterStatus = "draft"
    focus_elements: str = ""
    mood: str = "neutral"
    style_preference: str = "default"

    @field_validator("number", mode="before")
    @classmethod
    def _reject_bool(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("chapter number must be an integer")
        return value

    @property
    def word_count(self) -> int:
        # Character length of the content, as stored on the chapter node.
        return len(self.content)

    def resolved_title(self) -> str:
        return self.title or f"Chapter {self.number}"
