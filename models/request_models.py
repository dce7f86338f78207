# models/request_models.py
"""Define the transient request shapes handled by the orchestrator."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field

from .novel_models import CamelModel

ChunkingStrategy = Literal["semantic", "character", "token"]


class GenerationRequest(CamelModel):
    """One chapter-generation run; never persisted."""

    novel_id: str
    chapter_number: int
    focus_elements: str
    style_preference: str
    mood: str
    callback_url: str
    request_id: str | None = None
    timestamp: str | None = None
    provider: str | None = None


class UploadRequest(CamelModel):
    """Document ingestion: exactly one of pre-chunked data, raw text or a remote file."""

    novel_id: str
    content: str | None = None
    file_url: str | None = None
    chunks: list[str] | None = None
    chunking_strategy: ChunkingStrategy = "semantic"
    chunk_size: int = Field(1000, ge=50, le=20000)
    overlap: int = Field(200, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    request_id: str | None = None
    callback_url: str | None = None

    @property
    def mode(self) -> str:
        if self.chunks:
            return "chunks"
        if self.content:
            return "content"
        return "fileUrl"


class CallbackPayload(CamelModel):
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    request_id: str | None = None
    timestamp: str
