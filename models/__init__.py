"""Pydantic models shared by the stores, the orchestrator and the HTTP layer."""

from .ai_models import (
    DEFAULT_CRITERIA,
    BatchGenerationResult,
    BatchItemResult,
    EmbeddingResult,
    Evaluation,
    EvaluationFeedback,
    GenerationResult,
    neutral_evaluation,
)
from .context_models import GenerationContext
from .novel_models import CharacterInput, ChapterInput, LocationInput, NovelInput
from .request_models import CallbackPayload, GenerationRequest, UploadRequest

__all__ = [
    "DEFAULT_CRITERIA",
    "BatchGenerationResult",
    "BatchItemResult",
    "CallbackPayload",
    "ChapterInput",
    "CharacterInput",
    "EmbeddingResult",
    "Evaluation",
    "EvaluationFeedback",
    "GenerationContext",
    "GenerationRequest",
    "GenerationResult",
    "LocationInput",
    "NovelInput",
    "UploadRequest",
    "neutral_evaluation",
]
