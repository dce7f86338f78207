# models/ai_models.py
"""Normalized results shared by every AI provider adapter."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, field_validator, model_validator

from .novel_models import CamelModel

DEFAULT_CRITERIA = ["coherence", "creativity", "grammar", "style", "engagement"]
NEUTRAL_SCORE = 5.0


class GenerationResult(CamelModel):
    content: str
    usage: dict[str, Any] = Field(default_factory=dict)
    finish_reason: str | None = None
    provider: str
    model: str | None = None


class EvaluationFeedback(CamelModel):
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    summary: str = ""


class Evaluation(CamelModel):
    overall_score: float = NEUTRAL_SCORE
    scores: dict[str, float] = Field(default_factory=dict)
    feedback: EvaluationFeedback = Field(default_factory=EvaluationFeedback)
    word_count: int = 0
    readability_level: Literal["beginner", "intermediate", "advanced"] = "intermediate"
    is_fallback: bool = False

    @model_validator(mode="before")
    @classmethod
    def _derive_overall(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "overallScore" in data or "overall_score" in data:
            return data
        scores = data.get("scores")
        if not isinstance(scores, dict):
            return data
        numeric = [_clamp_score(v) for v in scores.values() if isinstance(v, (int, float)) and not isinstance(v, bool)]
        if not numeric:
            return data
        return {**data, "overallScore": round(sum(numeric) / len(numeric), 2)}

    @field_validator("overall_score", mode="before")
    @classmethod
    def _clamp_overall(cls, value: Any) -> float:
        return _clamp_score(value)

    @field_validator("scores", mode="before")
    @classmethod
    def _clamp_scores(cls, value: Any) -> dict[str, float]:
        if not isinstance(value, dict):
            return {}
        return {str(k): _clamp_score(v) for k, v in value.items()}

    @field_validator("readability_level", mode="before")
    @classmethod
    def _normalize_readability(cls, value: Any) -> str:
        if isinstance(value, str) and value.lower() in {"beginner", "intermediate", "advanced"}:
            return value.lower()
        return "intermediate"


def _clamp_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return NEUTRAL_SCORE
    return min(10.0, max(1.0, score))


def neutral_evaluation(text: str, criteria: list[str]) -> Evaluation:
    """Default evaluation used when the evaluator reply cannot be parsed."""
    return Evaluation(
        overall_score=NEUTRAL_SCORE,
        scores={criterion: NEUTRAL_SCORE for criterion in criteria},
        feedback=EvaluationFeedback(
            strengths=["Text was generated successfully"],
            improvements=["Automated evaluation was unavailable; review manually"],
            summary="Evaluation could not be parsed; neutral scores assigned.",
        ),
        word_count=len(text.split()),
        readability_level="intermediate",
        is_fallback=True,
    )


class EmbeddingResult(CamelModel):
    embeddings: list[list[float]]
    dimensions: int
    provider: str
    model: str | None = None


class BatchItemResult(CamelModel):
    index: int
    success: bool
    content: str | None = None
    usage: dict[str, Any] | None = None
    word_count: int | None = None
    error: str | None = None


class BatchGenerationResult(CamelModel):
    results: list[BatchItemResult]
    summary: dict[str, int]
