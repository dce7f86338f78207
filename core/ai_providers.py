# core/ai_providers.py
"""Uniform access to text generation, evaluation and embedding backends.

Adapters are plain classes that satisfy the :class:`TextGenerator` and/or
:class:`Embedder` protocols; there is no shared base class. Each adapter owns
its request shape, auth header and response unwrapping, and normalizes to
:class:`GenerationResult` / :class:`EmbeddingResult`. :class:`AIProviderClient`
dispatches by provider name and fails fast on names it does not know.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from config.settings import GatewaySettings
from core.exceptions import ProviderConfigurationError, ProviderError, ValidationError
from core.http_client_service import EmbeddingServiceClient, HTTPClientService
from core.text_processing_service import count_words
from models.ai_models import (
    DEFAULT_CRITERIA,
    BatchGenerationResult,
    BatchItemResult,
    EmbeddingResult,
    Evaluation,
    GenerationResult,
    neutral_evaluation,
)
from prompts.prompt_renderer import render_prompt
from utils.json_utils import safe_json_loads, truncate_for_log

logger = structlog.get_logger(__name__)

MAX_PROMPT_CHARS = 50_000
MAX_EVALUATION_CHARS = 20_000
MAX_EMBED_TEXT_CHARS = 8_000
MAX_EMBED_TEXTS = 100
MAX_BATCH_SIZE = 10
MAX_BATCH_PROMPT_CHARS = 10_000


@dataclass
class GenerationOptions:
    model: str | None = None
    temperature: float = 0.7
    max_tokens: int = 2000
    system_prompt: str | None = None

    @classmethod
    def from_dict(cls, options: dict[str, Any] | None) -> GenerationOptions:
        options = options or {}
        return cls(
            model=options.get("model"),
            temperature=float(options.get("temperature", 0.7)),
            max_tokens=int(options.get("maxTokens", options.get("max_tokens", 2000))),
            system_prompt=options.get("systemPrompt", options.get("system_prompt")),
        )


@runtime_checkable
class TextGenerator(Protocol):
    name: str
    default_model: str

    def is_configured(self) -> bool: ...

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult: ...


@runtime_checkable
class Embedder(Protocol):
    name: str
    default_model: str

    def is_configured(self) -> bool: ...

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingResult: ...


async def _post(http: HTTPClientService, provider: str, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
    try:
        response = await http.post_json(url, payload, headers=headers)
    except httpx.HTTPStatusError as e:
        raise ProviderError(
            f"{provider} API error: {e.response.status_code}",
            details={"provider": provider, "status": e.response.status_code, "body": truncate_for_log(e.response.text, 500)},
        ) from e
    except httpx.HTTPError as e:
        raise ProviderError(f"{provider} request failed: {e}", details={"provider": provider}) from e
    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(f"{provider} returned a non-JSON response", details={"provider": provider}) from e


class OpenAICompatibleProvider:
    """Chat-completions style API (OpenAI, DeepSeek, OpenRouter)."""

    def __init__(
        self,
        name: str,
        http: HTTPClientService,
        api_base: str,
        api_key: str,
        default_model: str,
        embedding_model: str | None = None,
        extra_headers: dict[str, str] | None = None,
    ):
        self.name = name
        self.default_model = default_model
        self.embedding_model = embedding_model
        self._http = http
        self._api_base = api_base.rstrip("/")
        self._api_key = api_key
        self._extra_headers = extra_headers or {}

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json", **self._extra_headers}

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        messages = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})
        model = options.model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        data = await _post(self._http, self.name, f"{self._api_base}/chat/completions", payload, self._headers())
        try:
            choice = data["choices"][0]
            content = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{self.name} response missing choices", details={"provider": self.name}) from e
        return GenerationResult(
            content=content,
            usage=data.get("usage") or {},
            finish_reason=choice.get("finish_reason"),
            provider=self.name,
            model=data.get("model", model),
        )

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingResult:
        model = model or self.embedding_model
        if not model:
            raise ProviderConfigurationError(f"Provider '{self.name}' has no embedding model configured")
        data = await _post(
            self._http,
            self.name,
            f"{self._api_base}/embeddings",
            {"model": model, "input": texts},
            self._headers(),
        )
        try:
            embeddings = [item["embedding"] for item in sorted(data["data"], key=lambda d: d.get("index", 0))]
        except (KeyError, TypeError) as e:
            raise ProviderError(f"{self.name} embedding response malformed", details={"provider": self.name}) from e
        return EmbeddingResult(
            embeddings=embeddings,
            dimensions=len(embeddings[0]) if embeddings else 0,
            provider=self.name,
            model=model,
        )


class GeminiProvider:
    def __init__(self, http: HTTPClientService, api_base: str, api_key: str, default_model: str):
        self.name = "gemini"
        self.default_model = default_model
        self._http = http
        self._api_base = api_base.rstrip("/")
        self._api_key = api_key

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        model = options.model or self.default_model
        text = f"{options.system_prompt}\n\n{prompt}" if options.system_prompt else prompt
        payload = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {"temperature": options.temperature, "maxOutputTokens": options.max_tokens},
        }
        url = f"{self._api_base}/models/{model}:generateContent?key={self._api_key}"
        data = await _post(self._http, self.name, url, payload, {"Content-Type": "application/json"})
        try:
            candidate = data["candidates"][0]
            content = candidate["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("gemini response missing candidates", details={"provider": self.name}) from e
        return GenerationResult(
            content=content,
            usage=data.get("usageMetadata") or {},
            finish_reason=candidate.get("finishReason"),
            provider=self.name,
            model=model,
        )


class AnthropicProvider:
    def __init__(self, http: HTTPClientService, api_base: str, api_key: str, default_model: str, api_version: str):
        self.name = "anthropic"
        self.default_model = default_model
        self._http = http
        self._api_base = api_base.rstrip("/")
        self._api_key = api_key
        self._api_version = api_version

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        model = options.model or self.default_model
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if options.system_prompt:
            payload["system"] = options.system_prompt
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": self._api_version,
            "Content-Type": "application/json",
        }
        data = await _post(self._http, self.name, f"{self._api_base}/messages", payload, headers)
        try:
            content = "".join(block.get("text", "") for block in data["content"] if block.get("type", "text") == "text")
        except (KeyError, TypeError, AttributeError) as e:
            raise ProviderError("anthropic response missing content", details={"provider": self.name}) from e
        return GenerationResult(
            content=content,
            usage=data.get("usage") or {},
            finish_reason=data.get("stop_reason"),
            provider=self.name,
            model=data.get("model", model),
        )


class EmbeddingServiceProvider:
    """Self-hosted embedding service (``POST /embed``), one text per request."""

    def __init__(self, client: EmbeddingServiceClient):
        self.name = "custom"
        self.default_model = client.default_model
        self._client = client

    def is_configured(self) -> bool:
        return bool(self._client.base_url)

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingResult:
        try:
            embeddings = await asyncio.gather(*(self._client.get_embedding(text, model) for text in texts))
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"custom embedding service failed: {e}", details={"provider": self.name}) from e
        return EmbeddingResult(
            embeddings=list(embeddings),
            dimensions=len(embeddings[0]) if embeddings else 0,
            provider=self.name,
            model=model or self.default_model,
        )


def build_providers(
    settings: GatewaySettings,
    http: HTTPClientService,
    embedding_client: EmbeddingServiceClient,
) -> tuple[dict[str, TextGenerator], dict[str, Embedder]]:
    openai = OpenAICompatibleProvider(
        "openai",
        http,
        settings.OPENAI_API_BASE,
        settings.OPENAI_API_KEY,
        settings.OPENAI_MODEL,
        embedding_model=settings.OPENAI_EMBEDDING_MODEL,
    )
    generators: dict[str, TextGenerator] = {
        "openai": openai,
        "gemini": GeminiProvider(http, settings.GEMINI_API_BASE, settings.GEMINI_API_KEY, settings.GEMINI_MODEL),
        "anthropic": AnthropicProvider(
            http,
            settings.ANTHROPIC_API_BASE,
            settings.ANTHROPIC_API_KEY,
            settings.ANTHROPIC_MODEL,
            settings.ANTHROPIC_VERSION,
        ),
        "deepseek": OpenAICompatibleProvider(
            "deepseek", http, settings.DEEPSEEK_API_BASE, settings.DEEPSEEK_API_KEY, settings.DEEPSEEK_MODEL
        ),
        "openrouter": OpenAICompatibleProvider(
            "openrouter",
            http,
            settings.OPENROUTER_API_BASE,
            settings.OPENROUTER_API_KEY,
            settings.OPENROUTER_MODEL,
            extra_headers={"X-Title": "novelgate"},
        ),
    }
    embedders: dict[str, Embedder] = {
        "openai": openai,
        "custom": EmbeddingServiceProvider(embedding_client),
    }
    return generators, embedders


class AIProviderClient:
    """Dispatch generate/evaluate/embed calls to named providers."""

    def __init__(
        self,
        generators: dict[str, TextGenerator],
        embedders: dict[str, Embedder],
        default_provider: str = "openai",
        evaluation_provider: str | None = None,
        default_embedding_provider: str = "custom",
        evaluation_temperature: float = 0.2,
    ):
        self.generators = generators
        self.embedders = embedders
        self.default_provider = default_provider
        self.evaluation_provider = evaluation_provider or default_provider
        self.default_embedding_provider = default_embedding_provider
        self.evaluation_temperature = evaluation_temperature

    def _generator(self, provider_name: str | None) -> TextGenerator:
        name = (provider_name or self.default_provider).lower()
        generator = self.generators.get(name)
        if generator is None:
            if name in self.embedders:
                raise ProviderConfigurationError(f"Provider '{name}' does not support text generation")
            raise ProviderConfigurationError(
                f"Unknown AI provider '{name}'",
                details={"available": sorted(self.generators)},
            )
        return generator

    def _embedder(self, provider_name: str | None) -> Embedder:
        name = (provider_name or self.default_embedding_provider).lower()
        embedder = self.embedders.get(name)
        if embedder is None:
            if name in self.generators:
                raise ProviderConfigurationError(f"Provider '{name}' does not support embeddings")
            raise ProviderConfigurationError(
                f"Unknown embedding provider '{name}'",
                details={"available": sorted(self.embedders)},
            )
        return embedder

    async def generate(
        self,
        prompt: str,
        provider_name: str | None = None,
        options: dict[str, Any] | GenerationOptions | None = None,
    ) -> GenerationResult:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Prompt must be a non-empty string")
        if len(prompt) > MAX_PROMPT_CHARS:
            raise ValidationError(f"Prompt exceeds {MAX_PROMPT_CHARS} characters")
        generator = self._generator(provider_name)
        opts = options if isinstance(options, GenerationOptions) else GenerationOptions.from_dict(options)
        logger.debug(f"Generating with {generator.name}", model=opts.model or generator.default_model, prompt_chars=len(prompt))
        return await generator.generate(prompt, opts)

    async def evaluate(
        self,
        text: str,
        criteria: list[str] | None = None,
        provider_name: str | None = None,
    ) -> Evaluation:
        """Score ``text`` per criterion.

        A reply without a parseable JSON block yields a neutral evaluation flagged
        ``is_fallback``; provider transport errors still propagate.
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Text to evaluate must be a non-empty string")
        if len(text) > MAX_EVALUATION_CHARS:
            raise ValidationError(f"Text to evaluate exceeds {MAX_EVALUATION_CHARS} characters")
        criteria = [c for c in (criteria or DEFAULT_CRITERIA) if isinstance(c, str) and c.strip()] or DEFAULT_CRITERIA

        prompt = render_prompt("ai_models/evaluation.j2", {"text": text, "criteria": criteria})
        result = await self.generate(
            prompt,
            provider_name or self.evaluation_provider,
            GenerationOptions(temperature=self.evaluation_temperature, max_tokens=1000),
        )

        parsed = safe_json_loads(result.content, expected=dict)
        if parsed is None:
            logger.warning(
                "Evaluator reply had no parseable JSON; using neutral evaluation",
                provider=result.provider,
                reply=truncate_for_log(result.content, 200),
            )
            return neutral_evaluation(text, criteria)
        try:
            evaluation = Evaluation.model_validate(parsed)
        except ValueError as e:
            logger.warning(f"Evaluator JSON did not match the expected shape: {e}", provider=result.provider)
            return neutral_evaluation(text, criteria)
        if not evaluation.word_count:
            evaluation.word_count = count_words(text)
        return evaluation

    async def embed(
        self,
        texts: str | list[str],
        provider_name: str | None = None,
        model: str | None = None,
    ) -> EmbeddingResult:
        items = [texts] if isinstance(texts, str) else list(texts)
        if not items:
            raise ValidationError("At least one text is required for embedding")
        if len(items) > MAX_EMBED_TEXTS:
            raise ValidationError(f"At most {MAX_EMBED_TEXTS} texts can be embedded per request")
        for item in items:
            if not isinstance(item, str) or not item.strip() or len(item) > MAX_EMBED_TEXT_CHARS:
                raise ValidationError(f"Each text must be a non-empty string of at most {MAX_EMBED_TEXT_CHARS} characters")
        return await self._embedder(provider_name).embed(items, model)

    async def batch_generate(
        self,
        prompts: list[str],
        provider_name: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> BatchGenerationResult:
        """Generate for each prompt independently; one failure never aborts the rest."""
        if not isinstance(prompts, list) or not prompts:
            raise ValidationError("Prompts must be a non-empty array")
        if len(prompts) > MAX_BATCH_SIZE:
            raise ValidationError(f"Maximum {MAX_BATCH_SIZE} prompts allowed per batch")
        for prompt in prompts:
            if not isinstance(prompt, str) or not prompt.strip() or len(prompt) > MAX_BATCH_PROMPT_CHARS:
                raise ValidationError(f"Each prompt must be a string with max {MAX_BATCH_PROMPT_CHARS:,} characters")
        self._generator(provider_name)
        opts = GenerationOptions.from_dict(options)

        outcomes = await asyncio.gather(
            *(self.generate(prompt, provider_name, opts) for prompt in prompts),
            return_exceptions=True,
        )
        results = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning(f"Batch item {index} failed: {outcome}")
                results.append(BatchItemResult(index=index, success=False, error=str(outcome)))
            else:
                results.append(
                    BatchItemResult(
                        index=index,
                        success=True,
                        content=outcome.content,
                        usage=outcome.usage,
                        word_count=count_words(outcome.content),
                    )
                )
        successful = [r for r in results if r.success]
        return BatchGenerationResult(
            results=results,
            summary={
                "total": len(prompts),
                "successful": len(successful),
                "failed": len(results) - len(successful),
                "totalWords": sum(r.word_count or 0 for r in successful),
            },
        )

    def available_models(self) -> list[dict[str, Any]]:
        names = sorted(set(self.generators) | set(self.embedders))
        models = []
        for name in names:
            capabilities = []
            if name in self.generators:
                capabilities += ["generate", "evaluate"]
            if name in self.embedders:
                capabilities.append("embed")
            provider = self.generators.get(name) or self.embedders[name]
            models.append(
                {
                    "provider": name,
                    "defaultModel": provider.default_model,
                    "capabilities": capabilities,
                    "configured": provider.is_configured(),
                }
            )
        return models

    def health_check(self) -> dict[str, Any]:
        configured = [m["provider"] for m in self.available_models() if m["configured"]]
        return {
            "status": "healthy" if configured else "degraded",
            "configuredProviders": configured,
            "defaultProvider": self.default_provider,
        }
