import json

import httpx
import pytest

from core.ai_providers import (
    AIProviderClient,
    AnthropicProvider,
    Embedder,
    GeminiProvider,
    GenerationOptions,
    OpenAICompatibleProvider,
    TextGenerator,
)
from core.exceptions import ProviderConfigurationError, ProviderError, ValidationError
from models.ai_models import DEFAULT_CRITERIA, Evaluation
from tests.fakes.fake_http import RecordingTransport, make_http_service
from tests.fakes.fake_providers import FailingGenerator, FakeEmbedder, ScriptedGenerator, evaluation_reply


def _client(*generators, embedders=None) -> AIProviderClient:
    return AIProviderClient(
        {g.name: g for g in generators},
        embedders if embedders is not None else {"custom": FakeEmbedder()},
        default_provider=generators[0].name,
        evaluation_provider=generators[0].name,
    )


class TestProtocols:
    def test_fakes_satisfy_protocols(self):
        assert isinstance(ScriptedGenerator(), TextGenerator)
        assert isinstance(FakeEmbedder(), Embedder)


@pytest.mark.asyncio
class TestDispatch:
    async def test_unknown_provider_fails_fast(self):
        client = _client(ScriptedGenerator())
        with pytest.raises(ProviderConfigurationError, match="Unknown AI provider"):
            await client.generate("hello", "nonexistent")

    async def test_embedding_only_provider_cannot_generate(self):
        client = _client(ScriptedGenerator())
        with pytest.raises(ProviderConfigurationError, match="does not support text generation"):
            await client.generate("hello", "custom")

    async def test_generation_only_provider_cannot_embed(self):
        client = _client(ScriptedGenerator())
        with pytest.raises(ProviderConfigurationError, match="does not support embeddings"):
            await client.embed("hello", "fake")

    async def test_prompt_limits(self):
        client = _client(ScriptedGenerator())
        with pytest.raises(ValidationError):
            await client.generate("   ")
        with pytest.raises(ValidationError):
            await client.generate("x" * 50_001)

    async def test_provider_names_are_case_insensitive(self):
        generator = ScriptedGenerator(drafts=["ok"])
        result = await _client(generator).generate("hello", "FAKE")
        assert result.content == "ok"

    async def test_embed_validates_inputs(self):
        client = _client(ScriptedGenerator())
        with pytest.raises(ValidationError):
            await client.embed([])
        with pytest.raises(ValidationError):
            await client.embed(["ok", "x" * 8_001])
        result = await client.embed(["alpha", "beta"])
        assert len(result.embeddings) == 2
        assert result.dimensions == 4


@pytest.mark.asyncio
class TestEvaluate:
    async def test_parses_fenced_json_and_clamps_scores(self):
        reply = "Here you go:\n```json\n" + json.dumps({"overallScore": 14, "scores": {"style": -2}}) + "\n```"
        client = _client(ScriptedGenerator(evaluations=[reply]))

        evaluation = await client.evaluate("A short tale of two cities.")

        assert evaluation.overall_score == 10.0
        assert evaluation.scores == {"style": 1.0}
        assert evaluation.word_count == 6
        assert evaluation.is_fallback is False

    async def test_overall_score_defaults_to_mean_of_criteria(self):
        reply = json.dumps({"scores": {"pacing": 6, "voice": 9, "grammar": "n/a"}})
        client = _client(ScriptedGenerator(evaluations=[reply]))

        evaluation = await client.evaluate("Some text here", criteria=["pacing", "voice", "grammar"])

        assert evaluation.overall_score == 7.5
        assert evaluation.scores["grammar"] == 5.0
        assert evaluation.is_fallback is False

    async def test_malformed_reply_yields_neutral_fallback(self):
        client = _client(ScriptedGenerator(evaluations=["I liked it a lot, solid 8/10"]))

        evaluation = await client.evaluate("Some text here", criteria=["pacing", "voice"])

        assert evaluation.is_fallback is True
        assert evaluation.overall_score == 5.0
        assert evaluation.scores == {"pacing": 5.0, "voice": 5.0}
        assert evaluation.readability_level == "intermediate"

    async def test_default_criteria_are_rendered_into_prompt(self):
        generator = ScriptedGenerator(evaluations=[evaluation_reply(7.5)])
        evaluation = await _client(generator).evaluate("Text")

        assert isinstance(evaluation, Evaluation)
        assert evaluation.readability_level == "advanced"
        assert ", ".join(DEFAULT_CRITERIA) in generator.prompts[0]
        assert generator.options[0].temperature == 0.2

    async def test_transport_errors_propagate(self):
        client = _client(FailingGenerator("fake"))
        with pytest.raises(ProviderError):
            await client.evaluate("Text")

    async def test_oversized_text_rejected(self):
        with pytest.raises(ValidationError):
            await _client(ScriptedGenerator()).evaluate("x" * 20_001)


@pytest.mark.asyncio
class TestBatchGenerate:
    async def test_one_failure_does_not_abort_the_batch(self):
        generator = FailingGenerator("fake", fail_on=lambda prompt: "second" in prompt)
        client = _client(generator)

        result = await client.batch_generate(["first prompt", "second prompt", "third prompt"])

        assert [item.success for item in result.results] == [True, False, True]
        assert [item.index for item in result.results] == [0, 1, 2]
        assert "fake is down" in result.results[1].error
        assert result.summary["total"] == 3
        assert result.summary["successful"] == 2
        assert result.summary["failed"] == 1
        assert result.summary["totalWords"] > 0

    async def test_batch_limits(self):
        client = _client(ScriptedGenerator())
        with pytest.raises(ValidationError):
            await client.batch_generate([])
        with pytest.raises(ValidationError):
            await client.batch_generate(["p"] * 11)
        with pytest.raises(ValidationError):
            await client.batch_generate(["ok", ""])

    async def test_unknown_provider_rejected_before_any_call(self):
        generator = ScriptedGenerator()
        client = _client(generator)
        with pytest.raises(ProviderConfigurationError):
            await client.batch_generate(["a"], provider_name="nope")
        assert generator.prompts == []


@pytest.mark.asyncio
class TestAdapters:
    async def test_openai_compatible_request_and_normalization(self):
        transport = RecordingTransport()
        transport.route(
            "https://api.test/v1/chat/completions",
            lambda request: httpx.Response(
                200,
                json={
                    "model": "gpt-test",
                    "choices": [{"message": {"content": "Once upon"}, "finish_reason": "stop"}],
                    "usage": {"total_tokens": 12},
                },
            ),
        )
        http = make_http_service(transport)
        provider = OpenAICompatibleProvider("openai", http, "https://api.test/v1/", "sk-test", "gpt-test")

        result = await provider.generate("Tell me", GenerationOptions(system_prompt="Be brief", max_tokens=50))

        (request,) = transport.requests
        body = json.loads(request.content)
        assert request.headers["authorization"] == "Bearer sk-test"
        assert body["messages"][0] == {"role": "system", "content": "Be brief"}
        assert body["max_tokens"] == 50
        assert result.content == "Once upon"
        assert result.finish_reason == "stop"
        assert result.provider == "openai"
        await http.aclose()

    async def test_openai_embeddings_sorted_by_index(self):
        http = make_http_service(
            lambda request: httpx.Response(
                200, json={"data": [{"index": 1, "embedding": [0.2]}, {"index": 0, "embedding": [0.1]}]}
            )
        )
        provider = OpenAICompatibleProvider("openai", http, "https://api.test/v1", "sk", "m", embedding_model="e")

        result = await provider.embed(["a", "b"])

        assert result.embeddings == [[0.1], [0.2]]
        assert result.dimensions == 1
        await http.aclose()

    async def test_gemini_normalization(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "Hello"}]}, "finishReason": "STOP"}],
                    "usageMetadata": {"totalTokenCount": 3},
                },
            )

        http = make_http_service(handler)
        result = await GeminiProvider(http, "https://gem.test/v1beta", "g-key", "gemini-pro").generate(
            "Hi", GenerationOptions()
        )

        assert captured["url"].startswith("https://gem.test/v1beta/models/gemini-pro:generateContent")
        assert result.content == "Hello"
        assert result.finish_reason == "STOP"
        await http.aclose()

    async def test_anthropic_joins_text_blocks(self):
        http = make_http_service(
            lambda request: httpx.Response(
                200,
                json={"content": [{"type": "text", "text": "A"}, {"type": "text", "text": "B"}], "stop_reason": "end_turn"},
            )
        )
        provider = AnthropicProvider(http, "https://anth.test/v1", "a-key", "claude", "2023-06-01")

        result = await provider.generate("Hi", GenerationOptions())

        assert result.content == "AB"
        assert result.finish_reason == "end_turn"
        await http.aclose()

    async def test_provider_http_errors_become_provider_errors(self):
        http = make_http_service(lambda request: httpx.Response(401, json={"error": "bad key"}))
        provider = OpenAICompatibleProvider("openai", http, "https://api.test/v1", "sk", "m")

        with pytest.raises(ProviderError) as exc_info:
            await provider.generate("Hi", GenerationOptions())

        assert exc_info.value.details["status"] == 401
        await http.aclose()

    async def test_malformed_provider_body_is_a_provider_error(self):
        http = make_http_service(lambda request: httpx.Response(200, json={"choices": []}))
        provider = OpenAICompatibleProvider("openai", http, "https://api.test/v1", "sk", "m")

        with pytest.raises(ProviderError, match="missing choices"):
            await provider.generate("Hi", GenerationOptions())
        await http.aclose()
