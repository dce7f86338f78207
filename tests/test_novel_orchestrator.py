import asyncio
import json

import httpx
import pytest

from core.ai_providers import AIProviderClient
from core.exceptions import DelegationError, GenerationError, NotFoundError, RequestValidationError
from models.novel_models import CharacterInput, NovelInput
from orchestration.callbacks import SIGNATURE_HEADER, TIMESTAMP_HEADER, CallbackSender, verify_signature
from orchestration.novel_orchestrator import (
    NovelOrchestrator,
    extract_title,
    validate_generation_request,
    validate_upload_request,
)
from orchestration.workflow_client import WorkflowClient
from tests.fakes.fake_http import RecordingTransport, make_http_service
from tests.fakes.fake_providers import FakeEmbedder, ScriptedGenerator, evaluation_reply
from tests.fakes.fake_settings import make_settings

NOVEL_ID = "novel-42"
CALLBACK_URL = "http://client.test/hooks/novel"
WORKFLOW_URL = "http://workflow.test/webhook/generate"
UPLOAD_URL = "http://workflow.test/webhook/upload"
FILE_URL = "http://files.test/manuscript.txt"


def generation_body(**overrides):
    body = {
        "novelId": NOVEL_ID,
        "chapterNumber": 1,
        "focusElements": "the storm at sea",
        "stylePreference": "literary",
        "mood": "tense",
        "callbackUrl": CALLBACK_URL,
        "requestId": "req-1",
    }
    body.update(overrides)
    return body


async def eventually(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def transport() -> RecordingTransport:
    transport = RecordingTransport()
    transport.route(CALLBACK_URL, lambda request: httpx.Response(200, json={"ok": True}))
    return transport


@pytest.fixture
async def http(transport):
    service = make_http_service(transport)
    yield service
    await service.aclose()


def build_orchestrator(settings, memory, ai_client, http) -> NovelOrchestrator:
    return NovelOrchestrator(
        settings,
        memory,
        ai_client,
        CallbackSender(http, settings.CALLBACK_SECRET),
        WorkflowClient(http, settings.WORKFLOW_GENERATION_URL, settings.WORKFLOW_UPLOAD_URL),
        http,
    )


@pytest.fixture
def orchestrator(settings, memory, ai_client, http) -> NovelOrchestrator:
    return build_orchestrator(settings, memory, ai_client, http)


async def seed(memory) -> None:
    await (await memory.create_novel(NovelInput(id=NOVEL_ID, title="Salt and Iron"))).wait(timeout=2)
    await (await memory.add_character(NOVEL_ID, CharacterInput(id="c-1", name="Mara"))).wait(timeout=2)


def callbacks(transport) -> list[dict]:
    return [json.loads(request.content) for request in transport.to(CALLBACK_URL)]


def _ai(generator: ScriptedGenerator) -> AIProviderClient:
    return AIProviderClient(
        {"fake": generator}, {"custom": FakeEmbedder()}, default_provider="fake", evaluation_provider="fake"
    )


class TestValidation:
    def test_collects_every_violation(self):
        with pytest.raises(RequestValidationError) as exc_info:
            validate_generation_request(generation_body(chapterNumber=0, callbackUrl=None, novelId="ab"))

        errors = exc_info.value.errors
        assert len(errors) == 3
        assert any("chapterNumber" in e for e in errors)
        assert any("callbackUrl" in e for e in errors)
        assert any("novelId" in e for e in errors)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"chapterNumber": True},
            {"chapterNumber": "3"},
            {"mood": "   "},
            {"callbackUrl": "ftp://client.test/hook"},
            {"requestId": 12},
        ],
    )
    def test_rejects_malformed_fields(self, overrides):
        with pytest.raises(RequestValidationError):
            validate_generation_request(generation_body(**overrides))

    def test_non_object_body_rejected(self):
        with pytest.raises(RequestValidationError):
            validate_generation_request(["not", "an", "object"])

    def test_defaults_request_id_and_trims(self):
        body = generation_body(novelId=f"  {NOVEL_ID}  ")
        del body["requestId"]

        request = validate_generation_request(body)

        assert request.novel_id == NOVEL_ID
        assert request.request_id
        assert request.timestamp

    def test_upload_requires_a_source(self):
        with pytest.raises(RequestValidationError, match="upload"):
            validate_upload_request({"novelId": NOVEL_ID})

    @pytest.mark.parametrize(
        "body",
        [
            {"novelId": NOVEL_ID, "fileUrl": "file:///etc/passwd"},
            {"novelId": NOVEL_ID, "chunks": ["ok", 3]},
            {"novelId": NOVEL_ID, "content": "text", "chunkSize": 100, "overlap": 100},
            {"novelId": NOVEL_ID, "content": "text", "chunkingStrategy": "paragraph"},
            {"novelId": NOVEL_ID, "content": "text", "callbackUrl": "not a url"},
        ],
    )
    def test_upload_rejects_bad_fields(self, body):
        with pytest.raises(RequestValidationError):
            validate_upload_request(body)


class TestExtractTitle:
    def test_uses_first_non_empty_line(self):
        assert extract_title("\n\n## **The Drowned Bell**\nText", 4) == "The Drowned Bell"

    def test_falls_back_to_chapter_number(self):
        assert extract_title("   \n  ", 7) == "Chapter 7"

    def test_caps_length(self):
        assert len(extract_title("x" * 500, 1)) == 200


@pytest.mark.asyncio
class TestLocalGeneration:
    async def test_invalid_request_touches_nothing(self, orchestrator, graph, vectors, generator, transport):
        with pytest.raises(RequestValidationError):
            await orchestrator.handle_generation(generation_body(chapterNumber=0, callbackUrl=None))

        assert sum(graph.calls.values()) == 0
        assert sum(vectors.calls.values()) == 0
        assert generator.prompts == []
        assert transport.requests == []

    async def test_happy_path_stores_chapter_and_signs_callback(self, orchestrator, memory, graph, cache, vectors, transport):
        await seed(memory)

        response = await orchestrator.handle_generation(generation_body())

        result = response["result"]
        assert response["requestId"] == "req-1"
        assert result["chapterNumber"] == 1
        assert result["attempts"] == 1
        assert result["evaluation"]["overallScore"] == 8.0
        assert graph.chapters[(NOVEL_ID, 1)]["title"] == "Chapter One"

        await eventually(lambda: "chapter-1-chunk-0" in vectors.records.get(f"novel-{NOVEL_ID}", {}))
        await eventually(lambda: f"novel:{NOVEL_ID}:chapter:1" in cache.data)

        (request,) = transport.to(CALLBACK_URL)
        assert verify_signature(
            request.content, request.headers[SIGNATURE_HEADER], request.headers[TIMESTAMP_HEADER], "test-secret"
        )
        payload = json.loads(request.content)
        assert payload["success"] is True
        assert payload["requestId"] == "req-1"
        assert payload["data"]["chapterNumber"] == 1

    async def test_prompt_carries_context(self, orchestrator, memory, generator):
        await seed(memory)

        await orchestrator.handle_generation(generation_body())

        prompt = generator.draft_prompts[0]
        assert 'Write Chapter 1 of the novel "Salt and Iron"' in prompt
        assert "- Mara" in prompt
        assert "Focus elements: the storm at sea" in prompt
        assert generator.options[0].system_prompt

    async def test_low_score_retries_with_feedback(self, settings, memory, http, graph):
        generator = ScriptedGenerator(
            drafts=["First Draft\n\nWeak.", "Second Draft\n\nStrong."],
            evaluations=[evaluation_reply(4.0, ["tighten the pacing"]), evaluation_reply(8.5)],
        )
        orchestrator = build_orchestrator(settings, memory, _ai(generator), http)
        await seed(memory)

        result = (await orchestrator.handle_generation(generation_body()))["result"]

        assert result["attempts"] == 2
        assert "tighten the pacing" in generator.draft_prompts[1]
        assert "tighten the pacing" not in generator.draft_prompts[0]
        assert graph.chapters[(NOVEL_ID, 1)]["title"] == "Second Draft"

    async def test_best_draft_kept_when_attempts_run_out(self, settings, memory, http, graph):
        generator = ScriptedGenerator(
            drafts=["Best\n\nA.", "Worse\n\nB.", "Middling\n\nC."],
            evaluations=[evaluation_reply(6.0), evaluation_reply(3.0), evaluation_reply(5.0)],
        )
        orchestrator = build_orchestrator(settings, memory, _ai(generator), http)
        await seed(memory)

        result = (await orchestrator.handle_generation(generation_body()))["result"]

        assert result["attempts"] == 3
        assert result["evaluation"]["overallScore"] == 6.0
        assert graph.chapters[(NOVEL_ID, 1)]["title"] == "Best"

    async def test_unparseable_evaluation_accepts_draft(self, settings, memory, http):
        generator = ScriptedGenerator(evaluations=["Looks good to me!"])
        orchestrator = build_orchestrator(settings, memory, _ai(generator), http)
        await seed(memory)

        result = (await orchestrator.handle_generation(generation_body()))["result"]

        assert result["attempts"] == 1
        assert result["evaluation"]["isFallback"] is True

    async def test_summary_is_generated_when_enabled(self, memory, http, graph):
        generator = ScriptedGenerator(drafts=["Tide\n\nThe tide turned.", "Mara watches the tide turn."])
        orchestrator = build_orchestrator(make_settings(GENERATE_CHAPTER_SUMMARY=True), memory, _ai(generator), http)
        await seed(memory)

        await orchestrator.handle_generation(generation_body())

        assert graph.chapters[(NOVEL_ID, 1)]["summary"] == "Mara watches the tide turn."

    async def test_missing_novel_sends_failure_callback(self, orchestrator, transport):
        with pytest.raises(NotFoundError):
            await orchestrator.handle_generation(generation_body())

        (payload,) = callbacks(transport)
        assert payload["success"] is False
        assert "does not exist" in payload["error"]
        assert "data" not in payload

    async def test_all_empty_drafts_fail(self, settings, memory, http, transport):
        orchestrator = build_orchestrator(settings, memory, _ai(ScriptedGenerator(drafts=["   "])), http)
        await seed(memory)

        with pytest.raises(GenerationError):
            await orchestrator.handle_generation(generation_body())

        assert callbacks(transport)[0]["success"] is False

    async def test_callback_failure_does_not_fail_request(self, orchestrator, memory, transport):
        transport._routes.clear()
        transport.route(CALLBACK_URL, lambda request: httpx.Response(503))
        await seed(memory)

        response = await orchestrator.handle_generation(generation_body())

        assert response["result"]["chapterNumber"] == 1
        assert len(transport.to(CALLBACK_URL)) == 1

    async def test_failure_callback_omits_error_details(self, orchestrator, transport):
        with pytest.raises(NotFoundError):
            await orchestrator.handle_generation(generation_body())

        (payload,) = callbacks(transport)
        assert payload["error"] == f"Novel '{NOVEL_ID}' does not exist"
        assert "Details" not in payload["error"]
        assert set(payload) == {"success", "error", "requestId", "timestamp"}

    async def test_request_status_follows_the_run(self, orchestrator, memory):
        await seed(memory)

        await orchestrator.handle_generation(generation_body())

        status = await orchestrator.get_generation_status("req-1")
        assert status["status"] == "completed"
        assert status["novelId"] == NOVEL_ID
        assert status["chapterNumber"] == 1

    async def test_failed_run_records_client_safe_error(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.handle_generation(generation_body(requestId="req-9"))

        status = await orchestrator.get_generation_status("req-9")
        assert status["status"] == "failed"
        assert status["error"] == f"Novel '{NOVEL_ID}' does not exist"

    async def test_unknown_request_status_is_not_found(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.get_generation_status("never-sent")

    async def test_characters_named_in_draft_are_featured(self, settings, memory, http, graph):
        generator = ScriptedGenerator(drafts=["Squall\n\nMara lashed the sail to the mast."])
        orchestrator = build_orchestrator(settings, memory, _ai(generator), http)
        await seed(memory)

        result = (await orchestrator.handle_generation(generation_body()))["result"]

        assert result["featuredCharacters"] == ["c-1"]
        assert [c["name"] for c in await memory.get_chapter_characters(NOVEL_ID, 1)] == ["Mara"]

    async def test_draft_without_known_names_features_nobody(self, orchestrator, memory, graph):
        await seed(memory)

        result = (await orchestrator.handle_generation(generation_body()))["result"]

        assert result["featuredCharacters"] == []
        assert graph.calls["link_chapter_characters"] == 0


@pytest.mark.asyncio
class TestDelegation:
    @pytest.fixture
    def delegate_settings(self):
        return make_settings(
            ORCHESTRATION_MODE="delegate", WORKFLOW_GENERATION_URL=WORKFLOW_URL, WORKFLOW_UPLOAD_URL=UPLOAD_URL
        )

    async def test_generation_is_forwarded(self, delegate_settings, memory, ai_client, http, transport, generator, graph):
        transport.route(WORKFLOW_URL, lambda request: httpx.Response(200, json={"status": "accepted", "runId": "w-1"}))
        orchestrator = build_orchestrator(delegate_settings, memory, ai_client, http)

        response = await orchestrator.handle_generation(generation_body())

        assert response["result"] == {"status": "accepted", "runId": "w-1"}
        (forwarded,) = transport.to(WORKFLOW_URL)
        assert json.loads(forwarded.content)["chapterNumber"] == 1
        assert json.loads(forwarded.content)["requestId"] == "req-1"
        assert generator.prompts == []
        assert graph.calls["upsert_chapter"] == 0
        assert callbacks(transport)[0]["data"] == {"status": "accepted", "runId": "w-1"}

    async def test_non_object_workflow_reply_is_wrapped(self, delegate_settings, memory, ai_client, http, transport):
        transport.route(WORKFLOW_URL, lambda request: httpx.Response(200, json=["queued"]))
        orchestrator = build_orchestrator(delegate_settings, memory, ai_client, http)

        response = await orchestrator.handle_generation(generation_body())

        assert response["result"] == {"result": ["queued"]}
        assert callbacks(transport)[0]["data"] == {"result": ["queued"]}

    async def test_workflow_error_is_reported(self, delegate_settings, memory, ai_client, http, transport):
        transport.route(WORKFLOW_URL, lambda request: httpx.Response(500, text="boom"))
        orchestrator = build_orchestrator(delegate_settings, memory, ai_client, http)

        with pytest.raises(DelegationError, match="500"):
            await orchestrator.handle_generation(generation_body())

        (payload,) = callbacks(transport)
        assert payload["success"] is False

    async def test_unconfigured_workflow_url(self, memory, ai_client, http):
        orchestrator = build_orchestrator(make_settings(ORCHESTRATION_MODE="delegate"), memory, ai_client, http)

        with pytest.raises(DelegationError, match="not configured"):
            await orchestrator.handle_generation(generation_body())

    async def test_upload_is_forwarded(self, delegate_settings, memory, ai_client, http, transport, vectors):
        transport.route(UPLOAD_URL, lambda request: httpx.Response(200, json={"chunks": 4}))
        orchestrator = build_orchestrator(delegate_settings, memory, ai_client, http)

        response = await orchestrator.handle_upload({"novelId": NOVEL_ID, "content": "Some text"})

        assert response["result"] == {"chunks": 4}
        assert vectors.calls["store_document_chunks"] == 0

    async def test_health_reports_configuration(self, delegate_settings, memory, ai_client, http):
        health = build_orchestrator(delegate_settings, memory, ai_client, http).health()

        assert health["mode"] == "delegate"
        assert health["workflowConfigured"] == {"generation": True, "upload": True}
        assert health["callbackSigning"] is True


@pytest.mark.asyncio
class TestLocalUpload:
    async def test_content_is_chunked_and_stored(self, orchestrator, memory, vectors):
        await seed(memory)
        content = "The lighthouse keeper counted ships. " * 60

        response = await orchestrator.handle_upload(
            {"novelId": NOVEL_ID, "content": content, "chunkSize": 200, "overlap": 20, "chunkingStrategy": "character"}
        )

        result = response["result"]
        assert result["mode"] == "content"
        assert result["chunking"] == "character"
        assert result["total"] > 1
        assert result["upserted"] == result["total"]
        document = vectors.records[f"novel-{NOVEL_ID}"]["document-0"]
        assert document["source"] == "content"
        assert document["chunkingStrategy"] == "character"

    async def test_file_url_is_fetched(self, orchestrator, memory, transport, vectors):
        transport.route(FILE_URL, lambda request: httpx.Response(200, text="A short manuscript."))
        await seed(memory)

        result = (await orchestrator.handle_upload({"novelId": NOVEL_ID, "fileUrl": FILE_URL}))["result"]

        assert result["mode"] == "fileUrl"
        assert result["total"] == 1
        assert vectors.records[f"novel-{NOVEL_ID}"]["document-0"]["source"] == FILE_URL

    async def test_prechunked_data_is_used_verbatim(self, orchestrator, memory, vectors):
        await seed(memory)

        result = (
            await orchestrator.handle_upload({"novelId": NOVEL_ID, "chunks": [" one ", "two", "   "], "metadata": {"k": 1}})
        )["result"]

        assert result["mode"] == "chunks"
        assert result["total"] == 2
        assert vectors.records[f"novel-{NOVEL_ID}"]["document-0"]["content"] == "one"
        assert vectors.records[f"novel-{NOVEL_ID}"]["document-0"]["k"] == 1

    async def test_token_chunking(self, orchestrator, memory):
        await seed(memory)
        content = " ".join(f"word{i}" for i in range(400))

        result = (
            await orchestrator.handle_upload(
                {"novelId": NOVEL_ID, "content": content, "chunkingStrategy": "token", "chunkSize": 100, "overlap": 10}
            )
        )["result"]

        assert result["chunking"] == "token"
        assert result["total"] > 1

    async def test_callback_only_when_requested(self, orchestrator, memory, transport):
        await seed(memory)

        await orchestrator.handle_upload({"novelId": NOVEL_ID, "content": "quiet"})
        assert callbacks(transport) == []

        await orchestrator.handle_upload({"novelId": NOVEL_ID, "content": "loud", "callbackUrl": CALLBACK_URL})
        (payload,) = callbacks(transport)
        assert payload["success"] is True
        assert payload["data"]["upserted"] == 1

    async def test_upload_for_unknown_novel_fails(self, orchestrator, transport):
        with pytest.raises(NotFoundError):
            await orchestrator.handle_upload({"novelId": "ghost", "content": "text", "callbackUrl": CALLBACK_URL})

        assert callbacks(transport)[0]["success"] is False
