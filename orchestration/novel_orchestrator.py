# orchestration/novel_orchestrator.py
"""Drive one chapter-generation or document-ingestion request end to end.

Requests are validated before any store, provider or network call. Generation
is either delegated to the external workflow engine or run locally through the
memory system and AI client. Whatever happens after validation, the caller's
callback URL receives a signed success or failure notification.
"""

from __future__ import annotations

import uuid
from typing import Any
from urllib.parse import urlparse

import structlog

from config.settings import GatewaySettings
from core.ai_providers import AIProviderClient, GenerationOptions
from core.cache_store import utc_now_iso
from core.exceptions import GatewayError, GenerationError, NotFoundError, RequestValidationError
from core.http_client_service import HTTPClientService
from core.text_processing_service import TokenChunker, chunk_text, count_words
from models.ai_models import Evaluation, GenerationResult
from models.novel_models import ChapterInput
from models.request_models import CallbackPayload, GenerationRequest, UploadRequest
from prompts.prompt_renderer import get_system_prompt, render_prompt
from utils.json_utils import truncate_for_log

from .callbacks import CallbackSender
from .memory_system import MemorySystem
from .workflow_client import WorkflowClient

logger = structlog.get_logger(__name__)

MIN_NOVEL_ID_LENGTH = 3
MAX_TITLE_LENGTH = 200


def _is_http_url(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def client_error_message(error: Exception) -> str:
    """Text safe to hand to a caller; ``GatewayError`` details stay in the server log."""
    if isinstance(error, GatewayError):
        return error.message
    return str(error)


def featured_character_ids(characters: list[dict[str, Any]], content: str) -> list[str]:
    """Ids of the characters whose name appears in ``content``."""
    return [c["id"] for c in characters if c.get("id") and c.get("name") and c["name"] in content]


def validate_generation_request(body: Any) -> GenerationRequest:
    """Collect every rule violation and raise them together."""
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object", errors=["body must be an object"])

    errors: list[str] = []
    novel_id = body.get("novelId")
    if not isinstance(novel_id, str) or len(novel_id.strip()) < MIN_NOVEL_ID_LENGTH:
        errors.append(f"novelId is required and must be at least {MIN_NOVEL_ID_LENGTH} characters")

    chapter_number = body.get("chapterNumber")
    if isinstance(chapter_number, bool) or not isinstance(chapter_number, int) or chapter_number < 1:
        errors.append("chapterNumber must be a positive integer")

    for field_name in ("focusElements", "stylePreference", "mood"):
        if not _non_empty_str(body.get(field_name)):
            errors.append(f"{field_name} is required and must be a non-empty string")

    if not _is_http_url(body.get("callbackUrl")):
        errors.append("callbackUrl is required and must be an http(s) URL")

    request_id = body.get("requestId")
    if request_id is not None and not isinstance(request_id, str):
        errors.append("requestId must be a string")

    if errors:
        raise RequestValidationError("Invalid novel generation request", errors=errors)

    return GenerationRequest(
        novel_id=novel_id.strip(),
        chapter_number=chapter_number,
        focus_elements=body["focusElements"].strip(),
        style_preference=body["stylePreference"].strip(),
        mood=body["mood"].strip(),
        callback_url=body["callbackUrl"].strip(),
        request_id=request_id or str(uuid.uuid4()),
        timestamp=body.get("timestamp") if isinstance(body.get("timestamp"), str) else utc_now_iso(),
        provider=body.get("provider") if isinstance(body.get("provider"), str) else None,
    )


def validate_upload_request(body: Any) -> UploadRequest:
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object", errors=["body must be an object"])

    errors: list[str] = []
    if not _non_empty_str(body.get("novelId")):
        errors.append("novelId is required")

    content = body.get("content")
    file_url = body.get("fileUrl")
    chunks = body.get("chunks")
    has_content = _non_empty_str(content)
    has_file = _non_empty_str(file_url)
    has_chunks = isinstance(chunks, list) and len(chunks) > 0
    if not (has_content or has_file or has_chunks):
        errors.append("One of content, fileUrl or chunks is required")
    if has_file and not _is_http_url(file_url):
        errors.append("fileUrl must be an http(s) URL")
    if has_chunks and not all(isinstance(c, str) for c in chunks):
        errors.append("chunks must be an array of strings")
    if body.get("callbackUrl") is not None and not _is_http_url(body.get("callbackUrl")):
        errors.append("callbackUrl must be an http(s) URL")

    if errors:
        raise RequestValidationError("Invalid novel upload request", errors=errors)

    try:
        request = UploadRequest.model_validate(body)
    except ValueError as e:
        raise RequestValidationError("Invalid novel upload request", errors=[str(e)]) from e
    if request.overlap >= request.chunk_size:
        raise RequestValidationError("Invalid novel upload request", errors=["overlap must be smaller than chunkSize"])
    if not request.request_id:
        request.request_id = str(uuid.uuid4())
    request.novel_id = request.novel_id.strip()
    return request


def extract_title(content: str, chapter_number: int) -> str:
    """Use the first non-empty line as the chapter title, stripped of markdown heading marks."""
    for line in content.splitlines():
        candidate = line.strip().lstrip("#").strip().strip("*").strip()
        if candidate:
            return candidate[:MAX_TITLE_LENGTH]
    return f"Chapter {chapter_number}"


class NovelOrchestrator:
    def __init__(
        self,
        settings: GatewaySettings,
        memory: MemorySystem,
        ai_client: AIProviderClient,
        callbacks: CallbackSender,
        workflow: WorkflowClient,
        http: HTTPClientService,
        token_chunker: TokenChunker | None = None,
    ):
        self.settings = settings
        self.memory = memory
        self.ai = ai_client
        self.callbacks = callbacks
        self.workflow = workflow
        self.http = http
        self._token_chunker = token_chunker

    @property
    def delegating(self) -> bool:
        return self.settings.ORCHESTRATION_MODE == "delegate"

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def handle_generation(self, body: Any) -> dict[str, Any]:
        request = validate_generation_request(body)
        log = logger.bind(request_id=request.request_id, novel_id=request.novel_id, chapter=request.chapter_number)
        log.info("Novel generation request accepted", mode=self.settings.ORCHESTRATION_MODE)
        await self._track(request, "processing")

        try:
            if self.delegating:
                result = await self.workflow.run("generation", request.to_record())
                await self._notify(request.callback_url, request.request_id, success=True, data=result)
            else:
                result = await self.generate_chapter(request)
        except Exception as e:
            log.error(f"Novel generation failed: {e}", exc_info=True)
            message = client_error_message(e)
            await self._track(request, "failed", error=message)
            await self._notify(request.callback_url, request.request_id, success=False, error=message)
            raise

        await self._track(request, "completed")
        log.info("Novel generation finished")
        return {"requestId": request.request_id, "result": result}

    async def _track(self, request: GenerationRequest, status: str, **fields: Any) -> None:
        await self.memory.record_request_status(
            request.request_id, status, novelId=request.novel_id, chapterNumber=request.chapter_number, **fields
        )

    async def get_generation_status(self, request_id: str) -> dict[str, Any]:
        status = await self.memory.get_request_status(request_id)
        if status is None:
            raise NotFoundError(f"No status recorded for request '{request_id}'")
        return status

    async def generate_chapter(self, request: GenerationRequest) -> dict[str, Any]:
        """Local pipeline: context, prompt, generate, evaluate, retry with feedback, save, callback."""
        if await self.memory.get_novel(request.novel_id) is None:
            raise NotFoundError(f"Novel '{request.novel_id}' does not exist", details={"novel_id": request.novel_id})

        context = await self.memory.build_generation_context(
            request.novel_id, request.chapter_number, request.focus_elements
        )
        prompt_context = context.model_dump()
        prompt_context.update(
            style_preference=request.style_preference,
            mood=request.mood,
            feedback=None,
        )
        options = GenerationOptions(
            temperature=self.settings.TEMPERATURE_DRAFTING,
            max_tokens=self.settings.MAX_GENERATION_TOKENS,
            system_prompt=get_system_prompt("orchestration"),
        )

        best: tuple[GenerationResult, Evaluation] | None = None
        attempts = 0
        max_attempts = max(1, self.settings.MAX_GENERATION_ATTEMPTS)
        while attempts < max_attempts:
            attempts += 1
            prompt = render_prompt("orchestration/chapter_generation.j2", prompt_context)
            draft = await self.ai.generate(prompt, request.provider, options)
            if not draft.content.strip():
                logger.warning("Provider returned an empty draft", attempt=attempts, request_id=request.request_id)
                continue
            evaluation = await self.ai.evaluate(draft.content[:20_000])
            logger.info(
                f"Draft {attempts} scored {evaluation.overall_score:.1f}",
                request_id=request.request_id,
                fallback=evaluation.is_fallback,
            )
            if best is None or evaluation.overall_score > best[1].overall_score:
                best = (draft, evaluation)
            if evaluation.is_fallback or evaluation.overall_score >= self.settings.ACCEPTABLE_SCORE:
                best = (draft, evaluation)
                break
            prompt_context["feedback"] = evaluation.feedback.model_dump()

        if best is None:
            raise GenerationError(
                f"No usable draft produced after {attempts} attempts",
                details={"novel_id": request.novel_id, "chapter_number": request.chapter_number},
            )

        draft, evaluation = best
        summary = await self._summarize(draft.content, request.request_id)
        chapter = ChapterInput(
            number=request.chapter_number,
            title=extract_title(draft.content, request.chapter_number),
            content=draft.content,
            summary=summary,
            focus_elements=request.focus_elements,
            mood=request.mood,
            style_preference=request.style_preference,
        )
        saved = await self.memory.add_chapter(request.novel_id, chapter)
        featured = await self._link_featured(request, context.characters, draft.content)

        data = {
            "novelId": request.novel_id,
            "chapterNumber": request.chapter_number,
            "chapter": saved.entity,
            "evaluation": evaluation.model_dump(by_alias=True),
            "attempts": attempts,
            "featuredCharacters": featured,
            "wordCount": count_words(draft.content),
            "provider": draft.provider,
            "model": draft.model,
        }
        await self._notify(request.callback_url, request.request_id, success=True, data=data)
        return data

    async def _summarize(self, content: str, request_id: str | None) -> str:
        if not self.settings.GENERATE_CHAPTER_SUMMARY:
            return ""
        try:
            result = await self.ai.generate(
                render_prompt("orchestration/chapter_summary.j2", {"content": content[:20_000]}),
                options=GenerationOptions(temperature=self.settings.TEMPERATURE_SUMMARY, max_tokens=400),
            )
        except Exception as e:
            logger.warning(f"Chapter summary generation failed: {e}", request_id=request_id)
            return ""
        return result.content.strip()

    async def _link_featured(
        self, request: GenerationRequest, characters: list[dict[str, Any]], content: str
    ) -> list[str]:
        ids = featured_character_ids(characters, content)
        if not ids:
            return []
        try:
            return await self.memory.link_chapter_characters(request.novel_id, request.chapter_number, ids)
        except GatewayError as e:
            logger.warning(f"Could not link featured characters: {e}", request_id=request.request_id)
            return []

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def handle_upload(self, body: Any) -> dict[str, Any]:
        request = validate_upload_request(body)
        log = logger.bind(request_id=request.request_id, novel_id=request.novel_id, mode=request.mode)
        log.info("Novel upload request accepted")

        try:
            if self.delegating:
                result = await self.workflow.run("upload", request.to_record())
            else:
                result = await self.ingest(request)
        except Exception as e:
            log.error(f"Novel upload failed: {e}", exc_info=True)
            if request.callback_url:
                message = client_error_message(e)
                await self._notify(request.callback_url, request.request_id, success=False, error=message)
            raise

        if request.callback_url:
            await self._notify(request.callback_url, request.request_id, success=True, data=result)
        return {"requestId": request.request_id, "result": result}

    async def ingest(self, request: UploadRequest) -> dict[str, Any]:
        if request.mode == "chunks":
            chunks = [c.strip() for c in request.chunks or [] if c.strip()]
        else:
            text = request.content if request.mode == "content" else await self.http.get_text(request.file_url)
            chunks = self._chunk(text, request)
        if not chunks:
            raise RequestValidationError("Invalid novel upload request", errors=["no text to ingest"])

        metadata = dict(request.metadata)
        metadata.setdefault("source", request.file_url or request.mode)
        metadata.setdefault("chunkingStrategy", request.chunking_strategy)
        stats = await self.memory.ingest_document(request.novel_id, chunks, metadata)
        return {"novelId": request.novel_id, "mode": request.mode, "chunking": request.chunking_strategy, **stats}

    def _chunk(self, text: str, request: UploadRequest) -> list[str]:
        if request.chunking_strategy == "token":
            if self._token_chunker is None:
                self._token_chunker = TokenChunker()
            return self._token_chunker.chunk(text, request.chunk_size, request.overlap)
        return chunk_text(text, request.chunk_size, request.overlap)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def _notify(
        self,
        callback_url: str,
        request_id: str | None,
        success: bool,
        data: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        payload = CallbackPayload(
            success=success,
            data=data,
            error=truncate_for_log(error, 1000) if error is not None else None,
            request_id=request_id,
            timestamp=utc_now_iso(),
        ).model_dump(by_alias=True, exclude_none=True)
        try:
            return await self.callbacks.send(callback_url, payload)
        except Exception as e:
            # A broken callback must never mask the request outcome.
            logger.error(f"Callback dispatch raised: {e}", request_id=request_id, exc_info=True)
            return False

    def health(self) -> dict[str, Any]:
        return {
            "mode": self.settings.ORCHESTRATION_MODE,
            "workflowConfigured": {
                "generation": self.workflow.is_configured("generation"),
                "upload": self.workflow.is_configured("upload"),
            },
            "callbackSigning": bool(self.settings.CALLBACK_SECRET),
            "acceptableScore": self.settings.ACCEPTABLE_SCORE,
            "maxAttempts": self.settings.MAX_GENERATION_ATTEMPTS,
        }
