# core/service_lifecycle.py
"""
Service container and scoped lifecycle for the gateway.

Every long-lived client is constructed explicitly from settings and passed to
its consumers; nothing is a module-level singleton. Startup acquires store
connections and starts the job queue; shutdown releases them in reverse
order. `service_lifespan` guarantees shutdown runs on every exit path, so the
same contract serves the HTTP app, tests and one-off scripts.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog

from config.settings import GatewaySettings
from core.ai_providers import AIProviderClient, build_providers
from core.cache_store import RedisCacheStore
from core.db_manager import Neo4jManager
from core.http_client_service import EmbeddingServiceClient, HTTPClientService
from core.job_queue import JobQueue, RetryPolicy
from core.vector_store import QdrantVectorStore
from data_access.graph_store import GraphStore
from orchestration.callbacks import CallbackSender
from orchestration.memory_system import MemorySystem
from orchestration.novel_orchestrator import NovelOrchestrator
from orchestration.workflow_client import WorkflowClient

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Explicitly wired dependency graph for one process or test."""

    settings: GatewaySettings
    http: HTTPClientService
    cache: RedisCacheStore
    queue: JobQueue
    db: Neo4jManager
    graph: GraphStore
    vectors: QdrantVectorStore
    ai: AIProviderClient
    memory: MemorySystem
    orchestrator: NovelOrchestrator
    started_at: float | None = None
    store_status: dict[str, bool] = field(default_factory=dict)
    http_clients: dict[str, HTTPClientService] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> ServiceContainer:
        # One client per consumer group; a saturated pool never delays another group.
        http = HTTPClientService(
            timeout=settings.PROVIDER_TIMEOUT,
            max_concurrency=settings.PROVIDER_MAX_CONCURRENT_REQUESTS,
            max_retries=settings.PROVIDER_MAX_RETRIES,
            name="providers",
        )
        http_clients = {
            "embedding": HTTPClientService(
                timeout=settings.EMBEDDING_TIMEOUT,
                max_concurrency=settings.EMBEDDING_MAX_CONCURRENT_REQUESTS,
                max_retries=1,
                name="embedding",
            ),
            "workflow": HTTPClientService(
                timeout=settings.WORKFLOW_TIMEOUT,
                max_concurrency=settings.WORKFLOW_MAX_CONCURRENT_REQUESTS,
                max_retries=1,
                name="workflow",
            ),
            "callbacks": HTTPClientService(
                timeout=settings.CALLBACK_TIMEOUT,
                max_concurrency=settings.CALLBACK_MAX_CONCURRENT_REQUESTS,
                max_retries=1,
                name="callbacks",
            ),
        }
        embedding_client = EmbeddingServiceClient(
            http_clients["embedding"],
            settings.EMBEDDING_SERVICE_URL,
            settings.EMBEDDING_MODEL,
            timeout=settings.EMBEDDING_TIMEOUT,
        )
        cache = RedisCacheStore(settings)
        queue = JobQueue(
            cache=cache,
            default_concurrency=settings.QUEUE_CONCURRENCY,
            default_policy=RetryPolicy(settings.QUEUE_MAX_ATTEMPTS, settings.QUEUE_BACKOFF_SECONDS),
        )
        db = Neo4jManager(settings)
        graph = GraphStore(db)
        vectors = QdrantVectorStore(settings, embedding_client)
        generators, embedders = build_providers(settings, http, embedding_client)
        ai = AIProviderClient(
            generators,
            embedders,
            default_provider=settings.DEFAULT_PROVIDER,
            evaluation_provider=settings.EVALUATION_PROVIDER,
            default_embedding_provider=settings.EMBEDDING_PROVIDER,
            evaluation_temperature=settings.TEMPERATURE_EVALUATION,
        )
        memory = MemorySystem(graph, vectors, cache, queue, similar_top_k=settings.CONTEXT_SIMILAR_TOP_K)
        orchestrator = NovelOrchestrator(
            settings,
            memory,
            ai,
            CallbackSender(http_clients["callbacks"], settings.CALLBACK_SECRET, timeout=settings.CALLBACK_TIMEOUT),
            WorkflowClient(
                http_clients["workflow"],
                settings.WORKFLOW_GENERATION_URL,
                settings.WORKFLOW_UPLOAD_URL,
                token=settings.WORKFLOW_TOKEN,
                timeout=settings.WORKFLOW_TIMEOUT,
            ),
            http_clients["workflow"],
        )
        return cls(
            settings=settings,
            http=http,
            cache=cache,
            queue=queue,
            db=db,
            graph=graph,
            vectors=vectors,
            ai=ai,
            memory=memory,
            orchestrator=orchestrator,
            http_clients=http_clients,
        )

    @property
    def is_started(self) -> bool:
        return self.started_at is not None

    async def startup(self) -> None:
        if self.is_started:
            logger.warning("Service container already started")
            return
        start = time.monotonic()
        self.store_status = await self.memory.initialize()
        self.started_at = time.time()
        logger.info(
            f"Services started in {time.monotonic() - start:.2f}s",
            environment=self.settings.ENVIRONMENT,
            mode=self.settings.ORCHESTRATION_MODE,
            **self.store_status,
        )

    async def shutdown(self) -> None:
        """Release everything acquired in `startup`; safe to call more than once."""
        try:
            await self.memory.shutdown()
        except Exception as e:
            logger.error(f"Error while shutting down memory system: {e}", exc_info=True)
        for client in [self.http, *self.http_clients.values()]:
            try:
                await client.aclose()
            except Exception as e:
                logger.error(f"Error while closing HTTP client '{client.name}': {e}", exc_info=True)
        self.started_at = None
        logger.info("Services shut down.")

    def uptime_seconds(self) -> float:
        return time.time() - self.started_at if self.started_at else 0.0

    def describe(self) -> dict[str, Any]:
        return {
            "started": self.is_started,
            "uptimeSeconds": round(self.uptime_seconds(), 1),
            "stores": self.store_status,
            "queue": self.queue.get_statistics(),
            "http": [client.get_statistics() for client in [self.http, *self.http_clients.values()]],
        }


@asynccontextmanager
async def service_lifespan(container: ServiceContainer) -> AsyncIterator[ServiceContainer]:
    await container.startup()
    try:
        yield container
    finally:
        await container.shutdown()
