from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from .config import Settings, load_settings
from .conversation import Conversation
from .dedup_cache import RedisDedupStore, ResilientDedupCache
from .gemini_client import GeminiClient
from .graph_api import GraphApiClient
from .knowledge_store import KnowledgeStore
from .models import HealthResponse, MessagingEvent, WebhookPayload
from .order_extraction import OrderExtractionPipeline
from .prompt_loader import load_system_prompt
from .responder import AssistantResponder
from .sheets_client import SheetsOrderSink

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("order_bridge").setLevel(log_level)
logger = logging.getLogger("order_bridge.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def build_cache(settings: Settings) -> ResilientDedupCache:
    """Purpose: Build the dedup cache with Redis as primary and memory as fallback.
    Inputs/Outputs: Input is Settings; output is an unstarted ResilientDedupCache.
    Side Effects / State: Creates a lazy Redis client; no connection is made yet.
    Dependencies: RedisDedupStore.from_url and ResilientDedupCache.
    Failure Modes: Invalid REDIS_URL schemes raise ValueError.
    If Removed: The webhook cannot drop retransmitted events.
    Testing Notes: Build with an unreachable URL and verify the state stays degraded.
    """
    # Connection happens later through cache.start().
    remote = RedisDedupStore.from_url(settings.redis_url, socket_timeout_s=settings.store_timeout_s)
    return ResilientDedupCache(
        remote,
        ttl_s=settings.dedup_ttl_s,
        max_retries=settings.redis_max_retries,
        backoff_step_ms=settings.redis_backoff_step_ms,
        backoff_cap_ms=settings.redis_backoff_cap_ms,
        op_timeout_s=settings.store_timeout_s,
    )


def build_conversation(settings: Settings, cache: ResilientDedupCache, transport: GraphApiClient) -> Conversation:
    """Wire the responder, its collaborators and the transport into a Conversation."""
    pipeline = OrderExtractionPipeline(
        SheetsOrderSink.from_settings(settings),
        persist_timeout_s=settings.persist_timeout_s,
    )
    responder = AssistantResponder(
        llm=GeminiClient(settings),
        retriever=KnowledgeStore(settings.knowledge_path),
        pipeline=pipeline,
        system_prompt=load_system_prompt(settings.prompts_dir),
        context_timeout_s=settings.context_timeout_s,
        llm_timeout_s=settings.llm_timeout_s,
    )
    return Conversation(
        cache=cache,
        responder=responder,
        transport=transport,
        send_timeout_s=settings.send_timeout_s,
        serialize=settings.serialize_conversations,
    )


async def dispatch_events(conversation: Conversation, events: List[MessagingEvent]) -> None:
    """Handle every event of one delivery as an independent task."""
    results = await asyncio.gather(
        *(conversation.handle_event(event) for event in events), return_exceptions=True
    )
    for event, result in zip(events, results):
        if isinstance(result, BaseException):
            logger.error("[Webhook] Event from %s failed: %r", event.sender.id, result)


def create_app(
    conversation: Optional[Conversation] = None,
    cache: Optional[ResilientDedupCache] = None,
) -> FastAPI:
    """Purpose: Build the FastAPI application exposing the webhook and health endpoints.
    Inputs/Outputs: Optional prebuilt Conversation/cache (tests); returns a FastAPI app.
    Side Effects / State: On startup builds collaborators from env and starts the cache.
    Dependencies: load_settings, build_cache, build_conversation, GraphApiClient.
    Failure Modes: Missing GEMINI_API_KEY raises at startup when nothing is injected.
    If Removed: The platform has nowhere to deliver webhooks.
    Testing Notes: Inject fakes and drive /webhook with FastAPI's TestClient.
    """
    # Injected components are used as-is and not closed on shutdown.

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned_cache: Optional[ResilientDedupCache] = None
        transport: Optional[GraphApiClient] = None
        active_cache = cache
        active_conversation = conversation
        if active_conversation is None:
            settings = load_settings()
            if active_cache is None:
                owned_cache = active_cache = build_cache(settings)
                active_cache.start()
            transport = GraphApiClient(settings)
            active_conversation = build_conversation(settings, active_cache, transport)
        app.state.cache = active_cache
        app.state.conversation = active_conversation
        logger.info("[App] Webhook bridge ready.")
        try:
            yield
        finally:
            if transport is not None:
                await transport.aclose()
            if owned_cache is not None:
                await owned_cache.aclose()

    app = FastAPI(title="Order Bridge Webhook", lifespan=lifespan)

    @app.post("/webhook", response_class=PlainTextResponse)
    async def receive_webhook(
        payload: WebhookPayload, request: Request, background_tasks: BackgroundTasks
    ) -> str:
        """Acknowledge a webhook delivery and handle its events after responding."""
        if payload.object != "page":
            raise HTTPException(status_code=404, detail="Unsupported webhook object")
        events = [event for entry in payload.entry for event in entry.messaging]
        if events:
            background_tasks.add_task(dispatch_events, request.app.state.conversation, events)
        return "EVENT_RECEIVED"

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        active_cache = request.app.state.cache
        backend = active_cache.state.value if active_cache is not None else "none"
        return HealthResponse(status="ok", dedup_backend=backend)

    return app


app = create_app()
