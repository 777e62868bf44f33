from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Protocol

from .dedup_cache import ResilientDedupCache
from .models import MessagingEvent
from .order_extraction import ReplyStage
from .responder import AssistantResponder
from .utils import preview

logger = logging.getLogger("order_bridge.conversation")

DELIVERY_FALLBACK_TEXT = "Sorry, I am encountering a technical issue. Please try again later."


class MessageTransport(Protocol):
    async def send_text_message(self, recipient_id: str, text: str) -> Dict[str, Any]: ...


class ConversationLocks:
    """Per-recipient locks so one customer's messages are answered in arrival order."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        # Locks are dropped once nobody holds or waits on them.
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[key] - 1
            if remaining:
                self._waiters[key] = remaining
            else:
                del self._waiters[key]
                del self._locks[key]


class Conversation:
    """Routes inbound messaging events through dedup, reply generation, and delivery."""

    def __init__(
        self,
        cache: ResilientDedupCache,
        responder: AssistantResponder,
        transport: MessageTransport,
        send_timeout_s: float = 10.0,
        serialize: bool = True,
    ) -> None:
        self._cache = cache
        self._responder = responder
        self._transport = transport
        self._send_timeout_s = send_timeout_s
        self._locks: Optional[ConversationLocks] = ConversationLocks() if serialize else None

    async def handle_event(self, event: MessagingEvent) -> None:
        """Purpose: Dispatch one webhook messaging event by type.
        Inputs/Outputs: Input is a parsed MessagingEvent; no return value.
        Side Effects / State: May trigger a full reply cycle via process_incoming_text.
        Dependencies: Uses event_key and process_incoming_text.
        Failure Modes: Never raises for unsupported event types; they are logged and ignored.
        If Removed: Webhook deliveries are acknowledged but never answered.
        Testing Notes: Send text, quick reply, postback, echo and media events.
        """
        # Text and buttons get a reply; everything else is only acknowledged.
        sender_id = event.sender.id
        message = event.message
        if message is not None:
            if message.is_echo:
                logger.debug("[Conversation] Ignoring echo %s", message.mid)
                return
            text = (message.text or "").strip()
            if not text and message.quick_reply is not None:
                text = message.quick_reply.payload.strip()
            if text:
                await self.process_incoming_text(event_key(event), sender_id, text)
                return
            if message.attachments:
                kinds = ", ".join(attachment.type for attachment in message.attachments)
                logger.info("[Conversation] Media message (%s) from %s acknowledged, not processed.", kinds, sender_id)
                return
            logger.info("[Conversation] Empty message from %s ignored.", sender_id)
            return

        if event.postback is not None:
            text = (event.postback.title or event.postback.payload or "").strip()
            logger.info("[Conversation] Postback received from %s: %s", sender_id, event.postback.payload)
            if text:
                await self.process_incoming_text(event_key(event), sender_id, text)
            return

        if event.delivery is not None or event.read is not None:
            logger.debug("[Conversation] Delivery/read receipt from %s ignored.", sender_id)
            return
        logger.info("[Conversation] Unsupported event from %s ignored.", sender_id)

    async def process_incoming_text(self, event_key: Optional[str], recipient_id: str, text: str) -> None:
        """Purpose: Answer one inbound text exactly once per event key (best-effort).
        Inputs/Outputs: Inputs are the dedup key (None when the event has no stable id),
            the PSID to reply to and the text; no return.
        Side Effects / State: Writes the dedup cache, may persist an order, sends a message.
        Dependencies: ResilientDedupCache, AssistantResponder, MessageTransport.
        Failure Modes: Never raises; delivery errors trigger one fallback send attempt.
        If Removed: The webhook has no entry point into the reply pipeline.
        Testing Notes: Call twice with the same key and assert a single delivery.
        """
        # Dedup first so retransmissions never reach the model.
        if event_key is None:
            logger.debug("[Conversation] Event from %s has no stable id; dedup skipped.", recipient_id)
        elif not await self._cache.insert_if_absent(event_key):
            logger.info("[Conversation] Duplicate event %s dropped.", event_key)
            return
        logger.info("[Conversation] Message received from %s: %r", recipient_id, preview(text))
        if self._locks is None:
            await self._reply(recipient_id, text)
            return
        async with self._locks.hold(recipient_id):
            await self._reply(recipient_id, text)

    async def _reply(self, recipient_id: str, text: str) -> None:
        reply = await self._responder.generate_reply(text)
        try:
            await self._send(recipient_id, reply.visible_text)
        except Exception:
            logger.exception("[Conversation] Error sending reply to %s", recipient_id)
            try:
                await self._send(recipient_id, DELIVERY_FALLBACK_TEXT)
            except Exception:
                logger.exception("[Conversation] Fallback message to %s also failed", recipient_id)
            return
        reply.advance(ReplyStage.DELIVERED)
        logger.info("[Conversation] Reply delivered to %s (stages: %s)", recipient_id,
                    " -> ".join(stage.value for stage in reply.stages))

    async def _send(self, recipient_id: str, text: str) -> None:
        await asyncio.wait_for(
            self._transport.send_text_message(recipient_id, text), timeout=self._send_timeout_s
        )


def event_key(event: MessagingEvent) -> Optional[str]:
    """Dedup key of a messaging event: its mid, else sender and timestamp, else None."""
    if event.message is not None and event.message.mid:
        return event.message.mid
    if event.postback is not None and event.postback.mid:
        return event.postback.mid
    if event.timestamp:
        return f"{event.sender.id}:{event.timestamp}"
    return None
