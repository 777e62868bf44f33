"""Structured-order extraction for assistant completions.

Role:
    Detects the fenced JSON block a completion appends once an order is confirmed,
    decodes it with a strict schema, persists confirmed orders exactly once, and returns
    the text that is safe to show the customer.

Parsing is pure (parse_order_block); logging and persistence live in
OrderExtractionPipeline so each side effect is explicit.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Union

from pydantic import ValidationError

from .models import OrderPayload, OrderRecord

logger = logging.getLogger("order_bridge.orders")

# Optional language tag on the opening fence; innermost content captured non-greedily.
FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

REASON_MALFORMED = "malformed"
REASON_UNCONFIRMED = "unconfirmed"
REASON_INCOMPLETE = "incomplete"


class ReplyStage(str, enum.Enum):
    RECEIVED = "received"
    CONTEXT_FETCHED = "context_fetched"
    COMPLETED = "completed"
    NO_BLOCK = "no_block"
    BLOCK_INVALID = "block_invalid"
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist_failed"
    PERSIST_UNCONFIRMED = "persist_unconfirmed"
    DELIVERED = "delivered"


@dataclass(frozen=True)
class NoBlock:
    visible_text: str


@dataclass(frozen=True)
class InvalidBlock:
    visible_text: str
    reason: str
    detail: str = ""
    payload: Optional[OrderPayload] = None


@dataclass(frozen=True)
class ValidOrder:
    visible_text: str
    payload: OrderPayload


ExtractionResult = Union[NoBlock, InvalidBlock, ValidOrder]


@dataclass
class AssistantReply:
    """Raw completion plus the text shown to the user and the extracted order, if any."""
    raw_text: str
    visible_text: str
    order: Optional[OrderPayload] = None
    stages: List[ReplyStage] = field(default_factory=list)

    @property
    def stage(self) -> ReplyStage:
        return self.stages[-1] if self.stages else ReplyStage.RECEIVED

    def advance(self, stage: ReplyStage) -> None:
        self.stages.append(stage)


class OrderSink(Protocol):
    async def append_order(self, record: OrderRecord) -> bool: ...


def strip_first_block(text: str) -> str:
    """Remove the first fenced block from `text` and trim the result."""
    return FENCED_BLOCK_RE.sub("", text, count=1).strip()


def parse_order_block(completion: str) -> ExtractionResult:
    """Purpose: Classify a completion as having no block, an invalid block, or an order.
    Inputs/Outputs: Input is raw model text; output is NoBlock, InvalidBlock or ValidOrder.
    Side Effects / State: None; pure function.
    Dependencies: Uses FENCED_BLOCK_RE, json.loads and the strict OrderPayload schema.
    Failure Modes: Never raises for bad model output; malformed blocks map to InvalidBlock.
    If Removed: Confirmed orders are never detected and raw JSON leaks to customers.
    Testing Notes: Cover no block, malformed JSON, unconfirmed, blank fields and valid.
    """
    # Only the first fenced block counts; it is stripped whatever its content.
    text = completion or ""
    match = FENCED_BLOCK_RE.search(text)
    if not match:
        return NoBlock(visible_text=text.strip())

    visible_text = strip_first_block(text)
    try:
        decoded = json.loads(match.group(1))
    except json.JSONDecodeError as exc:
        return InvalidBlock(visible_text=visible_text, reason=REASON_MALFORMED, detail=str(exc))
    if not isinstance(decoded, dict):
        return InvalidBlock(
            visible_text=visible_text,
            reason=REASON_MALFORMED,
            detail=f"expected an object, got {type(decoded).__name__}",
        )
    try:
        payload = OrderPayload.model_validate(decoded)
    except ValidationError as exc:
        return InvalidBlock(visible_text=visible_text, reason=REASON_MALFORMED, detail=str(exc))

    if payload.order_confirmed is not True:
        return InvalidBlock(visible_text=visible_text, reason=REASON_UNCONFIRMED, payload=payload)
    missing = payload.missing_fields()
    if missing:
        return InvalidBlock(
            visible_text=visible_text,
            reason=REASON_INCOMPLETE,
            detail=", ".join(missing),
            payload=payload,
        )
    return ValidOrder(visible_text=visible_text, payload=payload)


class OrderExtractionPipeline:
    """Turns a completion into an AssistantReply and persists confirmed orders."""

    def __init__(self, sink: OrderSink, persist_timeout_s: float = 10.0) -> None:
        self._sink = sink
        self._persist_timeout_s = persist_timeout_s

    async def process(self, completion: str, reply: Optional[AssistantReply] = None) -> AssistantReply:
        """Purpose: Extract and persist an order, returning the user-safe reply.
        Inputs/Outputs: Input is raw completion text (and an optional reply being tracked);
            output is an AssistantReply whose visible_text never contains the block.
        Side Effects / State: Calls the order sink at most once; logs every outcome.
        Dependencies: parse_order_block, OrderRecord.from_payload, OrderSink.append_order.
        Failure Modes: Never raises; unexpected errors degrade to "no order extracted".
        If Removed: Orders are not saved and the structured block reaches the customer.
        Testing Notes: Use a recording sink and assert call counts per block variant.
        """
        # Everything below runs inside one failure boundary.
        text = completion or ""
        if reply is None:
            reply = AssistantReply(raw_text=text, visible_text=text.strip())
            reply.advance(ReplyStage.COMPLETED)
        else:
            reply.raw_text = text
            reply.visible_text = text.strip()
        try:
            result = parse_order_block(text)
            reply.visible_text = result.visible_text
            if isinstance(result, NoBlock):
                logger.info("[Orders] No structured block detected in response.")
                reply.advance(ReplyStage.NO_BLOCK)
            elif isinstance(result, InvalidBlock):
                self._log_invalid(result)
                reply.advance(ReplyStage.BLOCK_INVALID)
            else:
                reply.order = result.payload
                reply.advance(await self._persist(OrderRecord.from_payload(result.payload)))
        except Exception:
            logger.exception("[Orders] Unexpected error while extracting order; passing text through.")
            reply.order = None
            reply.visible_text = strip_first_block(text)
            reply.advance(ReplyStage.BLOCK_INVALID)
        return reply

    async def _persist(self, record: OrderRecord) -> ReplyStage:
        logger.info("[Orders] Confirmed order detected for %s.", record.customer_name)
        try:
            saved = await asyncio.wait_for(
                self._sink.append_order(record), timeout=self._persist_timeout_s
            )
        except asyncio.TimeoutError:
            # The sink's worker thread cannot be cancelled; the row may still be written.
            logger.error(
                "[Orders] ORDER SAVE TIMED OUT after %.1fs, verify sheet before re-entering: %s",
                self._persist_timeout_s,
                record.model_dump(),
            )
            return ReplyStage.PERSIST_UNCONFIRMED
        except Exception:
            logger.exception("[Orders] ORDER NOT SAVED, manual recovery needed: %s", record.model_dump())
            return ReplyStage.PERSIST_FAILED
        if not saved:
            logger.error("[Orders] ORDER NOT SAVED, manual recovery needed: %s", record.model_dump())
            return ReplyStage.PERSIST_FAILED
        logger.info("[Orders] Order saved successfully.")
        return ReplyStage.PERSISTED

    @staticmethod
    def _log_invalid(result: InvalidBlock) -> None:
        if result.reason == REASON_MALFORMED:
            logger.error("[Orders] Could not decode order block: %s", result.detail)
        elif result.reason == REASON_UNCONFIRMED:
            logger.info("[Orders] Order block present but not confirmed; discarded.")
        else:
            logger.warning("[Orders] Order block missing required fields (%s); discarded.", result.detail)
