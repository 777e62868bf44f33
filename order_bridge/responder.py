"""AI response handler: context lookup, completion, and order extraction.

Role:
    Produces the reply for one inbound text. Context retrieval and the completion call
    are the upstream collaborators; if either fails or times out the customer gets
    FALLBACK_REPLY. Once a completion exists, OrderExtractionPipeline owns the rest and
    never fails the reply.

Stage contract (AssistantReply.stages):
    RECEIVED -> CONTEXT_FETCHED -> COMPLETED -> NO_BLOCK | BLOCK_INVALID | PERSISTED |
    PERSIST_FAILED | PERSIST_UNCONFIRMED. Conversation appends DELIVERED after sending.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from .order_extraction import AssistantReply, OrderExtractionPipeline, ReplyStage
from .utils import preview

logger = logging.getLogger("order_bridge.responder")

FALLBACK_REPLY = (
    "Désolé, je rencontre un problème technique. Un membre de notre équipe vous répondra "
    "bientôt. Merci de votre patience ! 🙏"
)
ORDER_CONFIRMED_REPLY = "Merci ! Votre commande a bien été enregistrée et va être préparée."


class ContextRetriever(Protocol):
    async def get_context_for_query(self, text: str) -> str: ...


class CompletionClient(Protocol):
    async def complete(self, system_prompt: str, user_text: str) -> str: ...


class AssistantResponder:
    """Builds the augmented prompt, calls the model, and sanitizes its output."""

    def __init__(
        self,
        llm: CompletionClient,
        retriever: ContextRetriever,
        pipeline: OrderExtractionPipeline,
        system_prompt: str,
        context_timeout_s: float = 5.0,
        llm_timeout_s: float = 30.0,
    ) -> None:
        self._llm = llm
        self._retriever = retriever
        self._pipeline = pipeline
        self._system_prompt = system_prompt
        self._context_timeout_s = context_timeout_s
        self._llm_timeout_s = llm_timeout_s

    async def generate_reply(self, text: str) -> AssistantReply:
        """Purpose: Produce the sanitized reply for one user message.
        Inputs/Outputs: Input is the user text; output is an AssistantReply.
        Side Effects / State: Calls retrieval, the LLM and (via the pipeline) persistence.
        Dependencies: ContextRetriever, CompletionClient, OrderExtractionPipeline.
        Failure Modes: Upstream failures or timeouts return FALLBACK_REPLY; never raises.
        If Removed: Inbound messages are never answered.
        Testing Notes: Make the fake LLM raise and assert the fallback text is returned.
        """
        # Upstream collaborators share one boundary; the pipeline has its own.
        reply = AssistantReply(raw_text="", visible_text="")
        reply.advance(ReplyStage.RECEIVED)
        logger.info("[AI] Generating reply for: %r", preview(text))
        try:
            context = await asyncio.wait_for(
                self._retriever.get_context_for_query(text), timeout=self._context_timeout_s
            )
            reply.advance(ReplyStage.CONTEXT_FETCHED)
            completion = await asyncio.wait_for(
                self._llm.complete(self._system_prompt + (context or ""), text),
                timeout=self._llm_timeout_s,
            )
        except Exception:
            logger.exception("[AI] Reply generation failed; sending fallback message.")
            reply.visible_text = FALLBACK_REPLY
            reply.raw_text = FALLBACK_REPLY
            return reply

        reply.advance(ReplyStage.COMPLETED)
        logger.debug("[AI] Raw completion: %s", completion)
        reply = await self._pipeline.process(completion, reply)
        if not reply.visible_text:
            # The model answered with nothing but the order block, or with nothing at all.
            reply.visible_text = ORDER_CONFIRMED_REPLY if reply.order is not None else FALLBACK_REPLY
        logger.info("[AI] Final reply: %r", preview(reply.visible_text))
        return reply
