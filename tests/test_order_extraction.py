from __future__ import annotations

import asyncio
import logging
import time

from order_bridge.models import OrderRecord
from order_bridge.order_extraction import (
    REASON_INCOMPLETE,
    REASON_MALFORMED,
    REASON_UNCONFIRMED,
    InvalidBlock,
    NoBlock,
    OrderExtractionPipeline,
    ReplyStage,
    ValidOrder,
    parse_order_block,
)
from order_bridge.sheets_client import SheetsOrderSink


def run_async(coro):
    return asyncio.run(coro)


CONFIRMED_BLOCK = """Merci Jean ! Votre commande a bien été enregistrée.
```json
{
  "order_confirmed": true,
  "customer_name": "Jean",
  "phone_number": "0612345678",
  "address": "10 rue de la Paix",
  "items": "1 Pizza Margherita, 1 Coca",
  "total": "19.000 DT"
}
```
"""


class RecordingSink:
    def __init__(self, result: bool = True, error: Exception | None = None) -> None:
        self.records: list[OrderRecord] = []
        self.result = result
        self.error = error

    async def append_order(self, record: OrderRecord) -> bool:
        self.records.append(record)
        if self.error is not None:
            raise self.error
        return self.result


def test_no_block_returns_trimmed_text():
    result = parse_order_block("  Bonjour ! Que puis-je vous servir ?  \n")
    assert isinstance(result, NoBlock)
    assert result.visible_text == "Bonjour ! Que puis-je vous servir ?"


def test_confirmed_block_is_decoded_and_stripped():
    result = parse_order_block(CONFIRMED_BLOCK)
    assert isinstance(result, ValidOrder)
    assert result.payload.customer_name == "Jean"
    assert result.payload.total == "19.000 DT"
    assert result.visible_text == "Merci Jean ! Votre commande a bien été enregistrée."


def test_untagged_fence_is_accepted():
    text = 'OK\n```\n{"order_confirmed": true, "customer_name": "A", "phone_number": "1", ' \
           '"address": "B", "items": "C", "total": "À calculer"}\n```'
    result = parse_order_block(text)
    assert isinstance(result, ValidOrder)
    assert result.visible_text == "OK"


def test_unconfirmed_block_is_invalid_but_stripped():
    text = CONFIRMED_BLOCK.replace('"order_confirmed": true', '"order_confirmed": false')
    result = parse_order_block(text)
    assert isinstance(result, InvalidBlock)
    assert result.reason == REASON_UNCONFIRMED
    assert "```" not in result.visible_text


def test_blank_required_field_is_incomplete():
    text = CONFIRMED_BLOCK.replace('"10 rue de la Paix"', '"   "')
    result = parse_order_block(text)
    assert isinstance(result, InvalidBlock)
    assert result.reason == REASON_INCOMPLETE
    assert result.detail == "address"


def test_malformed_json_is_invalid_and_stripped():
    result = parse_order_block('Voilà.\n```json\n{"order_confirmed": true, "customer_name": \n```')
    assert isinstance(result, InvalidBlock)
    assert result.reason == REASON_MALFORMED
    assert result.visible_text == "Voilà."


def test_mistyped_and_missing_fields_fail_closed():
    stringly = CONFIRMED_BLOCK.replace('"order_confirmed": true', '"order_confirmed": "true"')
    assert parse_order_block(stringly).reason == REASON_MALFORMED
    missing_total = CONFIRMED_BLOCK.replace(',\n  "total": "19.000 DT"', "")
    assert parse_order_block(missing_total).reason == REASON_MALFORMED
    as_list = "ok ```json\n[1, 2]\n```"
    assert parse_order_block(as_list).reason == REASON_MALFORMED


def test_unknown_fields_are_ignored():
    text = CONFIRMED_BLOCK.replace('"total": "19.000 DT"', '"total": "19.000 DT", "notes": "sans oignons"')
    assert isinstance(parse_order_block(text), ValidOrder)


def test_only_first_block_is_considered():
    text = CONFIRMED_BLOCK + "\nPS:\n```\nnot json\n```"
    result = parse_order_block(text)
    assert isinstance(result, ValidOrder)
    assert result.visible_text.endswith("PS:\n```\nnot json\n```")


def test_pipeline_persists_confirmed_order_once():
    async def scenario() -> None:
        sink = RecordingSink()
        reply = await OrderExtractionPipeline(sink).process(CONFIRMED_BLOCK)
        assert len(sink.records) == 1
        record = sink.records[0]
        assert record.customer_name == "Jean"
        assert record.phone_number == "0612345678"
        assert record.address == "10 rue de la Paix"
        assert record.items == "1 Pizza Margherita, 1 Coca"
        assert record.total == "19.000 DT"
        assert record.status == "Reçu"
        assert "```" not in reply.visible_text
        assert reply.order is not None
        assert reply.stage is ReplyStage.PERSISTED

    run_async(scenario())


def test_pipeline_skips_persistence_without_block():
    async def scenario() -> None:
        sink = RecordingSink()
        reply = await OrderExtractionPipeline(sink).process("  Bonjour !  ")
        assert sink.records == []
        assert reply.visible_text == "Bonjour !"
        assert reply.stage is ReplyStage.NO_BLOCK

    run_async(scenario())


def test_pipeline_skips_persistence_for_unconfirmed_order():
    async def scenario() -> None:
        sink = RecordingSink()
        text = CONFIRMED_BLOCK.replace('"order_confirmed": true', '"order_confirmed": false')
        reply = await OrderExtractionPipeline(sink).process(text)
        assert sink.records == []
        assert "order_confirmed" not in reply.visible_text
        assert reply.stage is ReplyStage.BLOCK_INVALID

    run_async(scenario())


def test_pipeline_swallows_malformed_block():
    async def scenario() -> None:
        sink = RecordingSink()
        reply = await OrderExtractionPipeline(sink).process("Merci !\n```json\n{oops}\n```")
        assert sink.records == []
        assert reply.visible_text == "Merci !"
        assert reply.order is None

    run_async(scenario())


def test_persistence_failure_keeps_clean_reply():
    async def scenario() -> None:
        for sink in (RecordingSink(result=False), RecordingSink(error=RuntimeError("quota"))):
            reply = await OrderExtractionPipeline(sink).process(CONFIRMED_BLOCK)
            assert len(sink.records) == 1
            assert reply.stage is ReplyStage.PERSIST_FAILED
            assert reply.visible_text == "Merci Jean ! Votre commande a bien été enregistrée."

    run_async(scenario())


class SlowSheetsService:
    """Sheets stand-in whose append blocks its worker thread, then succeeds."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.written: list[list] = []

    def spreadsheets(self):
        return self

    def values(self):
        return self

    def append(self, **kwargs):
        self.body = kwargs["body"]
        return self

    def execute(self):
        time.sleep(self.delay)
        self.written.extend(self.body["values"])
        return {"updates": {"updatedRows": 1}}


def test_slow_persistence_is_reported_as_unconfirmed(caplog):
    caplog.set_level(logging.ERROR, logger="order_bridge.orders")
    service = SlowSheetsService(delay=0.2)
    sink = SheetsOrderSink("sheet-id", "Commandes!A:G", service=service)

    async def scenario():
        return await OrderExtractionPipeline(sink, persist_timeout_s=0.05).process(CONFIRMED_BLOCK)

    reply = run_async(scenario())
    assert reply.stage is ReplyStage.PERSIST_UNCONFIRMED
    assert "```" not in reply.visible_text
    messages = [record.getMessage() for record in caplog.records]
    assert any("ORDER SAVE TIMED OUT" in message for message in messages)
    assert not any("ORDER NOT SAVED" in message for message in messages)
    # The abandoned worker thread still lands the row.
    assert len(service.written) == 1
    assert service.written[0][1] == "Jean"
