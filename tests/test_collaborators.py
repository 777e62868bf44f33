from __future__ import annotations

import asyncio
import json
from datetime import datetime

import httpx
import pytest

from order_bridge.config import load_settings
from order_bridge.graph_api import GraphApiClient, GraphApiError
from order_bridge.knowledge_store import CONTEXT_HEADER, KnowledgeStore
from order_bridge.models import OrderRecord
from order_bridge.prompt_loader import load_prompt, load_system_prompt
from order_bridge.sheets_client import SheetsOrderSink, order_to_row
from order_bridge.utils import normalize_text, preview


def run_async(coro):
    return asyncio.run(coro)


MENU = """# Store

## Pizzas
### Pizza Margherita
Sauce tomate, mozzarella. Prix: 14.000 DT.
### Pizza Reine
Jambon, champignons. Prix: 17.000 DT.

## Desserts
### Crème brûlée
Prix: 6.500 DT.
"""

RECORD = OrderRecord(
    customer_name="Jean",
    phone_number="0612345678",
    address="10 rue de la Paix",
    items="1 Pizza Margherita",
    total="14.000 DT",
)


def test_normalize_text_strips_accents():
    assert normalize_text("Crème  Brûlée !") == "creme brulee"
    assert preview("a" * 60).endswith("...")


def test_knowledge_store_returns_matching_sections(tmp_path):
    path = tmp_path / "store_info.md"
    path.write_text(MENU, encoding="utf-8")
    store = KnowledgeStore(path)

    context = run_async(store.get_context_for_query("Je voudrais une margherita"))
    assert context.startswith(CONTEXT_HEADER)
    assert "Pizza Margherita" in context
    assert "Crème brûlée" not in context

    assert "Crème brûlée" in run_async(store.get_context_for_query("une creme brulee"))


def test_knowledge_store_without_match_or_file_is_empty(tmp_path):
    path = tmp_path / "store_info.md"
    path.write_text(MENU, encoding="utf-8")
    assert run_async(KnowledgeStore(path).get_context_for_query("bonjour merci")) == ""
    assert run_async(KnowledgeStore(tmp_path / "missing.md").get_context_for_query("pizza")) == ""


def test_settings_defaults_and_overrides(monkeypatch):
    monkeypatch.delenv("DEDUP_TTL_SECONDS", raising=False)
    monkeypatch.setenv("PAGE_ID", "123")
    monkeypatch.setenv("SERIALIZE_CONVERSATIONS", "0")
    settings = load_settings()
    assert settings.dedup_ttl_s == 15
    assert settings.redis_max_retries >= 0
    assert settings.page_id == "123"
    assert settings.serialize_conversations is False
    assert settings.knowledge_path.name == "store_info.md"

    monkeypatch.setenv("DEDUP_TTL_SECONDS", "soon")
    with pytest.raises(ValueError):
        load_settings()


def test_prompt_loader_strips_bom(tmp_path):
    path = tmp_path / "prompt.md"
    path.write_bytes("\ufeffBonjour\n".encode("utf-8"))
    assert load_prompt(path) == "Bonjour"


def test_bundled_system_prompt_documents_block_format():
    prompt = load_system_prompt(load_settings().prompts_dir)
    for field_name in ("order_confirmed", "customer_name", "phone_number", "address", "items", "total"):
        assert field_name in prompt


def _graph_client(monkeypatch, handler) -> GraphApiClient:
    monkeypatch.setenv("PAGE_ID", "page-1")
    monkeypatch.setenv("PAGE_ACCESS_TOKEN", "token")
    monkeypatch.setenv("GRAPH_API_VERSION", "v21.0")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GraphApiClient(load_settings(), client=client)


def test_send_text_message_posts_sender_actions_then_message(monkeypatch):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"recipient_id": "psid-1", "message_id": "m.1"})

    async def scenario() -> dict:
        client = _graph_client(monkeypatch, handler)
        return await client.send_text_message("psid-1", "Bonjour")

    result = run_async(scenario())
    assert result["message_id"] == "m.1"
    bodies = [json.loads(request.content) for request in requests]
    assert [body.get("sender_action") for body in bodies[:2]] == ["mark_seen", "typing_on"]
    assert bodies[2] == {"recipient": {"id": "psid-1"}, "message": {"text": "Bonjour"}}
    assert requests[2].url.path == "/v21.0/page-1/messages"
    assert requests[2].url.params["access_token"] == "token"


def test_send_text_message_raises_on_api_error(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if "sender_action" in body:
            return httpx.Response(500, text="busy")
        return httpx.Response(400, json={"error": {"message": "Invalid recipient"}})

    async def scenario() -> None:
        client = _graph_client(monkeypatch, handler)
        await client.send_text_message("psid-1", "Bonjour")

    with pytest.raises(GraphApiError) as exc_info:
        run_async(scenario())
    assert exc_info.value.status_code == 400


class FakeSheetsService:
    def __init__(self, response: dict) -> None:
        self.response = response
        self.calls: list[dict] = []

    def spreadsheets(self):
        return self

    def values(self):
        return self

    def append(self, **kwargs):
        self.calls.append(kwargs)
        return self

    def execute(self):
        return self.response


def test_order_to_row_layout():
    row = order_to_row(RECORD, received_at=datetime(2026, 1, 2, 3, 4, 5))
    assert row == ["2026-01-02 03:04:05", "Jean", "0612345678", "10 rue de la Paix",
                   "1 Pizza Margherita", "14.000 DT", "Reçu"]


def test_sheets_sink_appends_row():
    service = FakeSheetsService({"updates": {"updatedRows": 1}})
    sink = SheetsOrderSink("sheet-id", "Commandes!A:G", service=service)
    assert run_async(sink.append_order(RECORD)) is True
    call = service.calls[0]
    assert call["spreadsheetId"] == "sheet-id"
    assert call["range"] == "Commandes!A:G"
    assert call["body"]["values"][0][1:] == ["Jean", "0612345678", "10 rue de la Paix",
                                              "1 Pizza Margherita", "14.000 DT", "Reçu"]


def test_sheets_sink_reports_failures():
    assert run_async(SheetsOrderSink("", "A:G", service=FakeSheetsService({})).append_order(RECORD)) is False
    empty = FakeSheetsService({"updates": {}})
    assert run_async(SheetsOrderSink("sheet-id", "A:G", service=empty).append_order(RECORD)) is False
