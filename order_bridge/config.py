from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for the webhook bridge, its collaborators, and timeouts."""
    gemini_api_key: str
    gemini_model: str
    redis_url: str
    dedup_ttl_s: int
    redis_max_retries: int
    redis_backoff_step_ms: int
    redis_backoff_cap_ms: int
    store_timeout_s: float
    context_timeout_s: float
    llm_timeout_s: float
    persist_timeout_s: float
    send_timeout_s: float
    page_id: str
    page_access_token: str
    graph_api_version: str
    sheets_spreadsheet_id: str
    sheets_range: str
    google_credentials_path: Optional[Path]
    knowledge_path: Path
    prompts_dir: Path
    serialize_conversations: bool


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    If Removed: App cannot wire the cache, LLM, sheets, or transport and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve knowledge and credential paths, then build Settings.
    knowledge_path = os.getenv("KNOWLEDGE_PATH")
    if knowledge_path:
        knowledge_file = Path(knowledge_path)
    else:
        knowledge_file = (BASE_DIR / "knowledge" / "store_info.md").resolve()

    credentials = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        dedup_ttl_s=int(os.getenv("DEDUP_TTL_SECONDS", "15")),
        redis_max_retries=int(os.getenv("REDIS_MAX_RETRIES", "5")),
        redis_backoff_step_ms=int(os.getenv("REDIS_BACKOFF_STEP_MS", "50")),
        redis_backoff_cap_ms=int(os.getenv("REDIS_BACKOFF_CAP_MS", "500")),
        store_timeout_s=float(os.getenv("STORE_TIMEOUT_SECONDS", "1.0")),
        context_timeout_s=float(os.getenv("CONTEXT_TIMEOUT_SECONDS", "5.0")),
        llm_timeout_s=float(os.getenv("LLM_TIMEOUT_SECONDS", "30.0")),
        persist_timeout_s=float(os.getenv("PERSIST_TIMEOUT_SECONDS", "10.0")),
        send_timeout_s=float(os.getenv("SEND_TIMEOUT_SECONDS", "10.0")),
        page_id=os.getenv("PAGE_ID", ""),
        page_access_token=os.getenv("PAGE_ACCESS_TOKEN", ""),
        graph_api_version=os.getenv("GRAPH_API_VERSION", "v21.0"),
        sheets_spreadsheet_id=os.getenv("SHEETS_SPREADSHEET_ID", ""),
        sheets_range=os.getenv("SHEETS_RANGE", "Commandes!A:G"),
        google_credentials_path=Path(credentials) if credentials else None,
        knowledge_path=knowledge_file,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        serialize_conversations=os.getenv("SERIALIZE_CONVERSATIONS", "1") != "0",
    )
