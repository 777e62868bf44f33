from __future__ import annotations

"""Markdown store-information lookup used to ground replies in menu and price data."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .utils import normalize_text

logger = logging.getLogger("order_bridge.knowledge")

CONTEXT_HEADER = "\n\nINFORMATIONS DU MAGASIN:\n"

# Common French words that would otherwise match every chunk.
_STOPWORDS = {
    "le", "la", "les", "un", "une", "des", "de", "du", "et", "ou", "a", "au", "aux",
    "je", "tu", "il", "elle", "on", "nous", "vous", "ils", "est", "c", "j", "l", "d",
    "qu", "que", "qui", "pour", "avec", "sur", "dans", "en", "pas", "ne", "me", "moi",
    "mon", "ma", "mes", "votre", "vos", "bonjour", "merci", "svp", "oui", "non",
}


class KnowledgeStore:
    """Chunk the store-info markdown by heading and retrieve chunks by keyword overlap."""

    def __init__(self, knowledge_path: Path, topk: int = 4) -> None:
        self._path = knowledge_path
        self._topk = topk
        self._chunks: Optional[List[Dict[str, str]]] = None
        self._mtime: float = 0.0

    async def get_context_for_query(self, text: str) -> str:
        """Purpose: Build the context fragment appended to the system prompt.
        Inputs/Outputs: Input is the user message; output is a header plus matching chunks,
            or an empty string when nothing matches.
        Side Effects / State: May (re)load the markdown file off the event loop.
        Dependencies: Uses retrieve_topk.
        Failure Modes: Missing knowledge file returns empty string; IO errors propagate.
        If Removed: Replies lose store prices and menu details.
        Testing Notes: Query a menu item and verify its section is returned.
        """
        chunks = await asyncio.to_thread(self.retrieve_topk, text, self._topk)
        if not chunks:
            return ""
        return CONTEXT_HEADER + "\n\n".join(chunks)

    def retrieve_topk(self, query: str, topk: int = 4) -> List[str]:
        """Return up to `topk` formatted chunks ranked by keyword overlap with `query`."""
        if not query or topk <= 0:
            return []
        if os.getenv("KNOWLEDGE_ENABLED", "1") == "0":
            return []

        chunks = self._load_chunks()
        if not chunks:
            return []

        query_tokens = [token for token in _tokenize(query) if token not in _STOPWORDS]
        if not query_tokens:
            return []

        scored: List[Tuple[float, Dict[str, str]]] = []
        for chunk in chunks:
            score = _score_chunk(query_tokens, chunk["content"], chunk["title"], chunk["section"])
            if score > 0:
                scored.append((score, chunk))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [_format_chunk(chunk) for _, chunk in scored[:topk]]

    def chunk_markdown(self, md_text: str) -> List[Dict[str, str]]:
        """Split markdown into chunks on `##` and `###` headings."""
        if not md_text:
            return []

        chunks: List[Dict[str, str]] = []
        section = ""
        title = ""
        buffer: List[str] = []

        def flush() -> None:
            nonlocal buffer
            content = "\n".join(buffer).strip()
            buffer = []
            if not content:
                return
            chunks.append({"section": section, "title": title or section, "content": content})

        for line in md_text.splitlines():
            if line.startswith("## "):
                flush()
                section = line[3:].strip()
                title = section
                continue
            if line.startswith("### "):
                flush()
                title = line[4:].strip()
                continue
            buffer.append(line)

        flush()
        return chunks

    def _load_chunks(self) -> List[Dict[str, str]]:
        if not self._path.exists():
            if self._chunks is None:
                logger.warning("[Knowledge] Store info file not found: %s", self._path)
                self._chunks = []
            return self._chunks
        mtime = self._path.stat().st_mtime
        if self._chunks is None or mtime != self._mtime:
            self._chunks = self.chunk_markdown(self._path.read_text(encoding="utf-8"))
            self._mtime = mtime
            logger.info("[Knowledge] Loaded %d chunks from %s", len(self._chunks), self._path.name)
        return self._chunks


def _tokenize(text: str) -> List[str]:
    return [token for token in normalize_text(text).split() if token]


def _score_chunk(tokens: List[str], content: str, title: str, section: str) -> float:
    content_counts: Dict[str, int] = {}
    for token in _tokenize(content):
        content_counts[token] = content_counts.get(token, 0) + 1
    if not content_counts:
        return 0.0

    title_tokens = set(_tokenize(title))
    section_tokens = set(_tokenize(section))

    score = 0.0
    for token in tokens:
        score += content_counts.get(token, 0)
        if token in title_tokens:
            score += 2.0
        if token in section_tokens:
            score += 1.0
    return score


def _format_chunk(chunk: Dict[str, str]) -> str:
    header_parts = [part for part in (chunk.get("section", ""), chunk.get("title", "")) if part]
    header = " / ".join(dict.fromkeys(header_parts))
    return f"{header}\n{chunk.get('content', '')}".strip()
