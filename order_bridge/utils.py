import re
import unicodedata


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for keyword matching against store knowledge.
    Inputs/Outputs: Input is a raw string; output is a lowercase ASCII-only string with
        accents removed and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by knowledge retrieval.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: "crème" and "creme" stop matching and context retrieval degrades.
    Testing Notes: Validate French text is normalized (e.g., "Crème Brûlée" -> "creme brulee").
    """
    # Lowercase and strip diacritics for consistent matching.
    if not text:
        return ""
    lowered = text.lower().replace("œ", "oe").replace("æ", "ae")
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s\-_/.]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def preview(text: str, limit: int = 50) -> str:
    """Shorten text for log lines."""
    if not text:
        return ""
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[:limit] + "..."
