from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger("order_bridge.prompts")

SYSTEM_PROMPT_FILE = "system_prompt.md"


def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt file as UTF-8 text, dropping a BOM and surrounding blanks.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: None; reads the filesystem.
    Dependencies: Uses Path.read_text/read_bytes; used when the responder is built.
    Failure Modes: Missing file raises FileNotFoundError; invalid UTF-8 bytes are dropped.
    If Removed: The assistant has no instructions for the order block format.
    Testing Notes: Validate BOM-stripping and fallback decoding on non-UTF8 files.
    """
    # Read as UTF-8 and fall back to a tolerant decode if needed.
    try:
        text = prompt_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.warning("[Prompts] %s is not valid UTF-8; undecodable bytes dropped.", prompt_path.name)
        text = prompt_path.read_bytes().decode("utf-8", errors="ignore")
    return text.lstrip("\ufeff").strip()


def load_system_prompt(prompts_dir: Path) -> str:
    """Load the base system prompt that the retrieved store context is appended to."""
    return load_prompt(prompts_dir / SYSTEM_PROMPT_FILE)
