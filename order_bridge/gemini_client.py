from __future__ import annotations

from typing import Optional

import google.generativeai as genai
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from .config import Settings

DEFAULT_SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_ONLY_HIGH,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
}


class GeminiClient:
    """Thin async wrapper around the Gemini SDK for single-turn chat completions."""

    def __init__(
        self,
        settings: Settings,
        temperature: float = 0.7,
        max_output_tokens: int = 800,
    ) -> None:
        """Purpose: Configure the Gemini SDK with the API key and generation defaults.
        Inputs/Outputs: Input is Settings plus sampling knobs; no return value.
        Side Effects / State: Configures the SDK global API key.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if API key or model name is missing.
        If Removed: Replies cannot be generated and every message gets the fallback text.
        Testing Notes: Validate missing key raises ValueError.
        """
        # Fail fast on missing configuration, then keep generation defaults.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        self._model_name = _normalize_model_name(settings.gemini_model)
        if not self._model_name:
            raise ValueError("Gemini model name is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens

    async def complete(self, system_prompt: str, user_text: str, model: Optional[str] = None) -> str:
        """Purpose: Generate the assistant completion for one user message.
        Inputs/Outputs: Inputs are the augmented system prompt and user text; returns text.
        Side Effects / State: Network call to the Gemini API.
        Dependencies: Uses genai.GenerativeModel.generate_content_async.
        Failure Modes: SDK transport/quota errors propagate; callers degrade on them.
        If Removed: The responder has no completion to extract orders from.
        Testing Notes: Replace with a fake exposing the same coroutine in unit tests.
        """
        # System prompt changes with retrieved context, so the model is built per call.
        model_name = _normalize_model_name(model) if model else self._model_name
        generative_model = genai.GenerativeModel(model_name, system_instruction=system_prompt)
        response = await generative_model.generate_content_async(
            user_text,
            generation_config={
                "temperature": self._temperature,
                "max_output_tokens": self._max_output_tokens,
            },
            safety_settings=DEFAULT_SAFETY_SETTINGS,
        )
        text: Optional[str] = getattr(response, "text", None)
        return (text or "").strip()


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip the "models/" prefix and whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
