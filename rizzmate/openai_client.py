"""OpenAI-compatible API client for chat, vision and transcription requests."""

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import (
    MODEL_TIMEOUT_SECONDS,
    OPENAI_API_BASE,
    OPENAI_API_KEY,
    REPLY_MODEL,
    TRANSCRIPTION_MODEL,
    VISION_MODEL,
)
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


def _auth_headers() -> Dict[str, str]:
    """Return bearer headers, failing fast when the API key is missing."""
    if not OPENAI_API_KEY:
        raise UpstreamUnavailable("AI service is not configured on server.")
    return {"Authorization": f"Bearer {OPENAI_API_KEY}"}


def to_data_uri(mime_type: str, raw_bytes: bytes) -> str:
    """Encode bytes as a data URI."""
    encoded = base64.b64encode(raw_bytes).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


async def query_model(
    model: str,
    messages: List[Dict[str, Any]],
    *,
    max_tokens: int,
    temperature: Optional[float] = None,
    presence_penalty: Optional[float] = None,
    frequency_penalty: Optional[float] = None,
    timeout: float = MODEL_TIMEOUT_SECONDS,
) -> Optional[str]:
    """
    Query a single chat-completions model.

    Args:
        model: Model identifier (e.g., "gpt-4o")
        messages: List of message dicts with 'role' and 'content'
        timeout: Request timeout in seconds

    Returns:
        The assistant message content, or None when the model sent none.

    Raises:
        UpstreamUnavailable: on transport errors, timeouts, HTTP errors or
        malformed payloads.
    """
    headers = {**_auth_headers(), "Content-Type": "application/json"}

    payload: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if temperature is not None:
        payload["temperature"] = temperature
    if presence_penalty is not None:
        payload["presence_penalty"] = presence_penalty
    if frequency_penalty is not None:
        payload["frequency_penalty"] = frequency_penalty

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                f"{OPENAI_API_BASE}/chat/completions",
                headers=headers,
                json=payload,
            )
            response.raise_for_status()
            data = response.json()
    except httpx.TimeoutException as error:
        logger.warning("Model %s timed out: %s", model, error)
        raise UpstreamUnavailable("AI service timed out. Please try again.") from error
    except (httpx.HTTPError, ValueError) as error:
        logger.warning("Error querying model %s: %s", model, error)
        raise UpstreamUnavailable("AI service is unavailable. Please try again.") from error

    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as error:
        logger.warning("Unexpected response shape from model %s", model)
        raise UpstreamUnavailable("AI service returned an invalid response.") from error

    if not isinstance(message, dict):
        return None
    return message.get("content")


async def complete(
    system_prompt: str,
    turns: List[Dict[str, str]],
    *,
    max_tokens: int,
    temperature: float,
    presence_penalty: Optional[float] = None,
    frequency_penalty: Optional[float] = None,
) -> str:
    """Generate one reply from a system prompt and ordered chat turns."""
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    messages.extend(turns)

    return await query_model(
        REPLY_MODEL,
        messages,
        max_tokens=max_tokens,
        temperature=temperature,
        presence_penalty=presence_penalty,
        frequency_penalty=frequency_penalty,
    )


async def analyze_image(
    image_bytes: bytes,
    instruction: str,
    *,
    max_tokens: int,
    mime_type: str = "image/jpeg",
) -> str:
    """Ask the vision model to describe an image following an instruction."""
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": instruction},
                {
                    "type": "image_url",
                    "image_url": {"url": to_data_uri(mime_type, image_bytes)},
                },
            ],
        }
    ]
    content = await query_model(VISION_MODEL, messages, max_tokens=max_tokens)
    if not isinstance(content, str) or not content.strip():
        raise UpstreamUnavailable("Image analysis returned no description.")
    return content.strip()


async def transcribe_audio(
    audio_bytes: bytes,
    filename: str,
    mime_type: str,
    language: str | None = None,
    timeout: float = MODEL_TIMEOUT_SECONDS,
) -> str:
    """Transcribe an audio clip; an empty transcript is returned as ''."""
    data = {"model": TRANSCRIPTION_MODEL}
    if isinstance(language, str) and language.strip():
        data["language"] = language.strip()

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                f"{OPENAI_API_BASE}/audio/transcriptions",
                headers=_auth_headers(),
                data=data,
                files={"file": (filename, audio_bytes, mime_type)},
            )
            response.raise_for_status()
            payload = response.json()
    except httpx.TimeoutException as error:
        logger.warning("Transcription timed out: %s", error)
        raise UpstreamUnavailable("Transcription timed out. Please try again.") from error
    except (httpx.HTTPError, ValueError) as error:
        logger.warning("Transcription request failed: %s", error)
        raise UpstreamUnavailable("Transcription service is unavailable.") from error

    text = payload.get("text") if isinstance(payload, dict) else None
    return text.strip() if isinstance(text, str) else ""
