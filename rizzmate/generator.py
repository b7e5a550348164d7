"""Reply generation on top of the chat-completions client."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

from . import openai_client
from .config import (
    ANALYSIS_REPLY_MAX_TOKENS,
    GENERATION_MAX_ATTEMPTS,
    GENERATION_RETRY_DELAY_SECONDS,
    REPLY_FREQUENCY_PENALTY,
    REPLY_MAX_TOKENS,
    REPLY_PRESENCE_PENALTY,
    REPLY_TEMPERATURE,
    STARTERS_MAX_TOKENS,
    STARTERS_TEMPERATURE,
)
from .errors import GenerationFailed, UpstreamUnavailable
from .prompts import build_system_prompt

logger = logging.getLogger(__name__)

STARTERS_REQUEST = (
    "Generate 5 creative conversation starters based on the profile information. "
    "Make them engaging and appropriate for the context."
)


def _analysis_request(analysis_text: str, modality: str) -> str:
    if modality == "screenshot":
        return (
            f'Based on this screenshot analysis: "{analysis_text}", suggest a '
            "flirtatious response or conversation starter."
        )
    return f'Based on this image analysis: "{analysis_text}", suggest a flirtatious response.'


async def _with_retries(
    operation: Callable[[], Awaitable[Any]],
    description: str,
) -> str:
    """Run a completion call, retrying upstream failures and rejecting empty replies."""
    attempts = max(1, GENERATION_MAX_ATTEMPTS)
    last_error: Exception | None = None

    for attempt in range(attempts):
        try:
            content = await operation()
        except UpstreamUnavailable as error:
            last_error = error
            logger.warning(
                "%s failed (attempt %d/%d): %s", description, attempt + 1, attempts, error
            )
        else:
            if isinstance(content, str) and content.strip():
                return content.strip()
            last_error = None
            logger.warning(
                "%s returned an empty reply (attempt %d/%d)", description, attempt + 1, attempts
            )

        if attempt + 1 < attempts:
            await asyncio.sleep(GENERATION_RETRY_DELAY_SECONDS * (attempt + 1))

    raise GenerationFailed(f"Failed to generate {description.lower()}.") from last_error


async def generate(
    system_prompt: str,
    history: List[Dict[str, str]],
    new_user_text: str,
) -> str:
    """Generate a reply to `new_user_text` given the persona prompt and prior turns."""
    turns = list(history) + [{"role": "user", "content": new_user_text}]
    return await _with_retries(
        lambda: openai_client.complete(
            system_prompt,
            turns,
            max_tokens=REPLY_MAX_TOKENS,
            temperature=REPLY_TEMPERATURE,
            presence_penalty=REPLY_PRESENCE_PENALTY,
            frequency_penalty=REPLY_FREQUENCY_PENALTY,
        ),
        "Reply",
    )


async def generate_from_analysis(
    system_prompt: str,
    analysis_text: str,
    modality: str = "image",
) -> str:
    """Generate a reply conditioned on an image or screenshot analysis."""
    turns = [{"role": "user", "content": _analysis_request(analysis_text, modality)}]
    return await _with_retries(
        lambda: openai_client.complete(
            system_prompt,
            turns,
            max_tokens=ANALYSIS_REPLY_MAX_TOKENS,
            temperature=REPLY_TEMPERATURE,
        ),
        "Reply",
    )


async def generate_starters(profile: Dict[str, Any]) -> str:
    """Ask for five conversation openers tailored to the profile."""
    return await _with_retries(
        lambda: openai_client.complete(
            build_system_prompt(profile),
            [{"role": "user", "content": STARTERS_REQUEST}],
            max_tokens=STARTERS_MAX_TOKENS,
            temperature=STARTERS_TEMPERATURE,
        ),
        "Conversation starters",
    )
