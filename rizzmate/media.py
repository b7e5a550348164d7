"""Modality normalization: turn text, image, voice and screenshot input into text."""

from __future__ import annotations

import asyncio
import io
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict

from fastapi import UploadFile
from PIL import Image, ImageOps, UnidentifiedImageError

from . import openai_client
from .config import (
    IMAGE_JPEG_QUALITY,
    IMAGE_MAX_DIMENSION,
    IMAGE_VISION_MAX_TOKENS,
    MAX_UPLOAD_FILE_SIZE_BYTES,
    SCREENSHOT_VISION_MAX_TOKENS,
)
from .errors import InvalidInput, PayloadTooLarge, UnsupportedMedia

MODALITY_TEXT = "text"
MODALITY_IMAGE = "image"
MODALITY_VOICE = "voice"
MODALITY_SCREENSHOT = "screenshot"
MODALITIES = (MODALITY_TEXT, MODALITY_IMAGE, MODALITY_VOICE, MODALITY_SCREENSHOT)

IMAGE_DISPLAY_TEXT = "Image uploaded"
SCREENSHOT_DISPLAY_TEXT = "Screenshot uploaded"

IMAGE_ANALYSIS_INSTRUCTION = (
    "Analyze this image and provide context for a flirtatious conversation. "
    "Describe what you see, the mood, and the setting, and suggest how to respond "
    "flirtatiously. Keep it respectful and appropriate."
)
SCREENSHOT_ANALYSIS_INSTRUCTION = (
    "This is a screenshot. Read the visible text and conversation context, and "
    "suggest how to respond flirtatiously or how to start a conversation. Focus on "
    "any messages, social media posts, or content that could be used for "
    "conversation. Be creative and playful in your suggestions."
)


@dataclass
class MediaPayload:
    """Raw uploaded media as received from the client."""

    raw_bytes: bytes
    filename: str
    mime_type: str


@dataclass
class NormalizedInput:
    """Canonical textual form of one inbound message."""

    modality: str
    display_text: str
    prompt_text: str
    analysis: str | None = None
    transcription: str | None = None

    @property
    def annotation(self) -> str | None:
        return self.analysis


def sanitize_filename(filename: str | None, fallback: str) -> str:
    """Return a safe base filename."""
    raw_name = filename or fallback
    base_name = Path(raw_name).name.strip() or fallback
    sanitized = "".join(
        character if character.isalnum() or character in {"-", "_", ".", " "} else "_"
        for character in base_name
    ).strip()
    return (sanitized or fallback)[:255]


def normalize_upload_mime(upload_file: UploadFile, filename: str) -> str:
    """Best-effort MIME type normalization for uploaded files."""
    content_type = (upload_file.content_type or "").split(";", 1)[0].strip().lower()
    if content_type:
        return content_type

    guessed, _ = mimetypes.guess_type(filename)
    if isinstance(guessed, str) and guessed:
        return guessed.lower()
    return "application/octet-stream"


async def read_upload(upload_file: UploadFile | None, fallback_name: str) -> MediaPayload | None:
    """Read an uploaded file into a MediaPayload, or None when nothing was sent."""
    if upload_file is None:
        return None

    safe_name = sanitize_filename(upload_file.filename, fallback_name)
    mime_type = normalize_upload_mime(upload_file, safe_name)
    raw_bytes = await upload_file.read()
    await upload_file.close()
    return MediaPayload(raw_bytes=raw_bytes, filename=safe_name, mime_type=mime_type)


def _is_accepted_mime(modality: str, mime_type: str) -> bool:
    if modality == MODALITY_VOICE:
        return mime_type.startswith("audio/")
    return mime_type.startswith("image/")


def validate_payload(modality: str, payload: Any):
    """
    Reject malformed input before any quota decision or external call.

    Text must be non-blank; media must be present, of an accepted MIME family
    and within the upload size limit.
    """
    if modality not in MODALITIES:
        raise InvalidInput(f"Unsupported modality '{modality}'.")

    if modality == MODALITY_TEXT:
        if not isinstance(payload, str) or not payload.strip():
            raise InvalidInput("Message is required.")
        return

    if not isinstance(payload, MediaPayload) or not payload.raw_bytes:
        raise InvalidInput(f"{modality.capitalize()} file is required.")

    if not _is_accepted_mime(modality, payload.mime_type):
        expected = "audio" if modality == MODALITY_VOICE else "image"
        raise UnsupportedMedia(
            f"Unsupported file type '{payload.mime_type}'. Only {expected} files are allowed."
        )

    if len(payload.raw_bytes) > MAX_UPLOAD_FILE_SIZE_BYTES:
        max_mb = MAX_UPLOAD_FILE_SIZE_BYTES // (1024 * 1024)
        raise PayloadTooLarge(f"File '{payload.filename}' exceeds the {max_mb} MB limit.")


def downscale_image(raw_bytes: bytes) -> bytes:
    """Fit an image inside the maximum dimension box and re-encode it as JPEG."""
    try:
        with Image.open(io.BytesIO(raw_bytes)) as source:
            image = ImageOps.exif_transpose(source)
            image.thumbnail((IMAGE_MAX_DIMENSION, IMAGE_MAX_DIMENSION))
            if image.mode != "RGB":
                image = image.convert("RGB")
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=IMAGE_JPEG_QUALITY)
            return buffer.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as error:
        raise UnsupportedMedia("The uploaded file is not a readable image.") from error


async def normalize_text(payload: str, profile: Dict[str, Any]) -> NormalizedInput:
    validate_payload(MODALITY_TEXT, payload)
    text = payload.strip()
    return NormalizedInput(modality=MODALITY_TEXT, display_text=text, prompt_text=text)


async def _analyze_media(
    modality: str,
    payload: MediaPayload,
    instruction: str,
    max_tokens: int,
    display_text: str,
) -> NormalizedInput:
    validate_payload(modality, payload)
    optimized = await asyncio.to_thread(downscale_image, payload.raw_bytes)
    analysis = await openai_client.analyze_image(
        optimized,
        instruction,
        max_tokens=max_tokens,
        mime_type="image/jpeg",
    )
    return NormalizedInput(
        modality=modality,
        display_text=display_text,
        prompt_text=analysis,
        analysis=analysis,
    )


async def normalize_image(payload: MediaPayload, profile: Dict[str, Any]) -> NormalizedInput:
    return await _analyze_media(
        MODALITY_IMAGE,
        payload,
        IMAGE_ANALYSIS_INSTRUCTION,
        IMAGE_VISION_MAX_TOKENS,
        IMAGE_DISPLAY_TEXT,
    )


async def normalize_screenshot(
    payload: MediaPayload, profile: Dict[str, Any]
) -> NormalizedInput:
    return await _analyze_media(
        MODALITY_SCREENSHOT,
        payload,
        SCREENSHOT_ANALYSIS_INSTRUCTION,
        SCREENSHOT_VISION_MAX_TOKENS,
        SCREENSHOT_DISPLAY_TEXT,
    )


async def normalize_voice(payload: MediaPayload, profile: Dict[str, Any]) -> NormalizedInput:
    """Transcribe a voice note; an empty transcript still proceeds to generation."""
    validate_payload(MODALITY_VOICE, payload)
    style = profile.get("conversation_style") or {}
    transcript = await openai_client.transcribe_audio(
        payload.raw_bytes,
        payload.filename,
        payload.mime_type,
        language=style.get("language") or "en",
    )
    return NormalizedInput(
        modality=MODALITY_VOICE,
        display_text=transcript,
        prompt_text=transcript,
        transcription=transcript,
    )


NORMALIZERS: Dict[str, Callable[[Any, Dict[str, Any]], Awaitable[NormalizedInput]]] = {
    MODALITY_TEXT: normalize_text,
    MODALITY_IMAGE: normalize_image,
    MODALITY_VOICE: normalize_voice,
    MODALITY_SCREENSHOT: normalize_screenshot,
}


async def normalize_input(
    modality: str, payload: Any, profile: Dict[str, Any]
) -> NormalizedInput:
    """Dispatch to the normalizer registered for `modality`."""
    normalizer = NORMALIZERS.get(modality)
    if normalizer is None:
        raise InvalidInput(f"Unsupported modality '{modality}'.")
    return await normalizer(payload, profile)
