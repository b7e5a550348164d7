"""Configuration for the RizzMate API."""

import os
from dotenv import load_dotenv

load_dotenv()

# Runtime environment (development | production)
DEVELOPMENT_ENV_NAMES = {"development", "dev", "local"}


def _strip_wrapping_quotes(raw_value: str) -> str:
    """Trim whitespace and optional matching single/double quotes."""
    normalized_value = raw_value.strip()
    while (
        len(normalized_value) >= 2
        and normalized_value[0] == normalized_value[-1]
        and normalized_value[0] in {"'", '"'}
    ):
        normalized_value = normalized_value[1:-1].strip()
    return normalized_value


def resolve_app_env(
    raw_rizzmate_env: str | None,
    raw_app_env: str | None,
    raw_environment: str | None,
) -> str:
    """Resolve runtime environment from supported env var fallbacks."""
    raw_value = raw_rizzmate_env or raw_app_env or raw_environment or "production"
    return _strip_wrapping_quotes(raw_value).lower()


def _parse_cors_origins(raw_origins: str | None) -> list[str]:
    """Parse a comma-separated list of CORS origins."""
    if not raw_origins:
        return []

    normalized_origins_value = _strip_wrapping_quotes(raw_origins)
    if not normalized_origins_value:
        return []

    parsed_origins: list[str] = []
    seen_origins: set[str] = set()
    for origin in normalized_origins_value.split(","):
        normalized_origin = _strip_wrapping_quotes(origin).rstrip("/")
        if not normalized_origin:
            continue
        if normalized_origin == "*":
            raise ValueError(
                "CORS_ALLOW_ORIGINS does not support '*' when credentials are enabled."
            )
        if normalized_origin not in seen_origins:
            parsed_origins.append(normalized_origin)
            seen_origins.add(normalized_origin)
    return parsed_origins


def resolve_cors_allow_origins(
    raw_origins: str | None,
    environment: str,
) -> list[str]:
    """
    Resolve CORS origins using env overrides and environment-aware defaults.

    Development defaults to localhost origins for convenience.
    Production defaults to no cross-origin access unless explicitly configured.
    """
    parsed_origins = _parse_cors_origins(raw_origins)
    if parsed_origins:
        return parsed_origins
    if environment in DEVELOPMENT_ENV_NAMES:
        return ["http://localhost:3000", "http://localhost:5173"]
    return []


def resolve_model_name(raw_model: str | None, fallback_model: str) -> str:
    """Return an env-provided model identifier, or the fallback when blank."""
    if not raw_model:
        return fallback_model
    normalized_model = _strip_wrapping_quotes(raw_model)
    return normalized_model or fallback_model


def _parse_positive_int(raw_value: str | None, fallback: int) -> int:
    """Parse a positive integer env value, falling back on blank/invalid input."""
    if not raw_value:
        return fallback
    try:
        parsed = int(_strip_wrapping_quotes(raw_value))
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


APP_ENV = resolve_app_env(
    os.getenv("RIZZMATE_ENV"),
    os.getenv("APP_ENV"),
    os.getenv("ENVIRONMENT"),
)

LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()

# OpenAI-compatible model API
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_API_BASE = (os.getenv("OPENAI_API_BASE") or "https://api.openai.com/v1").rstrip("/")

if APP_ENV in DEVELOPMENT_ENV_NAMES:
    DEFAULT_REPLY_MODEL = "gpt-4o-mini"
    DEFAULT_VISION_MODEL = "gpt-4o-mini"
else:
    DEFAULT_REPLY_MODEL = "gpt-4o"
    DEFAULT_VISION_MODEL = "gpt-4o"

REPLY_MODEL = resolve_model_name(os.getenv("REPLY_MODEL"), DEFAULT_REPLY_MODEL)
VISION_MODEL = resolve_model_name(os.getenv("VISION_MODEL"), DEFAULT_VISION_MODEL)
TRANSCRIPTION_MODEL = resolve_model_name(os.getenv("TRANSCRIPTION_MODEL"), "whisper-1")

# Reply generation parameters
REPLY_MAX_TOKENS = 300
ANALYSIS_REPLY_MAX_TOKENS = 200
REPLY_TEMPERATURE = 0.8
REPLY_PRESENCE_PENALTY = 0.6
REPLY_FREQUENCY_PENALTY = 0.3
STARTERS_MAX_TOKENS = 300
STARTERS_TEMPERATURE = 0.9
IMAGE_VISION_MAX_TOKENS = 200
SCREENSHOT_VISION_MAX_TOKENS = 250
GENERATION_MAX_ATTEMPTS = _parse_positive_int(os.getenv("GENERATION_MAX_ATTEMPTS"), 2)
GENERATION_RETRY_DELAY_SECONDS = 0.5
MODEL_TIMEOUT_SECONDS = float(os.getenv("MODEL_TIMEOUT_SECONDS") or "60")

# Conversation context
CONTEXT_HISTORY_MESSAGES = 10
PROFILE_HISTORY_LIMIT = 20

# Uploaded media
MAX_UPLOAD_FILE_SIZE_BYTES = 10 * 1024 * 1024
IMAGE_MAX_DIMENSION = 1024
IMAGE_JPEG_QUALITY = 85

# Supabase configuration
SUPABASE_URL = os.getenv("SUPABASE_URL") or os.getenv("SUPABASE_PROJECT_URL")
SUPABASE_SECRET_KEY = os.getenv("SUPABASE_API_KEY_SECRET") or os.getenv(
    "SUPABASE_SERVICE_ROLE_KEY"
)
STORAGE_TIMEOUT_SECONDS = 20

# Shared secret used by the payment-confirmation flow to push plan changes
BILLING_WEBHOOK_SECRET = os.getenv("BILLING_WEBHOOK_SECRET")

# IANA timezone that defines the monthly usage boundary
USAGE_RESET_TIMEZONE = os.getenv("USAGE_RESET_TIMEZONE") or "UTC"

CORS_ALLOW_ORIGINS = resolve_cors_allow_origins(
    os.getenv("CORS_ALLOW_ORIGINS"),
    APP_ENV,
)
