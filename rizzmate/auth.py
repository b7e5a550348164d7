"""Supabase authentication helpers."""

from typing import Any, Dict
import logging

import httpx
from fastapi import HTTPException

from .config import SUPABASE_SECRET_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)


def _ensure_supabase_config() -> tuple[str, str]:
    """Return validated Supabase config values."""
    if not SUPABASE_URL:
        raise HTTPException(
            status_code=500,
            detail=(
                "Supabase is not configured. Missing SUPABASE_URL (or SUPABASE_PROJECT_URL) "
                "in environment."
            ),
        )

    if not SUPABASE_SECRET_KEY:
        raise HTTPException(
            status_code=500,
            detail=(
                "Supabase is not configured. Missing SUPABASE_API_KEY_SECRET "
                "(or SUPABASE_SERVICE_ROLE_KEY) in environment."
            ),
        )

    return SUPABASE_URL.rstrip("/"), SUPABASE_SECRET_KEY


def _extract_error_message(payload: Any, fallback: str) -> str:
    """Extract a readable error from Supabase's error shape."""
    if not isinstance(payload, dict):
        return fallback
    return (
        payload.get("msg")
        or payload.get("error_description")
        or payload.get("error")
        or fallback
    )


def _auth_unavailable(path: str, error: Exception) -> HTTPException:
    logger.error("Auth request %s failed: %s", path, error)
    return HTTPException(
        status_code=503,
        detail="Authentication service is unavailable. Please try again.",
    )


def _parse_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


async def _post_credentials(path: str, email: str, password: str, fallback: str) -> Dict[str, Any]:
    """POST an email/password pair to a Supabase auth endpoint."""
    supabase_url, api_key = _ensure_supabase_config()

    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.post(
                f"{supabase_url}{path}",
                headers={
                    "apikey": api_key,
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                json={"email": email, "password": password},
            )
    except httpx.HTTPError as error:
        raise _auth_unavailable(path, error) from error

    data = _parse_json(response)
    if response.status_code >= 400:
        raise HTTPException(
            status_code=response.status_code,
            detail=_extract_error_message(data, fallback),
        )
    if not isinstance(data, dict):
        raise HTTPException(status_code=502, detail="Invalid auth payload from Supabase.")
    return data


async def register_user(email: str, password: str) -> Dict[str, Any]:
    """Register a Supabase user with email/password."""
    return await _post_credentials(
        "/auth/v1/signup", email, password, "Failed to register user."
    )


async def login_user(email: str, password: str) -> Dict[str, Any]:
    """Sign in a Supabase user with email/password."""
    return await _post_credentials(
        "/auth/v1/token?grant_type=password", email, password, "Invalid email or password."
    )


async def get_user_from_token(access_token: str) -> Dict[str, Any]:
    """Validate access token and return user profile from Supabase."""
    supabase_url, api_key = _ensure_supabase_config()

    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.get(
                f"{supabase_url}/auth/v1/user",
                headers={
                    "apikey": api_key,
                    "Authorization": f"Bearer {access_token}",
                },
            )
    except httpx.HTTPError as error:
        raise _auth_unavailable("/auth/v1/user", error) from error

    data = _parse_json(response)
    if response.status_code >= 400 or not isinstance(data, dict) or not data.get("id"):
        raise HTTPException(status_code=401, detail="Invalid or expired session.")

    return data
