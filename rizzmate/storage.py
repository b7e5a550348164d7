"""Supabase Postgres storage for accounts, profiles and conversations."""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import logging
import uuid

import httpx

from .config import STORAGE_TIMEOUT_SECONDS, SUPABASE_SECRET_KEY, SUPABASE_URL
from .errors import PersistenceFailure

logger = logging.getLogger(__name__)

PLAN_FREE = "free"
VALID_PLANS = {"free", "pro", "premium"}

PROFILE_STATUS_ACTIVE = "active"
PROFILE_STATUS_RETIRED = "retired"

CONVERSATION_STATUS_ACTIVE = "active"
VALID_CONVERSATION_STATUSES = {"active", "paused", "completed"}

PERSONALITIES = {"introvert", "extrovert", "ambivert", "unknown"}
RELATIONSHIPS = {"stranger", "acquaintance", "friend", "colleague", "classmate", "online"}
CONTEXTS = {"online", "offline", "college", "work", "social", "dating_app"}
TONES = {"casual", "flirty", "romantic", "funny", "intellectual", "mysterious"}
APPROACHES = {"direct", "subtle", "playful", "sincere", "teasing"}

DEFAULT_TARGET_PERSON = {
    "name": None,
    "personality": "unknown",
    "relationship": "stranger",
    "context": "online",
    "interests": [],
    "age": None,
    "occupation": None,
    "location": None,
    "notes": None,
}

DEFAULT_CONVERSATION_STYLE = {
    "tone": "casual",
    "approach": "subtle",
    "language": "en",
}

ACCOUNT_COLUMNS = (
    "id,plan,plan_started_at,plan_ends_at,messages_this_month,images_this_month,"
    "voice_minutes_this_month,usage_period_start,created_at"
)
PROFILE_COLUMNS = (
    "id,user_id,target_person,conversation_style,conversation_history,status,"
    "created_at,updated_at"
)
CONVERSATION_COLUMNS = (
    "id,user_id,profile_id,messages,status,total_messages,last_activity,created_at"
)


def _to_int(value: Any) -> int:
    """Best-effort integer conversion."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _parse_iso_datetime(value: Any) -> datetime | None:
    """Best-effort parse for ISO datetime values."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw_value = value.strip()
        if raw_value.endswith("Z"):
            raw_value = f"{raw_value[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(raw_value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime in UTC ISO format."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _now_utc() -> datetime:
    """Return current UTC time (wrapper to simplify deterministic tests)."""
    return datetime.now(timezone.utc)


def _pick_choice(value: Any, allowed: set[str], fallback: str) -> str:
    """Normalize an enum-like text field, falling back when unknown."""
    if not isinstance(value, str):
        return fallback
    normalized = value.strip().lower()
    if normalized in allowed:
        return normalized
    return fallback


def _clean_text(value: Any, max_chars: int = 500) -> str | None:
    """Trim free-form text, mapping blanks to None."""
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    return cleaned[:max_chars]


def normalize_target_person(value: Any, base: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Merge a target-person payload over a base descriptor and validate enums."""
    merged = {**DEFAULT_TARGET_PERSON, **(base or {})}
    if isinstance(value, dict):
        merged.update({key: item for key, item in value.items() if key in DEFAULT_TARGET_PERSON})

    interests = merged.get("interests")
    if not isinstance(interests, list):
        interests = []
    age = merged.get("age")
    age_value = _to_int(age) if age is not None else 0

    return {
        "name": _clean_text(merged.get("name"), 120),
        "personality": _pick_choice(merged.get("personality"), PERSONALITIES, "unknown"),
        "relationship": _pick_choice(merged.get("relationship"), RELATIONSHIPS, "stranger"),
        "context": _pick_choice(merged.get("context"), CONTEXTS, "online"),
        "interests": [
            interest.strip()[:60]
            for interest in interests
            if isinstance(interest, str) and interest.strip()
        ][:20],
        "age": age_value if age_value > 0 else None,
        "occupation": _clean_text(merged.get("occupation"), 120),
        "location": _clean_text(merged.get("location"), 120),
        "notes": _clean_text(merged.get("notes"), 2000),
    }


def normalize_conversation_style(
    value: Any, base: Dict[str, Any] | None = None
) -> Dict[str, Any]:
    """Merge a conversation-style payload over a base style and validate enums."""
    merged = {**DEFAULT_CONVERSATION_STYLE, **(base or {})}
    if isinstance(value, dict):
        merged.update(
            {key: item for key, item in value.items() if key in DEFAULT_CONVERSATION_STYLE}
        )

    language = _clean_text(merged.get("language"), 16) or "en"
    return {
        "tone": _pick_choice(merged.get("tone"), TONES, "casual"),
        "approach": _pick_choice(merged.get("approach"), APPROACHES, "subtle"),
        "language": language.lower(),
    }


def _ensure_supabase_db_config() -> tuple[str, str]:
    """Return validated Supabase REST config values."""
    if not SUPABASE_URL:
        raise PersistenceFailure(
            "Supabase DB is not configured. Missing SUPABASE_URL (or SUPABASE_PROJECT_URL)."
        )
    if not SUPABASE_SECRET_KEY:
        raise PersistenceFailure(
            "Supabase DB is not configured. Missing SUPABASE_API_KEY_SECRET "
            "(or SUPABASE_SERVICE_ROLE_KEY)."
        )
    return SUPABASE_URL.rstrip("/"), SUPABASE_SECRET_KEY


def _extract_error_message(payload: Any, fallback: str) -> str:
    """Extract readable error messages from PostgREST payloads."""
    if isinstance(payload, dict):
        return (
            payload.get("message")
            or payload.get("hint")
            or payload.get("details")
            or fallback
        )
    return fallback


async def _rest_request(
    method: str,
    resource: str,
    *,
    params: Optional[Dict[str, str]] = None,
    json_body: Optional[Any] = None,
    prefer: Optional[str] = None,
):
    """Make an authenticated request to Supabase PostgREST."""
    supabase_url, api_key = _ensure_supabase_db_config()
    url = f"{supabase_url}/rest/v1/{resource}"

    headers: Dict[str, str] = {
        "apikey": api_key,
        "Authorization": f"Bearer {api_key}",
    }
    if json_body is not None:
        headers["Content-Type"] = "application/json"
    if prefer:
        headers["Prefer"] = prefer

    try:
        async with httpx.AsyncClient(timeout=STORAGE_TIMEOUT_SECONDS) as client:
            response = await client.request(
                method=method,
                url=url,
                params=params,
                json=json_body,
                headers=headers,
            )
    except httpx.HTTPError as error:
        logger.error("Database request %s %s failed: %s", method, resource, error)
        raise PersistenceFailure("Database is unavailable. Please try again.") from error

    if response.status_code >= 400:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        message = _extract_error_message(
            payload, f"Database request failed ({response.status_code})."
        )
        logger.error("Database request %s %s rejected: %s", method, resource, message)
        raise PersistenceFailure(message)

    if not response.content:
        return None

    try:
        return response.json()
    except ValueError:
        return None


def _first_row(rows: Any) -> Dict[str, Any] | None:
    """Return the first row of a PostgREST list payload."""
    if isinstance(rows, list) and rows and isinstance(rows[0], dict):
        return rows[0]
    return None


# Accounts


def _account_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map an accounts row into the in-process account shape."""
    return {
        "id": row["id"],
        "plan": _pick_choice(row.get("plan"), VALID_PLANS, PLAN_FREE),
        "plan_started_at": _parse_iso_datetime(row.get("plan_started_at")),
        "plan_ends_at": _parse_iso_datetime(row.get("plan_ends_at")),
        "usage": {
            "messages": max(0, _to_int(row.get("messages_this_month"))),
            "images": max(0, _to_int(row.get("images_this_month"))),
            "voice_minutes": max(0, _to_int(row.get("voice_minutes_this_month"))),
            "period_start": _parse_iso_datetime(row.get("usage_period_start")),
        },
    }


def _usage_columns(usage: Dict[str, Any]) -> Dict[str, Any]:
    """Map the in-process usage dict back to accounts columns."""
    return {
        "messages_this_month": max(0, _to_int(usage.get("messages"))),
        "images_this_month": max(0, _to_int(usage.get("images"))),
        "voice_minutes_this_month": max(0, _to_int(usage.get("voice_minutes"))),
        "usage_period_start": _to_iso(usage.get("period_start")),
    }


async def _ensure_account_row(user_id: str):
    """Ensure an account row exists without overwriting plan or usage."""
    now_iso = _to_iso(_now_utc())
    await _rest_request(
        "POST",
        "accounts",
        params={"on_conflict": "id"},
        json_body={
            "id": user_id,
            "plan": PLAN_FREE,
            "plan_started_at": now_iso,
            "messages_this_month": 0,
            "images_this_month": 0,
            "voice_minutes_this_month": 0,
            "usage_period_start": now_iso,
        },
        prefer="resolution=ignore-duplicates,return=minimal",
    )


async def get_account(user_id: str) -> Dict[str, Any]:
    """Load the account for an authenticated user, creating it on first use."""
    await _ensure_account_row(user_id)
    row = _first_row(
        await _rest_request(
            "GET",
            "accounts",
            params={
                "select": ACCOUNT_COLUMNS,
                "id": f"eq.{user_id}",
                "limit": "1",
            },
        )
    )
    if row is None:
        raise PersistenceFailure("Account could not be loaded.")
    return _account_from_row(row)


async def update_account_usage(account: Dict[str, Any]):
    """Persist the usage counters and period start of an account."""
    await _rest_request(
        "PATCH",
        "accounts",
        params={"id": f"eq.{account['id']}"},
        json_body=_usage_columns(account["usage"]),
        prefer="return=minimal",
    )


async def update_account_plan(account: Dict[str, Any], *, include_usage: bool = False):
    """Persist plan fields of an account, optionally with its usage counters."""
    body: Dict[str, Any] = {
        "plan": _pick_choice(account.get("plan"), VALID_PLANS, PLAN_FREE),
        "plan_started_at": _to_iso(account.get("plan_started_at")),
        "plan_ends_at": _to_iso(account.get("plan_ends_at")),
    }
    if include_usage:
        body.update(_usage_columns(account["usage"]))

    await _rest_request(
        "PATCH",
        "accounts",
        params={"id": f"eq.{account['id']}"},
        json_body=body,
        prefer="return=minimal",
    )


# Profiles


def _profile_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map a profiles row into the in-process profile shape."""
    history = row.get("conversation_history")
    status = _pick_choice(
        row.get("status"),
        {PROFILE_STATUS_ACTIVE, PROFILE_STATUS_RETIRED},
        PROFILE_STATUS_ACTIVE,
    )
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "target_person": normalize_target_person(row.get("target_person")),
        "conversation_style": normalize_conversation_style(row.get("conversation_style")),
        "conversation_history": history if isinstance(history, list) else [],
        "status": status,
        "is_active": status == PROFILE_STATUS_ACTIVE,
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }


async def create_profile(
    user_id: str,
    target_person: Dict[str, Any] | None,
    conversation_style: Dict[str, Any] | None,
) -> Dict[str, Any]:
    """Create a new active profile owned by user_id."""
    now_iso = _to_iso(_now_utc())
    rows = await _rest_request(
        "POST",
        "profiles",
        json_body={
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "target_person": normalize_target_person(target_person),
            "conversation_style": normalize_conversation_style(conversation_style),
            "conversation_history": [],
            "status": PROFILE_STATUS_ACTIVE,
            "created_at": now_iso,
            "updated_at": now_iso,
        },
        prefer="return=representation",
    )
    row = _first_row(rows)
    if row is None:
        raise PersistenceFailure("Profile could not be created.")
    return _profile_from_row(row)


async def list_profiles(user_id: str) -> List[Dict[str, Any]]:
    """List active profiles for a user, most recently updated first."""
    rows = await _rest_request(
        "GET",
        "profiles",
        params={
            "select": PROFILE_COLUMNS,
            "user_id": f"eq.{user_id}",
            "status": f"eq.{PROFILE_STATUS_ACTIVE}",
            "order": "updated_at.desc",
        },
    )
    if not isinstance(rows, list):
        return []
    return [_profile_from_row(row) for row in rows if isinstance(row, dict)]


async def get_profile(profile_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    """Load an active profile only if owned by user_id."""
    row = _first_row(
        await _rest_request(
            "GET",
            "profiles",
            params={
                "select": PROFILE_COLUMNS,
                "id": f"eq.{profile_id}",
                "user_id": f"eq.{user_id}",
                "status": f"eq.{PROFILE_STATUS_ACTIVE}",
                "limit": "1",
            },
        )
    )
    if row is None:
        return None
    return _profile_from_row(row)


async def update_profile(
    profile: Dict[str, Any],
    target_person: Dict[str, Any] | None = None,
    conversation_style: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """Merge descriptor/style changes into an active profile."""
    updated = {
        **profile,
        "target_person": normalize_target_person(target_person, profile["target_person"]),
        "conversation_style": normalize_conversation_style(
            conversation_style, profile["conversation_style"]
        ),
        "updated_at": _to_iso(_now_utc()),
    }
    await _rest_request(
        "PATCH",
        "profiles",
        params={
            "id": f"eq.{profile['id']}",
            "user_id": f"eq.{profile['user_id']}",
        },
        json_body={
            "target_person": updated["target_person"],
            "conversation_style": updated["conversation_style"],
            "updated_at": updated["updated_at"],
        },
        prefer="return=minimal",
    )
    return updated


async def retire_profile(profile: Dict[str, Any]):
    """Soft-delete a profile: the row stays, only its lifecycle status changes."""
    await _rest_request(
        "PATCH",
        "profiles",
        params={
            "id": f"eq.{profile['id']}",
            "user_id": f"eq.{profile['user_id']}",
        },
        json_body={
            "status": PROFILE_STATUS_RETIRED,
            "updated_at": _to_iso(_now_utc()),
        },
        prefer="return=minimal",
    )


async def append_profile_interaction(
    profile: Dict[str, Any], entry: Dict[str, Any]
) -> Dict[str, Any]:
    """Append one ledger entry to the profile's interaction history."""
    history = list(profile.get("conversation_history") or [])
    history.append(entry)
    updated_at = _to_iso(_now_utc())
    await _rest_request(
        "PATCH",
        "profiles",
        params={
            "id": f"eq.{profile['id']}",
            "user_id": f"eq.{profile['user_id']}",
        },
        json_body={"conversation_history": history, "updated_at": updated_at},
        prefer="return=minimal",
    )
    profile["conversation_history"] = history
    profile["updated_at"] = updated_at
    return profile


# Conversations


def _conversation_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map a conversations row into the in-process conversation shape."""
    messages = row.get("messages")
    if not isinstance(messages, list):
        messages = []
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "profile_id": row["profile_id"],
        "messages": messages,
        "status": _pick_choice(
            row.get("status"),
            VALID_CONVERSATION_STATUSES,
            CONVERSATION_STATUS_ACTIVE,
        ),
        "total_messages": len(messages),
        "last_activity": _parse_iso_datetime(row.get("last_activity")),
        "created_at": row.get("created_at"),
    }


async def get_active_conversation(
    user_id: str, profile_id: str
) -> Optional[Dict[str, Any]]:
    """Return the active conversation for (user, profile), if one exists."""
    row = _first_row(
        await _rest_request(
            "GET",
            "conversations",
            params={
                "select": CONVERSATION_COLUMNS,
                "user_id": f"eq.{user_id}",
                "profile_id": f"eq.{profile_id}",
                "status": f"eq.{CONVERSATION_STATUS_ACTIVE}",
                "order": "created_at.desc",
                "limit": "1",
            },
        )
    )
    if row is None:
        return None
    return _conversation_from_row(row)


async def get_conversation_by_id(
    conversation_id: str, user_id: str
) -> Optional[Dict[str, Any]]:
    """Load a conversation by key regardless of its profile's lifecycle."""
    row = _first_row(
        await _rest_request(
            "GET",
            "conversations",
            params={
                "select": CONVERSATION_COLUMNS,
                "id": f"eq.{conversation_id}",
                "user_id": f"eq.{user_id}",
                "limit": "1",
            },
        )
    )
    if row is None:
        return None
    return _conversation_from_row(row)


async def create_conversation(user_id: str, profile_id: str) -> Dict[str, Any]:
    """Create an empty active conversation for (user, profile)."""
    now_iso = _to_iso(_now_utc())
    rows = await _rest_request(
        "POST",
        "conversations",
        json_body={
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "profile_id": profile_id,
            "messages": [],
            "status": CONVERSATION_STATUS_ACTIVE,
            "total_messages": 0,
            "last_activity": now_iso,
            "created_at": now_iso,
        },
        prefer="return=representation",
    )
    row = _first_row(rows)
    if row is None:
        raise PersistenceFailure("Conversation could not be created.")
    return _conversation_from_row(row)


async def get_or_create_active_conversation(
    user_id: str, profile_id: str
) -> Dict[str, Any]:
    """Return the active conversation, creating it lazily on first use."""
    conversation = await get_active_conversation(user_id, profile_id)
    if conversation is not None:
        return conversation
    return await create_conversation(user_id, profile_id)


def build_message(
    role: str,
    content: str,
    modality: str = "text",
    metadata: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """Build a conversation message entry stamped with the current time."""
    message: Dict[str, Any] = {
        "role": role,
        "content": content,
        "modality": modality,
        "timestamp": _to_iso(_now_utc()),
    }
    if metadata:
        message["metadata"] = metadata
    return message


def _next_activity(conversation: Dict[str, Any]) -> datetime:
    """last_activity never moves backwards, even with a skewed clock."""
    now_utc = _now_utc()
    previous_activity = conversation.get("last_activity")
    if isinstance(previous_activity, datetime):
        return max(previous_activity, now_utc)
    return now_utc


async def append_conversation_messages(
    conversation: Dict[str, Any], messages: List[Dict[str, Any]]
) -> Dict[str, Any]:
    """
    Append messages to a conversation.

    The messages array, total_messages and last_activity are written in the
    same PATCH so the bookkeeping never drifts from the message list.
    """
    updated_messages = list(conversation.get("messages") or []) + list(messages)
    last_activity = _next_activity(conversation)

    await _rest_request(
        "PATCH",
        "conversations",
        params={
            "id": f"eq.{conversation['id']}",
            "user_id": f"eq.{conversation['user_id']}",
        },
        json_body={
            "messages": updated_messages,
            "total_messages": len(updated_messages),
            "last_activity": _to_iso(last_activity),
        },
        prefer="return=minimal",
    )

    return {
        **conversation,
        "messages": updated_messages,
        "total_messages": len(updated_messages),
        "last_activity": last_activity,
    }


async def clear_conversation(user_id: str, profile_id: str) -> Optional[Dict[str, Any]]:
    """Truncate the active conversation's messages, keeping its identity and status."""
    conversation = await get_active_conversation(user_id, profile_id)
    if conversation is None:
        return None

    last_activity = _next_activity(conversation)
    await _rest_request(
        "PATCH",
        "conversations",
        params={
            "id": f"eq.{conversation['id']}",
            "user_id": f"eq.{user_id}",
        },
        json_body={
            "messages": [],
            "total_messages": 0,
            "last_activity": _to_iso(last_activity),
        },
        prefer="return=minimal",
    )
    return {
        **conversation,
        "messages": [],
        "total_messages": 0,
        "last_activity": last_activity,
    }
