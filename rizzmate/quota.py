"""Monthly usage quotas per plan: admission, commit and lazy month rollover."""

from datetime import datetime, timezone
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from . import storage
from .config import USAGE_RESET_TIMEZONE
from .errors import QuotaExceeded

logger = logging.getLogger(__name__)

RESOURCE_MESSAGES = "messages"
RESOURCE_IMAGES = "images"
RESOURCE_VOICE_MINUTES = "voice_minutes"
RESOURCES = (RESOURCE_MESSAGES, RESOURCE_IMAGES, RESOURCE_VOICE_MINUTES)

# Sentinel for plans without a ceiling on a resource.
UNLIMITED = None

PLAN_LIMITS: Dict[str, Dict[str, int | None]] = {
    "free": {
        RESOURCE_MESSAGES: 50,
        RESOURCE_IMAGES: 10,
        RESOURCE_VOICE_MINUTES: 5,
    },
    "pro": {
        RESOURCE_MESSAGES: 500,
        RESOURCE_IMAGES: 100,
        RESOURCE_VOICE_MINUTES: 60,
    },
    "premium": {
        RESOURCE_MESSAGES: UNLIMITED,
        RESOURCE_IMAGES: UNLIMITED,
        RESOURCE_VOICE_MINUTES: UNLIMITED,
    },
}

MODALITY_RESOURCES = {
    "text": RESOURCE_MESSAGES,
    "image": RESOURCE_IMAGES,
    "screenshot": RESOURCE_IMAGES,
    "voice": RESOURCE_VOICE_MINUTES,
}

_LIMIT_MESSAGES = {
    RESOURCE_MESSAGES: "Message limit reached. Upgrade your plan to continue.",
    RESOURCE_IMAGES: "Image limit reached. Upgrade your plan to continue.",
    RESOURCE_VOICE_MINUTES: "Voice limit reached. Upgrade your plan to continue.",
}


def _now_utc() -> datetime:
    """Return current UTC time (wrapper to simplify deterministic tests)."""
    return datetime.now(timezone.utc)


def _resolve_reset_timezone(timezone_name: str | None):
    """Resolve an IANA timezone for quota reset boundaries, defaulting to UTC."""
    if not isinstance(timezone_name, str):
        return timezone.utc
    normalized = timezone_name.strip()
    if not normalized:
        return timezone.utc
    try:
        return ZoneInfo(normalized)
    except ZoneInfoNotFoundError:
        return timezone.utc


def resource_for_modality(modality: str) -> str:
    """Map an input modality to the resource class it consumes."""
    return MODALITY_RESOURCES[modality]


def get_plan_limit(plan: str, resource: str) -> int | None:
    """Return the monthly ceiling for a plan/resource, or UNLIMITED."""
    plan_limits = PLAN_LIMITS.get(plan, PLAN_LIMITS["free"])
    return plan_limits[resource]


def roll_usage_period(
    usage: Dict[str, Any],
    now: datetime,
    timezone_name: str | None = USAGE_RESET_TIMEZONE,
) -> bool:
    """
    Reset counters when `now` falls in a later calendar month than the period start.

    Returns True when a reset happened. Calling again in the same month is a no-op.
    """
    reset_timezone = _resolve_reset_timezone(timezone_name)
    local_now = now.astimezone(reset_timezone)
    period_start = usage.get("period_start")
    if isinstance(period_start, datetime):
        local_start = period_start.astimezone(reset_timezone)
        if (local_start.year, local_start.month) == (local_now.year, local_now.month):
            return False

    for resource in RESOURCES:
        usage[resource] = 0
    usage["period_start"] = now
    return True


def expire_plan_if_needed(account: Dict[str, Any], now: datetime) -> bool:
    """Fall back to the free plan once a paid billing period has ended."""
    plan_ends_at = account.get("plan_ends_at")
    if account.get("plan") == "free" or not isinstance(plan_ends_at, datetime):
        return False
    if now <= plan_ends_at:
        return False

    logger.info("Plan %s expired for account %s", account.get("plan"), account.get("id"))
    account["plan"] = "free"
    account["plan_ends_at"] = None
    return True


def is_within_limit(plan: str, usage: Dict[str, Any], resource: str) -> bool:
    """Strict admission rule: usage equal to the ceiling is rejected."""
    limit = get_plan_limit(plan, resource)
    if limit is UNLIMITED:
        return True
    return int(usage.get(resource) or 0) < limit


async def refresh_account(account: Dict[str, Any]) -> Dict[str, Any]:
    """Apply plan expiry and month rollover, persisting whatever changed."""
    now = _now_utc()
    plan_expired = expire_plan_if_needed(account, now)
    usage_reset = roll_usage_period(account["usage"], now)

    if plan_expired:
        await storage.update_account_plan(account, include_usage=usage_reset)
    elif usage_reset:
        await storage.update_account_usage(account)
    return account


async def admit(account: Dict[str, Any], resource: str) -> bool:
    """Decide whether one more unit of `resource` may be consumed this month."""
    await refresh_account(account)
    return is_within_limit(account["plan"], account["usage"], resource)


def quota_exceeded_error(account: Dict[str, Any], resource: str) -> QuotaExceeded:
    """Build the structured rejection for a denied admission."""
    return QuotaExceeded(
        _LIMIT_MESSAGES[resource],
        resource=resource,
        plan=account["plan"],
        limit=get_plan_limit(account["plan"], resource),
        used=int(account["usage"].get(resource) or 0),
    )


async def commit(account: Dict[str, Any], resource: str, amount: int = 1) -> Dict[str, Any]:
    """
    Record consumption of `amount` units and persist the account usage.

    Voice is metered as one minute per voice note regardless of duration.
    """
    usage = account["usage"]
    previous = int(usage.get(resource) or 0)
    usage[resource] = previous + max(0, int(amount))
    try:
        await storage.update_account_usage(account)
    except Exception:
        usage[resource] = previous
        raise
    return usage


def describe_usage(account: Dict[str, Any]) -> Dict[str, Any]:
    """Return plan, counters, ceilings and remaining units for display."""
    usage = account["usage"]
    plan = account["plan"]
    resources: Dict[str, Dict[str, Any]] = {}
    for resource in RESOURCES:
        used = int(usage.get(resource) or 0)
        limit = get_plan_limit(plan, resource)
        resources[resource] = {
            "used": used,
            "limit": limit,
            "remaining": None if limit is UNLIMITED else max(0, limit - used),
            "unlimited": limit is UNLIMITED,
        }

    period_start = usage.get("period_start")
    plan_ends_at = account.get("plan_ends_at")
    return {
        "plan": plan,
        "period_start": period_start.isoformat() if isinstance(period_start, datetime) else None,
        "plan_ends_at": plan_ends_at.isoformat() if isinstance(plan_ends_at, datetime) else None,
        "messages_this_month": int(usage.get(RESOURCE_MESSAGES) or 0),
        "images_this_month": int(usage.get(RESOURCE_IMAGES) or 0),
        "voice_minutes_this_month": int(usage.get(RESOURCE_VOICE_MINUTES) or 0),
        "resources": resources,
    }
