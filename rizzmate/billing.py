"""Plan catalogue and the plan-change contract used by the payment flow."""

from datetime import datetime, timezone
from typing import Any, Dict
import hashlib
import hmac
import logging
import time

from . import storage
from .config import BILLING_WEBHOOK_SECRET, APP_ENV, DEVELOPMENT_ENV_NAMES
from .errors import InvalidInput
from .quota import PLAN_LIMITS, RESOURCES

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

PLANS: Dict[str, Dict[str, Any]] = {
    "free": {"name": "Free", "price": 0, "currency": "inr"},
    # Prices are in paise.
    "pro": {"name": "Pro", "price": 20000, "currency": "inr", "interval": "month"},
    "premium": {"name": "Premium", "price": 50000, "currency": "inr", "interval": "month"},
}


def list_plans() -> list[Dict[str, Any]]:
    """Return the plan catalogue with the monthly limits of each plan."""
    catalogue = []
    for plan_id, plan in PLANS.items():
        catalogue.append(
            {
                "id": plan_id,
                **plan,
                "limits": {resource: PLAN_LIMITS[plan_id][resource] for resource in RESOURCES},
            }
        )
    return catalogue


def verify_billing_signature(
    payload: bytes,
    signature_header: str,
    secret: str | None = BILLING_WEBHOOK_SECRET,
    now: int | None = None,
) -> bool:
    """Verify a `t=<unix>,v1=<hex>` HMAC-SHA256 signature over `{t}.{payload}`."""
    if not secret:
        return APP_ENV in DEVELOPMENT_ENV_NAMES

    parts = {}
    for item in signature_header.split(","):
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        parts[key.strip()] = value.strip()

    timestamp_text = parts.get("t")
    signature_v1 = parts.get("v1")
    if not timestamp_text or not signature_v1:
        return False

    try:
        timestamp = int(timestamp_text)
    except ValueError:
        return False

    current_time = int(time.time()) if now is None else now
    if abs(current_time - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
        return False

    signed_payload = f"{timestamp}.{payload.decode('utf-8')}"
    expected = hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature_v1)


async def set_plan(
    account_id: str,
    plan: str,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> Dict[str, Any]:
    """
    Apply a confirmed plan change to an account.

    Usage counters restart with the new billing period. Naive period bounds
    are read as UTC.
    """
    normalized_plan = plan.strip().lower() if isinstance(plan, str) else ""
    if normalized_plan not in PLANS:
        raise InvalidInput("Invalid plan selected.")
    period_start = storage._parse_iso_datetime(period_start)
    period_end = storage._parse_iso_datetime(period_end)
    if period_start and period_end and period_end <= period_start:
        raise InvalidInput("Billing period must end after it starts.")

    now = datetime.now(timezone.utc)
    account = await storage.get_account(account_id)
    account["plan"] = normalized_plan
    account["plan_started_at"] = period_start or now
    account["plan_ends_at"] = period_end if normalized_plan != "free" else None
    for resource in RESOURCES:
        account["usage"][resource] = 0
    account["usage"]["period_start"] = now

    await storage.update_account_plan(account, include_usage=True)
    logger.info("Account %s moved to plan %s", account_id, normalized_plan)
    return account
