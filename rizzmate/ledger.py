"""Per-profile interaction ledger used for history and statistics views."""

from datetime import datetime, timezone
from typing import Any, Dict, List
import logging

from . import storage
from .config import PROFILE_HISTORY_LIMIT

logger = logging.getLogger(__name__)

_STAT_KEYS = {
    "text": "text_messages",
    "image": "images",
    "voice": "voice_messages",
    "screenshot": "screenshots",
}


def build_entry(
    modality: str,
    content: str,
    response: str,
    success: bool,
) -> Dict[str, Any]:
    """Build one ledger entry stamped with the current time."""
    return {
        "modality": modality,
        "content": content,
        "response": response,
        "success": bool(success),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def record_interaction(
    profile: Dict[str, Any],
    modality: str,
    content: str,
    response: str,
    success: bool,
) -> bool:
    """
    Append an interaction to the profile's ledger.

    Failures are logged and swallowed so the user-facing reply is never blocked.
    Returns True when the entry was stored.
    """
    entry = build_entry(modality, content, response, success)
    try:
        await storage.append_profile_interaction(profile, entry)
    except Exception:
        logger.warning(
            "Failed to record %s interaction for profile %s",
            modality,
            profile.get("id"),
            exc_info=True,
        )
        return False
    return True


def recent_history(
    profile: Dict[str, Any], limit: int = PROFILE_HISTORY_LIMIT
) -> List[Dict[str, Any]]:
    """Return the latest ledger entries, oldest first."""
    history = profile.get("conversation_history")
    if not isinstance(history, list) or limit <= 0:
        return []
    return history[-limit:]


def compute_profile_stats(profile: Dict[str, Any]) -> Dict[str, Any]:
    """Summarize the ledger: totals, success rate and counts per modality."""
    history = [
        entry
        for entry in profile.get("conversation_history") or []
        if isinstance(entry, dict)
    ]
    total = len(history)
    successful = sum(1 for entry in history if entry.get("success"))

    stats: Dict[str, Any] = {
        "total_interactions": total,
        "successful_interactions": successful,
        "success_rate": round(successful / total, 4) if total else 0.0,
        "text_messages": 0,
        "images": 0,
        "voice_messages": 0,
        "screenshots": 0,
        "last_activity": profile.get("updated_at"),
    }
    for entry in history:
        key = _STAT_KEYS.get(entry.get("modality"))
        if key:
            stats[key] += 1
    return stats
