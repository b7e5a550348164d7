"""Chat turn orchestration: admission, normalization, generation, persistence, metering."""

from typing import Any, Dict
import logging

from . import generator, ledger, media, prompts, quota, storage
from .errors import InvalidInput, NotFound, PersistenceFailure, UpstreamUnavailable

logger = logging.getLogger(__name__)


def _user_message_metadata(normalized: media.NormalizedInput) -> Dict[str, Any] | None:
    if normalized.analysis is not None:
        return {"analysis": normalized.analysis}
    if normalized.transcription is not None:
        return {"transcription": normalized.transcription}
    return None


async def _generate_reply(
    profile: Dict[str, Any],
    conversation: Dict[str, Any] | None,
    normalized: media.NormalizedInput,
) -> str:
    system_prompt, history = prompts.build_context(profile, conversation)
    if normalized.analysis is not None:
        return await generator.generate_from_analysis(
            system_prompt,
            normalized.analysis,
            normalized.modality,
        )
    return await generator.generate(system_prompt, history, normalized.prompt_text)


async def _persist_turn(
    user_id: str,
    profile_id: str,
    conversation: Dict[str, Any] | None,
    normalized: media.NormalizedInput,
    reply: str,
) -> Dict[str, Any]:
    """Append the user turn and the AI turn in a single conversation write."""
    if conversation is None:
        conversation = await storage.get_or_create_active_conversation(user_id, profile_id)

    return await storage.append_conversation_messages(
        conversation,
        [
            storage.build_message(
                "user",
                normalized.display_text,
                normalized.modality,
                _user_message_metadata(normalized),
            ),
            storage.build_message("ai", reply, "text"),
        ],
    )


async def run_chat_turn(
    account: Dict[str, Any],
    profile_id: str,
    modality: str,
    payload: Any,
) -> Dict[str, Any]:
    """
    Process one inbound message end to end.

    Steps run in a fixed order and any failure aborts the rest:
    admission, normalization, generation, conversation write, ledger append,
    usage commit. A failed generation therefore never consumes quota and never
    leaves a partial turn in the conversation. Ledger failures are the only
    ones swallowed.

    Returns:
        Dict with reply, annotation, transcription, modality, conversation_id
        and the account usage after the commit.
    """
    if not isinstance(profile_id, str) or not profile_id.strip():
        raise InvalidInput("Profile ID is required.")
    media.validate_payload(modality, payload)

    resource = quota.resource_for_modality(modality)
    if not await quota.admit(account, resource):
        raise quota.quota_exceeded_error(account, resource)

    profile = await storage.get_profile(profile_id.strip(), account["id"])
    if profile is None:
        raise NotFound("Profile not found")

    normalized = await media.normalize_input(modality, payload, profile)
    conversation = await storage.get_active_conversation(account["id"], profile["id"])

    try:
        reply = await _generate_reply(profile, conversation, normalized)
    except UpstreamUnavailable:
        await ledger.record_interaction(
            profile, modality, normalized.display_text, "", success=False
        )
        raise

    try:
        conversation = await _persist_turn(
            account["id"], profile["id"], conversation, normalized, reply
        )
    except PersistenceFailure:
        logger.error(
            "Generated %s reply for profile %s could not be persisted",
            modality,
            profile["id"],
        )
        raise

    await ledger.record_interaction(
        profile, modality, normalized.display_text, reply, success=True
    )

    try:
        await quota.commit(account, resource, amount=1)
    except PersistenceFailure:
        logger.error(
            "Usage commit failed after conversation %s was persisted; "
            "one %s unit for account %s is uncounted",
            conversation["id"],
            resource,
            account["id"],
        )
        raise

    return {
        "reply": reply,
        "annotation": normalized.annotation,
        "transcription": normalized.transcription,
        "modality": modality,
        "conversation_id": conversation["id"],
        "usage": quota.describe_usage(account),
    }
