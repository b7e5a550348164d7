"""Persona system prompt and bounded history for reply generation."""

from typing import Any, Dict, List, Tuple

from .config import CONTEXT_HISTORY_MESSAGES

PERSONA_SENTENCE = (
    "You are RizzMate, an AI assistant that helps with flirtatious conversations."
)

GUIDELINES = (
    "Be respectful and appropriate",
    "Be creative and engaging",
    "Match the conversation tone",
    "Keep responses concise (1-3 sentences)",
    "Be authentic and genuine",
    "Use humor when appropriate",
    "Be confident but not arrogant",
    "Show interest in the other person",
    "Be playful and fun",
    "Avoid being too forward or inappropriate",
)

# Internal speaker roles mapped to chat-completion roles; system notes are not replayed.
HISTORY_ROLES = {"user": "user", "ai": "assistant"}


def build_system_prompt(profile: Dict[str, Any]) -> str:
    """
    Compose the persona prompt from profile attributes.

    Order: persona, personality, relationship, context, tone/approach, guidelines.
    """
    target_person = profile.get("target_person") or {}
    style = profile.get("conversation_style") or {}

    sentences = [PERSONA_SENTENCE]

    personality = target_person.get("personality") or "unknown"
    if personality != "unknown":
        sentences.append(f"The target person is {personality}.")

    relationship = target_person.get("relationship") or "stranger"
    if relationship != "stranger":
        sentences.append(f"Your relationship with them is: {relationship}.")

    context = target_person.get("context") or "online"
    sentences.append(f"The context is: {context}.")

    tone = style.get("tone") or "casual"
    approach = style.get("approach") or "subtle"
    sentences.append(f"Your conversation style should be {tone} and {approach}.")

    guidelines = "\n".join(f"- {guideline}" for guideline in GUIDELINES)
    return f"{' '.join(sentences)}\n\nGuidelines:\n{guidelines}"


def build_history(
    conversation: Dict[str, Any] | None,
    max_messages: int = CONTEXT_HISTORY_MESSAGES,
) -> List[Dict[str, str]]:
    """Return the most recent user/ai turns as chat-completion messages."""
    if not isinstance(conversation, dict):
        return []

    messages = conversation.get("messages")
    if not isinstance(messages, list):
        return []

    history: List[Dict[str, str]] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        role = HISTORY_ROLES.get(message.get("role"))
        content = message.get("content")
        if role is None or not isinstance(content, str):
            continue
        history.append({"role": role, "content": content})

    if max_messages <= 0:
        return []
    return history[-max_messages:]


def build_context(
    profile: Dict[str, Any],
    conversation: Dict[str, Any] | None,
) -> Tuple[str, List[Dict[str, str]]]:
    """Return (system_prompt, history) for one generation request."""
    return build_system_prompt(profile), build_history(conversation)
