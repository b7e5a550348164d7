"""FastAPI backend for RizzMate."""

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, ValidationError
from typing import Any, Dict, List, Literal
from datetime import datetime
import logging

from . import billing, generator, ledger, pipeline, quota, storage
from .auth import get_user_from_token, login_user, register_user
from .config import CORS_ALLOW_ORIGINS, LOG_LEVEL
from .errors import NotFound, RizzMateError
from .media import (
    MODALITY_IMAGE,
    MODALITY_SCREENSHOT,
    MODALITY_TEXT,
    MODALITY_VOICE,
    read_upload,
)

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="RizzMate API")
bearer_scheme = HTTPBearer()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class AuthRequest(BaseModel):
    """Email/password auth request payload."""
    email: str
    password: str = Field(min_length=6)


class AuthResponse(BaseModel):
    """Auth response for login/register."""
    access_token: str | None
    user: Dict[str, Any]
    requires_email_confirmation: bool = False


class TargetPersonPayload(BaseModel):
    """Descriptor of the person the user wants to talk to."""
    name: str | None = None
    personality: Literal["introvert", "extrovert", "ambivert", "unknown"] | None = None
    relationship: Literal[
        "stranger", "acquaintance", "friend", "colleague", "classmate", "online"
    ] | None = None
    context: Literal["online", "offline", "college", "work", "social", "dating_app"] | None = None
    interests: List[str] | None = None
    age: int | None = Field(default=None, ge=0, le=120)
    occupation: str | None = None
    location: str | None = None
    notes: str | None = None


class ConversationStylePayload(BaseModel):
    """How replies should sound."""
    tone: Literal[
        "casual", "flirty", "romantic", "funny", "intellectual", "mysterious"
    ] | None = None
    approach: Literal["direct", "subtle", "playful", "sincere", "teasing"] | None = None
    language: str | None = None


class ProfileRequest(BaseModel):
    """Create/update payload for a profile."""
    target_person: TargetPersonPayload | None = None
    conversation_style: ConversationStylePayload | None = None


class TextMessageRequest(BaseModel):
    """Request payload for a text chat turn."""
    message: str = ""
    profile_id: str = ""


class SetPlanRequest(BaseModel):
    """Plan change pushed by the payment-confirmation flow."""
    account_id: str
    plan: str
    period_start: datetime | None = None
    period_end: datetime | None = None


def _http_error(error: RizzMateError) -> HTTPException:
    """Convert a pipeline error into an HTTP error with a structured detail."""
    if error.status_code >= 500:
        logger.error("%s: %s", error.code, error.message)
    return HTTPException(status_code=error.status_code, detail=error.to_detail())


def _payload_dump(model: BaseModel | None) -> Dict[str, Any] | None:
    if model is None:
        return None
    return model.model_dump(exclude_unset=True)


def _serialize_conversation(conversation: Dict[str, Any]) -> Dict[str, Any]:
    last_activity = conversation.get("last_activity")
    return {
        "conversation_id": conversation["id"],
        "profile_id": conversation["profile_id"],
        "status": conversation["status"],
        "messages": conversation["messages"],
        "total_messages": conversation["total_messages"],
        "last_activity": last_activity.isoformat() if isinstance(last_activity, datetime) else None,
    }


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "RizzMate API"}


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
):
    """Validate bearer token with Supabase and return user profile."""
    return await get_user_from_token(credentials.credentials)


async def get_current_account(user: Dict[str, Any] = Depends(get_current_user)):
    """Load (or lazily create) the account of the authenticated user."""
    try:
        return await storage.get_account(user["id"])
    except RizzMateError as error:
        raise _http_error(error) from error


async def get_owned_profile(profile_id: str, user_id: str) -> Dict[str, Any]:
    """Return an active profile only when it belongs to the current user."""
    try:
        profile = await storage.get_profile(profile_id, user_id)
    except RizzMateError as error:
        raise _http_error(error) from error
    if profile is None:
        raise _http_error(NotFound("Profile not found"))
    return profile


async def _run_turn(
    account: Dict[str, Any], profile_id: str, modality: str, payload: Any
) -> Dict[str, Any]:
    try:
        return await pipeline.run_chat_turn(account, profile_id, modality, payload)
    except RizzMateError as error:
        raise _http_error(error) from error


@app.post("/api/auth/register", response_model=AuthResponse)
async def register(request: AuthRequest):
    """Register a new user in Supabase."""
    result = await register_user(request.email, request.password)
    registered_user = result.get("user") or {}
    registered_user_id = registered_user.get("id")
    if isinstance(registered_user_id, str) and registered_user_id:
        try:
            await storage.get_account(registered_user_id)
        except RizzMateError:
            # get_current_account creates the row on first authenticated use.
            logger.warning("Could not create account row for %s", registered_user_id)

    session = result.get("session")
    return {
        "access_token": session.get("access_token") if session else None,
        "user": registered_user,
        "requires_email_confirmation": session is None,
    }


@app.post("/api/auth/login", response_model=AuthResponse)
async def login(request: AuthRequest):
    """Sign in an existing Supabase user."""
    result = await login_user(request.email, request.password)
    return {
        "access_token": result.get("access_token"),
        "user": result.get("user") or {},
        "requires_email_confirmation": False,
    }


@app.get("/api/auth/me")
async def me(user: Dict[str, Any] = Depends(get_current_user)):
    """Return the authenticated user profile."""
    return {"user": user}


@app.get("/api/account/usage")
async def get_usage(account: Dict[str, Any] = Depends(get_current_account)):
    """Return current plan, monthly usage and limits."""
    try:
        await quota.refresh_account(account)
    except RizzMateError as error:
        raise _http_error(error) from error
    return quota.describe_usage(account)


@app.get("/api/billing/plans")
async def get_plans():
    """Return the plan catalogue."""
    return {"plans": billing.list_plans()}


@app.post("/api/billing/plan")
async def set_plan(
    request: Request,
    billing_signature: str | None = Header(default=None, alias="X-Billing-Signature"),
):
    """Apply a confirmed plan change pushed by the payment flow."""
    payload = await request.body()
    if not payload:
        raise HTTPException(status_code=400, detail="Missing plan payload.")

    if not billing.verify_billing_signature(payload, billing_signature or ""):
        raise HTTPException(status_code=401, detail="Invalid billing signature.")

    try:
        plan_request = SetPlanRequest.model_validate_json(payload)
    except ValidationError as error:
        raise HTTPException(status_code=400, detail="Invalid plan payload.") from error

    try:
        account = await billing.set_plan(
            plan_request.account_id,
            plan_request.plan,
            plan_request.period_start,
            plan_request.period_end,
        )
    except RizzMateError as error:
        raise _http_error(error) from error
    return {"account_id": account["id"], "usage": quota.describe_usage(account)}


@app.post("/api/profiles", status_code=201)
async def create_profile(
    request: ProfileRequest,
    user: Dict[str, Any] = Depends(get_current_user),
):
    """Create a new target-person profile."""
    try:
        profile = await storage.create_profile(
            user["id"],
            _payload_dump(request.target_person),
            _payload_dump(request.conversation_style),
        )
    except RizzMateError as error:
        raise _http_error(error) from error
    return {"profile": profile}


@app.get("/api/profiles")
async def list_profiles(user: Dict[str, Any] = Depends(get_current_user)):
    """List active profiles, most recently updated first."""
    try:
        profiles = await storage.list_profiles(user["id"])
    except RizzMateError as error:
        raise _http_error(error) from error
    return {"profiles": profiles}


@app.get("/api/profiles/{profile_id}")
async def get_profile(profile_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    """Get a single active profile."""
    return {"profile": await get_owned_profile(profile_id, user["id"])}


@app.put("/api/profiles/{profile_id}")
async def update_profile(
    profile_id: str,
    request: ProfileRequest,
    user: Dict[str, Any] = Depends(get_current_user),
):
    """Merge descriptor/style changes into a profile."""
    profile = await get_owned_profile(profile_id, user["id"])
    try:
        updated = await storage.update_profile(
            profile,
            _payload_dump(request.target_person),
            _payload_dump(request.conversation_style),
        )
    except RizzMateError as error:
        raise _http_error(error) from error
    return {"profile": updated}


@app.delete("/api/profiles/{profile_id}")
async def delete_profile(profile_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    """Retire a profile; its row and conversations are kept."""
    profile = await get_owned_profile(profile_id, user["id"])
    try:
        await storage.retire_profile(profile)
    except RizzMateError as error:
        raise _http_error(error) from error
    return {"id": profile_id, "status": storage.PROFILE_STATUS_RETIRED}


@app.get("/api/profiles/{profile_id}/history")
async def get_profile_history(
    profile_id: str, user: Dict[str, Any] = Depends(get_current_user)
):
    """Return the latest ledger entries of a profile."""
    profile = await get_owned_profile(profile_id, user["id"])
    return {"history": ledger.recent_history(profile)}


@app.get("/api/profiles/{profile_id}/stats")
async def get_profile_stats(
    profile_id: str, user: Dict[str, Any] = Depends(get_current_user)
):
    """Return interaction statistics of a profile."""
    profile = await get_owned_profile(profile_id, user["id"])
    return {"stats": ledger.compute_profile_stats(profile)}


@app.post("/api/chat/text")
async def send_text_message(
    request: TextMessageRequest,
    account: Dict[str, Any] = Depends(get_current_account),
):
    """Send a text message and return the drafted reply."""
    return await _run_turn(account, request.profile_id, MODALITY_TEXT, request.message)


@app.post("/api/chat/image")
async def send_image_message(
    profile_id: str = Form(default=""),
    image: UploadFile | None = File(default=None),
    account: Dict[str, Any] = Depends(get_current_account),
):
    """Send a photo; the reply is drafted from its scene analysis."""
    payload = await read_upload(image, "image.jpg")
    return await _run_turn(account, profile_id, MODALITY_IMAGE, payload)


@app.post("/api/chat/voice")
async def send_voice_message(
    profile_id: str = Form(default=""),
    audio: UploadFile | None = File(default=None),
    account: Dict[str, Any] = Depends(get_current_account),
):
    """Send a voice note; the reply is drafted from its transcript."""
    payload = await read_upload(audio, "audio.wav")
    return await _run_turn(account, profile_id, MODALITY_VOICE, payload)


@app.post("/api/chat/screenshot")
async def send_screenshot_message(
    profile_id: str = Form(default=""),
    screenshot: UploadFile | None = File(default=None),
    account: Dict[str, Any] = Depends(get_current_account),
):
    """Send a chat/social screenshot; the reply is drafted from its analysis."""
    payload = await read_upload(screenshot, "screenshot.png")
    return await _run_turn(account, profile_id, MODALITY_SCREENSHOT, payload)


@app.get("/api/chat/conversation/{profile_id}")
async def get_conversation(profile_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    """Return the active conversation with a profile (empty before the first turn)."""
    profile = await get_owned_profile(profile_id, user["id"])
    try:
        conversation = await storage.get_active_conversation(user["id"], profile["id"])
    except RizzMateError as error:
        raise _http_error(error) from error
    if conversation is None:
        return {"conversation_id": None, "messages": [], "total_messages": 0}
    return _serialize_conversation(conversation)


@app.get("/api/chat/conversations/{conversation_id}")
async def get_conversation_by_id(
    conversation_id: str, user: Dict[str, Any] = Depends(get_current_user)
):
    """Return a conversation by id, including those of retired profiles."""
    try:
        conversation = await storage.get_conversation_by_id(conversation_id, user["id"])
    except RizzMateError as error:
        raise _http_error(error) from error
    if conversation is None:
        raise _http_error(NotFound("Conversation not found"))
    return _serialize_conversation(conversation)


@app.delete("/api/chat/conversation/{profile_id}")
async def clear_conversation(profile_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    """Clear the active conversation's messages without deleting it."""
    profile = await get_owned_profile(profile_id, user["id"])
    try:
        conversation = await storage.clear_conversation(user["id"], profile["id"])
    except RizzMateError as error:
        raise _http_error(error) from error
    if conversation is None:
        return {"conversation_id": None, "messages": [], "total_messages": 0}
    return _serialize_conversation(conversation)


@app.get("/api/chat/starters/{profile_id}")
async def get_conversation_starters(
    profile_id: str, user: Dict[str, Any] = Depends(get_current_user)
):
    """Generate conversation openers for a profile."""
    profile = await get_owned_profile(profile_id, user["id"])
    try:
        starters = await generator.generate_starters(profile)
    except RizzMateError as error:
        raise _http_error(error) from error
    return {"starters": starters}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
