"""Error taxonomy for the chat pipeline and its collaborators."""

from typing import Any, Dict


class RizzMateError(Exception):
    """Base class for user-visible pipeline failures."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        """Structured payload returned to API clients."""
        return {"code": self.code, "message": self.message}


class InvalidInput(RizzMateError):
    status_code = 400
    code = "invalid_input"


class UnsupportedMedia(RizzMateError):
    status_code = 415
    code = "unsupported_media"


class PayloadTooLarge(RizzMateError):
    status_code = 413
    code = "payload_too_large"


class NotFound(RizzMateError):
    status_code = 404
    code = "not_found"


class QuotaExceeded(RizzMateError):
    """Admission denied for the account's current plan."""

    status_code = 402
    code = "quota_exceeded"

    def __init__(
        self,
        message: str,
        *,
        resource: str,
        plan: str,
        limit: int | None,
        used: int,
    ):
        super().__init__(message)
        self.resource = resource
        self.plan = plan
        self.limit = limit
        self.used = used

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            {
                "limit_reached": True,
                "resource": self.resource,
                "plan": self.plan,
                "limit": self.limit,
                "used": self.used,
                "action": "upgrade_plan",
            }
        )
        return detail


class UpstreamUnavailable(RizzMateError):
    """Vision, transcription or generation service failed or timed out."""

    status_code = 503
    code = "upstream_unavailable"


class GenerationFailed(UpstreamUnavailable):
    code = "generation_failed"


class PersistenceFailure(RizzMateError):
    """A storage read or write failed."""

    status_code = 500
    code = "persistence_failure"
