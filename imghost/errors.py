from typing import Any, Dict, Optional


class ImageHostError(Exception):
    """Base error carrying the HTTP status and JSON payload for a failure."""

    status_code = 500
    error = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        self.message = message or self.error
        if status_code is not None:
            self.status_code = status_code
        if error is not None:
            self.error = error
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "error": self.error}
        if self.message and self.message != self.error:
            payload["message"] = self.message
        return payload


class ValidationError(ImageHostError):
    status_code = 400
    error = "Invalid request"


class AuthError(ImageHostError):
    status_code = 401
    error = "Authentication required"


class NotFound(ImageHostError):
    status_code = 404
    error = "Not found"


class ConflictError(ImageHostError):
    status_code = 409
    error = "Conflict"


class QuotaExceeded(ImageHostError):
    status_code = 429
    error = "Rate limit exceeded"

    def __init__(self, decision) -> None:
        self.decision = decision
        super().__init__(
            f"Too many requests. Try again in {decision.retry_after} seconds."
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["retryAfter"] = self.decision.retry_after
        payload["limit"] = self.decision.limit
        return payload


class InternalError(ImageHostError):
    pass


class RateLimitUnavailable(ImageHostError):
    status_code = 503
    error = "Rate limiting unavailable"
