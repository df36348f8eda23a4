"""Error taxonomy for the webhook router and automation flows.

Business-rule and auth errors propagate to the Dispatcher, which degrades
to human handoff. Errors flagged ``retryable`` are retried locally by the
adapter layer with bounded backoff.
"""

from typing import Any, Optional


class DispatchError(Exception):
    """Base exception for all dispatcher errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP status code when surfaced through the API
        retryable: Whether the operation may be retried automatically
        details: Additional error details
    """

    message: str = "An unexpected error occurred"
    error_code: str = "internal_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert to API error body."""
        result: dict[str, Any] = {"error": self.error_code, "detail": self.message}
        if self.details:
            result["details"] = self.details
        return result


class TenantResolutionError(DispatchError):
    """No tenant could be identified for an inbound event."""

    message = "Tenant could not be resolved"
    error_code = "tenant_not_found"
    status_code = 404


class MalformedPayload(DispatchError):
    """Inbound payload does not match any known provider shape."""

    message = "Malformed payload"
    error_code = "malformed_payload"
    status_code = 422


class ConfigUnavailable(DispatchError):
    """Tenant configuration could not be loaded and no cached copy exists."""

    message = "Tenant configuration unavailable"
    error_code = "config_unavailable"
    status_code = 503


class PricingUndefined(DispatchError):
    """Neither a brand price nor a type default exists for a device."""

    message = "No price defined for device"
    error_code = "pricing_undefined"
    status_code = 409


class TemplateRenderError(DispatchError):
    """A message template is missing required placeholders."""

    message = "Template could not be rendered"
    error_code = "template_render_error"
    status_code = 409


class CalendarAuthError(DispatchError):
    """Calendar provider rejected our credentials."""

    message = "Calendar authorization failed"
    error_code = "calendar_auth_error"
    status_code = 502


class TokenRevoked(CalendarAuthError):
    """Refresh token is invalid or revoked; needs re-authorization."""

    message = "Calendar refresh token revoked"
    error_code = "token_revoked"


class TokenRefreshTimeout(DispatchError):
    """Transient failure while exchanging a refresh token."""

    message = "Calendar token refresh timed out"
    error_code = "token_refresh_timeout"
    status_code = 504
    retryable = True


class SlotConflict(DispatchError):
    """The confirmed slot was taken between proposal and booking."""

    message = "Slot is no longer available"
    error_code = "slot_conflict"
    status_code = 409


class AdapterError(DispatchError):
    """External provider returned an error response."""

    message = "External provider error"
    error_code = "adapter_error"
    status_code = 502

    def __init__(
        self,
        message: Optional[str] = None,
        provider: Optional[str] = None,
        status: Optional[int] = None,
        retryable: bool = False,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        if status is not None:
            details["status"] = status
        super().__init__(message=message, details=details, **kwargs)
        self.provider = provider
        self.status = status
        self.retryable = retryable


class AdapterTimeout(AdapterError):
    """External call exceeded its timeout or the connection failed."""

    message = "External provider timed out"
    error_code = "adapter_timeout"
    status_code = 504

    def __init__(self, message: Optional[str] = None, provider: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message=message, provider=provider, retryable=True, **kwargs)


class AuthenticationError(DispatchError):
    """Missing or invalid admin API key."""

    message = "Invalid or missing API key"
    error_code = "unauthorized"
    status_code = 401


class RecordNotFound(DispatchError):
    """Tenant-scoped record does not exist."""

    message = "Record not found"
    error_code = "not_found"
    status_code = 404
