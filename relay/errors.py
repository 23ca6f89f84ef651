from typing import Any, Optional


class RelayError(Exception):
    """Base error carrying a machine-readable code, surfaced by the HTTP layer."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(RelayError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class MissingVariableError(ValidationError):
    default_code = "MISSING_VARIABLE"

    def __init__(self, missing: list[str]):
        super().__init__(
            f"Missing template variables: {', '.join(missing)}",
            details={"missing": missing},
        )
        self.missing = missing


class WindowClosedError(ValidationError):
    default_code = "WINDOW_CLOSED"


class NotFoundError(RelayError):
    status_code = 404
    default_code = "RESOURCE_NOT_FOUND"


class ConflictError(RelayError):
    status_code = 409
    default_code = "CONFLICT"


class ProviderError(RelayError):
    """Error response from the WhatsApp Cloud API."""

    status_code = 502
    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        code: Optional[str] = None,
        provider_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, details=details)
        self.http_status = http_status
        self.provider_code = provider_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["details"] = {
            **self.details,
            "http_status": self.http_status,
            "provider_code": self.provider_code,
        }
        return data


class ProviderNetworkError(ProviderError):
    default_code = "NETWORK_ERROR"


class MessageExpiredError(RelayError):
    """Queued message outlived its time-to-live before it could be sent."""

    default_code = "MESSAGE_EXPIRED"


class LeaseLostError(ConflictError):
    """A queued row was released to another worker while this one held it."""

    default_code = "LEASE_LOST"
