from datetime import datetime


class AppError(Exception):
    """Base class for errors that map onto an HTTP status and the error envelope."""

    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, details=None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def headers(self) -> dict[str, str] | None:
        return None


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"
    default_message = "Validation error"


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Authentication required"

    def headers(self) -> dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "Not allowed"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class LockedError(AppError):
    status_code = 403
    code = "account_locked"
    default_message = "Account is temporarily locked"

    def __init__(
        self,
        message: str | None = None,
        *,
        locked_until: datetime | None = None,
        retry_after_seconds: int | None = None,
    ) -> None:
        self.locked_until = locked_until
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message,
            details={
                "locked_until": locked_until.isoformat() if locked_until else None,
                "retry_after_seconds": retry_after_seconds,
            },
        )

    def headers(self) -> dict[str, str] | None:
        if self.retry_after_seconds:
            return {"Retry-After": str(self.retry_after_seconds)}
        return None


class ExpiredError(AppError):
    status_code = 400
    code = "expired"
    default_message = "Link code expired"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class RateLimitedError(AppError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests. Try again later."

    def __init__(self, message: str | None = None, *, retry_after_seconds: int = 1) -> None:
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(message, details={"retry_after_seconds": self.retry_after_seconds})

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after_seconds)}


class StoreError(AppError):
    """Key-value store I/O failure; surfaced to clients as a generic 500."""
