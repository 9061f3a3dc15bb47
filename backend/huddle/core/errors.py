"""Domain errors raised by the controllers.

Each error carries the HTTP status the API layer answers with and a short
client-safe message. Extra keyword arguments are echoed back in the body.
"""

from typing import Any


class HuddleError(Exception):
    status_code: int = 500
    default_message: str = "Server error"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        body.update(self.extra)
        return body


class ValidationError(HuddleError):
    status_code = 400
    default_message = "Validation failed"


class CapacityExceeded(HuddleError):
    status_code = 400
    default_message = "Group is full"


class CooldownActive(HuddleError):
    status_code = 400

    def __init__(self, remaining_hours: int) -> None:
        self.remaining_hours = remaining_hours
        super().__init__(
            f"Cooldown active. Try after {remaining_hours} hours",
            remaining_hours=remaining_hours,
        )


class InviteInvalid(HuddleError):
    status_code = 400
    default_message = "Invalid invite"

    def __init__(self, message: str | None = None, reason: str = "invalid") -> None:
        self.reason = reason
        super().__init__(message, reason=reason)


class Unauthorized(HuddleError):
    status_code = 401
    default_message = "Invalid credentials"


class Forbidden(HuddleError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(HuddleError):
    status_code = 404
    default_message = "Not found"


class Conflict(HuddleError):
    status_code = 409
    default_message = "Conflict"
