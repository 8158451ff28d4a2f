"""
shared/utils/exceptions.py
Domain error taxonomy. Raised by stores, the access gate and the
lifecycle controller; rendered to JSON by the handler registered in main.py.
"""

from typing import Optional


class AppError(Exception):
    status_code = 400
    code = "APP_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code, "success": False}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(AppError):
    """Malformed or rule-violating input."""
    status_code = 400
    code = "VALIDATION_ERROR"


class Unauthorized(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(AppError):
    status_code = 409
    code = "CONFLICT"


class BannedAccount(AppError):
    """Authentication blocked for a banned user. Message carries the stored reason."""
    status_code = 403
    code = "BANNED_ACCOUNT"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "Violation of terms"
        super().__init__(f"Your account has been banned. Reason: {self.reason}")


class RegistrationClosed(ValidationError):
    code = "REGISTRATION_CLOSED"

    def __init__(self, message: str = "Registration deadline has passed"):
        super().__init__(message, field="registration_deadline")


class AlreadyRegistered(Conflict):
    code = "ALREADY_REGISTERED"

    def __init__(self, message: str = "You are already registered for this event"):
        super().__init__(message)


class RegistrationNotFound(NotFound):
    code = "REGISTRATION_NOT_FOUND"

    def __init__(self, message: str = "Registration not found"):
        super().__init__(message)
