from typing import Optional


class ServiceQueueError(Exception):
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(ServiceQueueError):
    status_code = 400


class NotFoundError(ServiceQueueError):
    status_code = 404


class PreconditionError(ServiceQueueError):
    status_code = 400


class ConflictError(ServiceQueueError):
    status_code = 409


class AuthorizationError(ServiceQueueError):
    status_code = 403


def validation_error_from(exc) -> ValidationError:
    """First pydantic error as a field-level ValidationError."""
    errors = exc.errors()
    if not errors:
        return ValidationError(str(exc))
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    field = loc[-1] if loc else None
    message = first.get("msg", "Invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return ValidationError(f"{field}: {message}" if field else message, field=field)
