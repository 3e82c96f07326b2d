"""Domain error taxonomy.

Every error carries the HTTP status it maps to and an optional payload that
is merged into the ``{"success": false, "error": ...}`` response envelope.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class FieldError:
    """A single client-fixable problem with one input field."""

    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class DomainError(Exception):
    """Base class for errors raised by the domain layer."""

    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def payload(self) -> dict[str, Any]:
        return {}


class ValidationError(DomainError):
    """Missing required field, bad enum value, non-positive weight/price."""

    status_code = 400

    def __init__(self, errors: list[FieldError] | FieldError, message: str | None = None):
        if isinstance(errors, FieldError):
            errors = [errors]
        self.errors = errors
        if message is None:
            message = "; ".join(f"{e.field}: {e.message}" for e in errors) or "Invalid request"
        super().__init__(message)

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([FieldError(field, message)])

    def payload(self) -> dict[str, Any]:
        return {"fields": [e.to_dict() for e in self.errors]}


class InvalidPrice(ValidationError):
    """Unit price is zero or negative."""

    def __init__(self, unit_price: Any):
        super().__init__(FieldError("unitPrice", f"Unit price must be greater than 0 (got {unit_price})"))


class Unauthorized(DomainError):
    status_code = 401


class Forbidden(DomainError):
    status_code = 403


class NotFound(DomainError):
    """Missing record, or a record the caller may not see."""

    status_code = 404

    def __init__(self, entity: str, record_id: str | None = None):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} not found")


class InvalidTransition(DomainError):
    """A state-machine edge that does not exist was requested."""

    status_code = 409

    def __init__(self, entity: str, current: str, requested: str):
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move {entity} from '{current}' to '{requested}'")

    def payload(self) -> dict[str, Any]:
        return {"entity": self.entity, "current": self.current, "requested": self.requested}


class InsufficientInventory(DomainError):
    """Order quantity exceeds the pickup's available weight."""

    status_code = 409

    def __init__(self, available: Any, requested: Any):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient quantity. Available: {float(available):.2f} kg, Requested: {float(requested)} kg"
        )

    def payload(self) -> dict[str, Any]:
        return {"available": float(self.available), "requested": float(self.requested)}


class Conflict(DomainError):
    """Concurrent write lost a race, or a duplicate was rejected."""

    status_code = 409


class ExternalServiceDegraded(Exception):
    """An external call (vision model, geocoder) failed or timed out.

    Adapters catch this and return their documented fallback; it never
    reaches an HTTP response.
    """
