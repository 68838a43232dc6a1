from __future__ import annotations

from typing import Any


class OriginationError(Exception):
    """Base class for every failure surfaced by the origination engine.

    ``code`` is a stable, machine-readable reason that callers can branch on;
    the message is meant for humans and may change.
    """

    code: str = "origination_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class NotFound(OriginationError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} with ID {entity_id} not found", code=f"{entity.lower().replace(' ', '_')}_not_found")
        self.entity = entity
        self.entity_id = entity_id


class Conflict(OriginationError):
    code = "conflict"


class InvalidStateTransition(OriginationError):
    code = "invalid_state_transition"

    def __init__(self, entity: str, current: str, requested: str) -> None:
        super().__init__(f"Invalid {entity} status transition from {current} to {requested}")
        self.entity = entity
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "current": self.current, "requested": self.requested}


class BusinessRuleViolation(OriginationError):
    code = "business_rule_violation"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message, code=reason)
        self.reason = reason


class ConsistencyError(OriginationError):
    code = "consistency_error"


class InvalidArgument(OriginationError, ValueError):
    code = "invalid_argument"


class PersistenceError(OriginationError, OSError):
    code = "persistence_error"
