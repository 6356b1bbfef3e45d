"""Typed errors raised by the store, the sleep state machine and the facade.

Every error carries the HTTP status and a stable machine-readable code so the
request layer can map it without inspecting messages.
"""

from typing import Any, Dict, Optional


class BabyLogError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class ValidationError(BabyLogError):
    """Bad type/subtype/user/timestamp/amount. Raised before any write."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field)
        self.field = field


class ConflictError(BabyLogError):
    status_code = 409
    code = "CONFLICT"


class SleepAlreadyOpenError(ConflictError):
    code = "SLEEP_ALREADY_OPEN"

    def __init__(self, user_name: str, event_id: int):
        super().__init__(
            f"{user_name} already has an open sleep session",
            user_name=user_name,
            event_id=event_id,
        )
        self.user_name = user_name
        self.event_id = event_id


class NoOpenSleepError(ConflictError):
    code = "NO_OPEN_SLEEP"

    def __init__(self, user_name: str):
        super().__init__(f"No open sleep session for {user_name}", user_name=user_name)
        self.user_name = user_name


class OverlapError(ConflictError):
    code = "OVERLAP_DETECTED"

    def __init__(self, conflicting_id: int):
        super().__init__(
            f"Sleep session overlaps existing session {conflicting_id}",
            conflicting_id=conflicting_id,
        )
        self.conflicting_id = conflicting_id


class ConfirmationRequired(BabyLogError):
    """Plausible but unusual sleep duration. Must round-trip to the caller, never retried."""

    status_code = 422
    code = "CONFIRMATION_REQUIRED"

    def __init__(self, verification: Any):
        super().__init__(verification.message)
        self.verification = verification

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["requires_confirmation"] = True
        body["verification"] = self.verification.to_dict()
        return body


class ConcurrentUpdateError(BabyLogError):
    status_code = 409
    code = "CONCURRENT_UPDATE"


class NotFoundError(BabyLogError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, event_id: int):
        super().__init__(f"Event {event_id} not found", event_id=event_id)
        self.event_id = event_id


class StorageError(BabyLogError):
    """Wraps an underlying persistence failure; the enclosing transaction is always rolled back."""

    status_code = 500
    code = "STORAGE_ERROR"
