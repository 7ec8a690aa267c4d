"""Domain errors raised by the dispatch engine services.

Every error carries a stable ``code`` and the HTTP status the API layer maps
it to. Race-loss errors (``AlreadyAssignedError``, ``StaleOfferError``) are
expected and frequent; callers re-fetch state instead of treating them as bugs.
"""

from __future__ import annotations

from typing import Optional


class DispatchError(Exception):
    code = "dispatch_error"
    status_code = 400

    def __init__(self, message: str, *, order_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.order_id = order_id

    def to_dict(self) -> dict:
        payload = {"detail": self.message, "code": self.code}
        if self.order_id is not None:
            payload["orderId"] = self.order_id
        return payload


class ValidationError(DispatchError):
    code = "validation_error"
    status_code = 422


class NotFoundError(DispatchError):
    code = "not_found"
    status_code = 404


class PermissionDeniedError(DispatchError):
    code = "permission_denied"
    status_code = 403


class AlreadyAssignedError(DispatchError):
    code = "already_assigned"
    status_code = 409


class StaleOfferError(DispatchError):
    code = "order_no_longer_available"
    status_code = 409


class IllegalTransitionError(DispatchError):
    code = "illegal_transition"
    status_code = 409


class TooLateToCancelError(DispatchError):
    code = "too_late_to_cancel"
    status_code = 409


class InvalidTransitionError(DispatchError):
    """Presence status change rejected (e.g. available while carrying an order)."""

    code = "invalid_presence_transition"
    status_code = 409


class UnavailableError(DispatchError):
    """Storage or index temporarily unreachable. Retried before surfacing."""

    code = "unavailable"
    status_code = 503
