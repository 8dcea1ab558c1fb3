from __future__ import annotations

from typing import Any


class LoanManagementError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def as_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "kind": self.kind, "context": dict(self.context)}


class NotFoundError(LoanManagementError):
    kind = "not_found"
    status_code = 404


class InvalidRangeError(LoanManagementError):
    kind = "invalid_range"
    status_code = 400


class InvalidRequestError(LoanManagementError):
    kind = "validation"
    status_code = 400


class InvalidTokenError(InvalidRequestError):
    kind = "invalid_token"


class PermissionDeniedError(LoanManagementError):
    kind = "permission_denied"
    status_code = 403


class ConflictError(LoanManagementError):
    kind = "conflict"
    status_code = 409


class ItemBorrowedError(ConflictError):
    """Status change or deletion attempted while the item has an open loan."""

    kind = "blocked_by_active_loan"
    status_code = 400


class ItemUnavailableError(ConflictError):
    kind = "item_unavailable"
    status_code = 400


class ReservationOverlapError(ConflictError):
    kind = "date_overlap"
    status_code = 409


class LoanOverlapError(ConflictError):
    kind = "loan_overlap"
    status_code = 409
