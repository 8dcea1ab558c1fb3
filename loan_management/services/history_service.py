from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from models.loan_models import AuditLog, Loan, LoanHistory, ReservationHistory, UserActionHistory
from services.errors import InvalidRequestError


LOAN_HISTORY = "loan"
RESERVATION_HISTORY = "reservation"
USER_HISTORY = "user"

LOAN_HISTORY_STATES = {"SCHEDULED", "ACTIVE", "OVERDUE", "RETURNED"}
RESERVATION_ACTIONS = {"RESERVE", "MODIFY", "CANCEL", "EXPIRED"}
USER_ACTIONS = {"CREATE", "UPDATE", "DELETE", "PASSWORD_RESET_REQUESTED", "PASSWORD_SET"}

DATE_FORMAT = "%d/%m/%Y"


def record(
    db: Session,
    kind: str,
    entity_id: int,
    actor_id: int | None,
    action: str,
    comment: str | None = None,
    *,
    user_id: int | None = None,
    reservation_id: int | None = None,
    when: datetime | None = None,
):
    """Append one history row for a state change; the caller owns the transaction.

    `entity_id` is the loan id for loan history, the item id for reservation
    history (reservations are deleted, the item outlives them) and the target
    user id for user history.
    """
    when = when or datetime.now()
    if kind == LOAN_HISTORY:
        if action not in LOAN_HISTORY_STATES:
            raise InvalidRequestError(f"Unknown loan history status: {action}", action=action)
        entry = LoanHistory(
            LoanID=entity_id,
            Status=action,
            Date=when,
            UserID=user_id,
            PerformedByID=actor_id,
            Comment=comment,
        )
    elif kind == RESERVATION_HISTORY:
        if action not in RESERVATION_ACTIONS:
            raise InvalidRequestError(f"Unknown reservation history action: {action}", action=action)
        entry = ReservationHistory(
            ItemID=entity_id,
            ReservationID=reservation_id,
            UserID=user_id,
            PerformedByID=actor_id,
            Action=action,
            Date=when,
            Comment=comment,
        )
    elif kind == USER_HISTORY:
        if action not in USER_ACTIONS:
            raise InvalidRequestError(f"Unknown user history action: {action}", action=action)
        entry = UserActionHistory(
            TargetUserID=entity_id,
            PerformerID=actor_id,
            Action=action,
            Date=when,
            Comment=comment,
        )
    else:
        raise InvalidRequestError(f"Unknown history kind: {kind}", kind=kind)

    db.add(entry)
    db.flush()
    return entry


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: int | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def display_user(user) -> str:
    if user is None:
        return "unknown user"
    return f"{user.FirstName} {user.LastName}".strip()


def describe_window(item_name: str | None, start: datetime, end: datetime, user=None, prefix: str = "Reservation") -> str:
    return (
        f"{prefix} of '{item_name or 'unknown item'}' "
        f"from {start.strftime(DATE_FORMAT)} to {end.strftime(DATE_FORMAT)} "
        f"for {display_user(user)}"
    )


def _require_history_filter(item_id: int | None, user_id: int | None) -> None:
    if not item_id and not user_id:
        raise InvalidRequestError("itemID or userID is required.")


def list_loan_history(db: Session, *, item_id: int | None = None, user_id: int | None = None) -> list[LoanHistory]:
    """Loan history for an item and/or a user, newest first.

    A user matches rows recorded for them and every row of loans they borrowed.
    """
    _require_history_filter(item_id, user_id)
    stmt = (
        select(LoanHistory)
        .join(Loan, Loan.LoanID == LoanHistory.LoanID)
        .options(
            selectinload(LoanHistory.Loan).selectinload(Loan.Item),
            selectinload(LoanHistory.Loan).selectinload(Loan.Borrower),
        )
    )
    if user_id:
        stmt = stmt.where(or_(LoanHistory.UserID == user_id, Loan.BorrowerID == user_id))
    if item_id:
        stmt = stmt.where(Loan.ItemID == item_id)
    return list(db.execute(stmt.order_by(LoanHistory.Date.desc(), LoanHistory.HistoryID.desc())).scalars().all())


def list_reservation_history(
    db: Session,
    *,
    item_id: int | None = None,
    user_id: int | None = None,
) -> list[ReservationHistory]:
    _require_history_filter(item_id, user_id)
    stmt = select(ReservationHistory).options(selectinload(ReservationHistory.Item))
    if user_id:
        stmt = stmt.where(ReservationHistory.UserID == user_id)
    if item_id:
        stmt = stmt.where(ReservationHistory.ItemID == item_id)
    return list(
        db.execute(stmt.order_by(ReservationHistory.Date.desc(), ReservationHistory.HistoryID.desc())).scalars().all()
    )


def serialize_loan_history(entry: LoanHistory) -> dict[str, Any]:
    loan = entry.Loan
    return {
        "historyID": entry.HistoryID,
        "loanID": entry.LoanID,
        "itemID": loan.ItemID if loan else None,
        "itemName": loan.Item.Name if loan and loan.Item else None,
        "userID": entry.UserID or (loan.BorrowerID if loan else None),
        "userName": display_user(loan.Borrower) if loan and loan.Borrower else None,
        "performedByID": entry.PerformedByID,
        "status": entry.Status,
        "date": entry.Date,
        "comment": entry.Comment,
    }


def serialize_reservation_history(entry: ReservationHistory) -> dict[str, Any]:
    return {
        "historyID": entry.HistoryID,
        "itemID": entry.ItemID,
        "itemName": entry.Item.Name if entry.Item else None,
        "reservationID": entry.ReservationID,
        "userID": entry.UserID,
        "performedByID": entry.PerformedByID,
        "action": entry.Action,
        "date": entry.Date,
        "comment": entry.Comment,
    }
