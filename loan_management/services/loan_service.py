from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from db.transaction import unit_of_work
from models.loan_models import Item, Loan, User
from schemas.common import naive_local
from services.errors import (
    InvalidRangeError,
    InvalidRequestError,
    ItemUnavailableError,
    LoanOverlapError,
    NotFoundError,
    ReservationOverlapError,
)
from services.history_service import LOAN_HISTORY, log_audit, record
from services.reservation_service import find_conflicts
from services.status_service import (
    ACTIVE,
    OUT_OF_ORDER,
    RETURNED,
    SCHEDULED,
    effective_loan_status,
    is_loan_open,
    lock_item,
    next_reservation,
    next_scheduled_loan,
    overdue_loan_clause,
    reconcile_item,
    sync_item_status,
)

LOGGER = logging.getLogger("loan_management.loans")

LOAN_CONTEXTS = (
    "CONFERENCE_FINANCEURS",
    "APPUIS_SPECIFIQUES",
    "PLATEFORME_AGEFIPH",
    "AIDANTS",
    "RUNE",
    "PNT",
    "SAVS",
    "CICAT",
    "LOGEMENT_INCLUSIF",
)
LOAN_TRANSITIONS = {
    SCHEDULED: {ACTIVE, RETURNED},
    ACTIVE: {RETURNED},
    "OVERDUE": {RETURNED},
    RETURNED: set(),
}


@dataclass
class LoanReturn:
    loan: Loan
    item_status: str | None
    next_reservation_id: int | None = None
    next_loan_id: int | None = None


def normalize_contexts(raw_contexts: list[str] | None) -> list[str]:
    out: list[str] = []
    for raw in raw_contexts or []:
        value = str(raw or "").strip().upper()
        if value in LOAN_CONTEXTS and value not in out:
            out.append(value)
    return out


def get_loan_or_404(db: Session, loan_id: int) -> Loan:
    loan = db.get(Loan, loan_id)
    if loan is None:
        raise NotFoundError(f"Loan {loan_id} not found.", loanID=loan_id)
    return loan


def lock_loan(db: Session, loan_id: int) -> tuple[Loan, Item | None]:
    """Lock the loan's item, then re-read the loan under that lock."""
    loan = get_loan_or_404(db, loan_id)
    item = lock_item(db, loan.ItemID) if loan.ItemID else None
    loan = db.execute(
        select(Loan)
        .where(Loan.LoanID == loan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if loan is None:
        raise NotFoundError(f"Loan {loan_id} not found.", loanID=loan_id)
    return loan, item


def create_loan(
    db: Session,
    *,
    item_id: int,
    borrower_id: int,
    borrowed_at: datetime,
    due_at: datetime,
    notes: str | None = None,
    contexts: list[str] | None = None,
    performed_by_id: int | None = None,
    now: datetime | None = None,
) -> Loan:
    if borrowed_at is None or due_at is None:
        raise InvalidRequestError("borrowedAt and dueAt are required.")
    borrowed_at = naive_local(borrowed_at)
    due_at = naive_local(due_at)
    if due_at <= borrowed_at:
        raise InvalidRangeError("dueAt must be after borrowedAt.", borrowedAt=borrowed_at, dueAt=due_at)
    now = naive_local(now) or datetime.now()

    with unit_of_work(db):
        item = lock_item(db, item_id)
        reconcile_item(db, item, now, reason="loan-create", actor_id=performed_by_id)
        if item.ReservationStatus == OUT_OF_ORDER:
            raise ItemUnavailableError(
                "The item is out of order.",
                itemID=item.ItemID,
                currentStatus=item.ReservationStatus,
            )
        borrower = db.get(User, borrower_id)
        if borrower is None:
            raise NotFoundError(f"User {borrower_id} not found.", userID=borrower_id)

        open_loans = [loan for loan in item.Loans if is_loan_open(loan)]
        if open_loans:
            raise LoanOverlapError(
                "The item already has a loan in progress.",
                itemID=item.ItemID,
                currentStatus=item.ReservationStatus,
                conflictingLoanIDs=[loan.LoanID for loan in open_loans],
            )
        conflicts = find_conflicts(db, item.ItemID, borrowed_at, due_at)
        if conflicts:
            raise ReservationOverlapError(
                "The item is reserved during this period.",
                itemID=item.ItemID,
                conflictingReservationIDs=[reservation.ReservationID for reservation in conflicts],
            )

        status = SCHEDULED if borrowed_at > now else ACTIVE
        context_values = normalize_contexts(contexts)
        loan = Loan(
            BorrowerID=borrower.UserID,
            BorrowedAt=borrowed_at,
            DueAt=due_at,
            Status=status,
            Notes=notes,
            Contexts=",".join(context_values) or None,
            CreatedDate=now,
            UpdatedDate=now,
        )
        item.Loans.append(loan)
        db.flush()
        record(
            db,
            LOAN_HISTORY,
            loan.LoanID,
            performed_by_id,
            status,
            "Scheduled loan created" if status == SCHEDULED else "Loan created",
            user_id=borrower.UserID,
            when=now,
        )
        sync_item_status(db, item, now, actor_id=performed_by_id)

    LOGGER.info("Loan created loan_id=%s item_id=%s borrower_id=%s status=%s", loan.LoanID, item_id, borrower_id, status)
    return loan


def _close_loan(db: Session, loan: Loan, returned_at: datetime, performed_by_id: int | None, now: datetime) -> None:
    loan.Status = RETURNED
    loan.ReturnedAt = returned_at
    loan.UpdatedDate = now
    record(
        db,
        LOAN_HISTORY,
        loan.LoanID,
        performed_by_id,
        RETURNED,
        "Loan returned",
        user_id=loan.BorrowerID,
        when=now,
    )


def return_loan(
    db: Session,
    loan_id: int,
    *,
    performed_by_id: int | None = None,
    returned_at: datetime | None = None,
    now: datetime | None = None,
) -> LoanReturn:
    now = naive_local(now) or datetime.now()
    returned_at = naive_local(returned_at)
    with unit_of_work(db):
        loan, item = lock_loan(db, loan_id)
        if loan.Status == RETURNED or loan.ReturnedAt is not None:
            raise InvalidRequestError("The loan has already been returned.", loanID=loan_id)

        _close_loan(db, loan, returned_at or now, performed_by_id, now)
        outcome = LoanReturn(loan=loan, item_status=None)
        if item is not None:
            outcome.item_status = sync_item_status(db, item, now, actor_id=performed_by_id)
            upcoming = next_reservation(db, item.ItemID, now)
            scheduled = next_scheduled_loan(db, item.ItemID)
            outcome.next_reservation_id = upcoming.ReservationID if upcoming else None
            outcome.next_loan_id = scheduled.LoanID if scheduled else None

    LOGGER.info("Loan returned loan_id=%s item_id=%s item_status=%s", loan_id, loan.ItemID, outcome.item_status)
    return outcome


def change_loan_status(
    db: Session,
    loan_id: int,
    target_status: str,
    *,
    performed_by_id: int | None = None,
    now: datetime | None = None,
) -> Loan:
    now = now or datetime.now()
    if target_status == RETURNED:
        return return_loan(db, loan_id, performed_by_id=performed_by_id, now=now).loan

    with unit_of_work(db):
        loan, item = lock_loan(db, loan_id)
        current = loan.Status
        if target_status == current:
            return loan
        if current not in LOAN_TRANSITIONS or target_status not in LOAN_TRANSITIONS[current]:
            raise InvalidRequestError(
                f"Invalid loan status transition: {current} -> {target_status}",
                loanID=loan_id,
                currentStatus=current,
            )
        loan.Status = target_status
        if target_status == ACTIVE and loan.BorrowedAt > now:
            loan.BorrowedAt = now
        loan.UpdatedDate = now
        record(
            db,
            LOAN_HISTORY,
            loan.LoanID,
            performed_by_id,
            target_status,
            f"Status change: {current} -> {target_status}",
            user_id=loan.BorrowerID,
            when=now,
        )
        if item is not None:
            sync_item_status(db, item, now, actor_id=performed_by_id)
    return loan


def delete_loan(db: Session, loan_id: int, *, performed_by_id: int | None = None, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now()
    with unit_of_work(db):
        loan, item = lock_loan(db, loan_id)
        log_audit(
            db,
            "Loan",
            loan.LoanID,
            "LoanDeleted",
            f"itemID={loan.ItemID} borrowerID={loan.BorrowerID} status={loan.Status}",
            user_id=performed_by_id,
        )
        if item is not None:
            item.Loans.remove(loan)
        db.delete(loan)
        status = sync_item_status(db, item, now, actor_id=performed_by_id) if item is not None else None
    LOGGER.info("Loan deleted loan_id=%s item_status=%s", loan_id, status)
    return {"loanID": loan_id, "itemID": item.ItemID if item is not None else None, "itemStatus": status}


def count_overdue_loans(db: Session, now: datetime | None = None) -> int:
    now = now or datetime.now()
    return int(db.execute(select(func.count(Loan.LoanID)).where(overdue_loan_clause(now))).scalar() or 0)


def list_loans(
    db: Session,
    *,
    item_id: int | None = None,
    borrower_id: int | None = None,
    status: str | None = None,
    now: datetime | None = None,
) -> list[Loan]:
    now = now or datetime.now()
    stmt = select(Loan).options(selectinload(Loan.Item), selectinload(Loan.Borrower))
    if item_id:
        stmt = stmt.where(Loan.ItemID == item_id)
    if borrower_id:
        stmt = stmt.where(Loan.BorrowerID == borrower_id)
    loans = db.execute(stmt.order_by(Loan.BorrowedAt.desc(), Loan.LoanID.desc())).scalars().all()
    if status:
        loans = [loan for loan in loans if effective_loan_status(loan, now) == status]
    return list(loans)


def serialize_loan(loan: Loan, now: datetime | None = None) -> dict[str, Any]:
    borrower = loan.Borrower
    return {
        "loanID": loan.LoanID,
        "itemID": loan.ItemID,
        "itemName": loan.Item.Name if loan.Item else None,
        "borrowerID": loan.BorrowerID,
        "borrowerName": f"{borrower.FirstName} {borrower.LastName}" if borrower else None,
        "borrowedAt": loan.BorrowedAt,
        "dueAt": loan.DueAt,
        "returnedAt": loan.ReturnedAt,
        "status": effective_loan_status(loan, now),
        "storedStatus": loan.Status,
        "notes": loan.Notes,
        "contexts": [value for value in (loan.Contexts or "").split(",") if value],
    }
