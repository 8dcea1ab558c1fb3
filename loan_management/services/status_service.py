from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from db.transaction import unit_of_work
from models.loan_models import Item, Loan, Reservation
from services.errors import NotFoundError
from services.history_service import LOAN_HISTORY, log_audit, record


LOGGER = logging.getLogger("loan_management.status")

AVAILABLE = "AVAILABLE"
RESERVED = "RESERVED"
BORROWED = "BORROWED"
OUT_OF_ORDER = "OUT_OF_ORDER"
PENDING = "PENDING"
ITEM_STATES = {AVAILABLE, RESERVED, BORROWED, OUT_OF_ORDER, PENDING}
# Stored states that only make sense while something holds the item.
DERIVED_ITEM_STATES = {BORROWED, PENDING}

SCHEDULED = "SCHEDULED"
ACTIVE = "ACTIVE"
OVERDUE = "OVERDUE"
RETURNED = "RETURNED"
OPEN_LOAN_STATES = {SCHEDULED, ACTIVE, OVERDUE}
LOAN_STATES = OPEN_LOAN_STATES | {RETURNED}

CONFIRMED = "CONFIRMED"


@dataclass
class ItemRepair:
    item_id: int
    item_name: str | None
    old_status: str | None
    new_status: str
    reason: str
    detected_at: datetime
    closed_loan_ids: list[int] = field(default_factory=list)
    repaired_loan_ids: list[int] = field(default_factory=list)

    def describe(self) -> str:
        parts = [f"{self.old_status} -> {self.new_status}", f"reason={self.reason}"]
        if self.closed_loan_ids:
            parts.append(f"closedLoans={','.join(str(loan_id) for loan_id in self.closed_loan_ids)}")
        if self.repaired_loan_ids:
            parts.append(f"repairedLoans={','.join(str(loan_id) for loan_id in self.repaired_loan_ids)}")
        return " ".join(parts)

    def as_dict(self) -> dict[str, Any]:
        return {
            "itemID": self.item_id,
            "itemName": self.item_name,
            "oldStatus": self.old_status,
            "newStatus": self.new_status,
            "reason": self.reason,
            "detectedAt": self.detected_at,
            "closedLoanIDs": list(self.closed_loan_ids),
            "repairedLoanIDs": list(self.repaired_loan_ids),
        }


RepairHook = Callable[[ItemRepair], None]
_REPAIR_HOOKS: list[RepairHook] = []


def register_repair_hook(hook: RepairHook) -> None:
    if hook not in _REPAIR_HOOKS:
        _REPAIR_HOOKS.append(hook)


def unregister_repair_hook(hook: RepairHook) -> None:
    if hook in _REPAIR_HOOKS:
        _REPAIR_HOOKS.remove(hook)


def is_loan_open(loan: Loan) -> bool:
    return loan.ReturnedAt is None and loan.Status in OPEN_LOAN_STATES


def is_loan_overdue(loan: Loan, now: datetime | None = None) -> bool:
    now = now or datetime.now()
    return is_loan_open(loan) and loan.DueAt is not None and loan.DueAt < now


def effective_loan_status(loan: Loan, now: datetime | None = None) -> str:
    """Status as displayed at `now`; OVERDUE is never read from storage."""
    now = now or datetime.now()
    if not is_loan_open(loan):
        return RETURNED
    if is_loan_overdue(loan, now):
        return OVERDUE
    if loan.BorrowedAt is not None and loan.BorrowedAt > now:
        return SCHEDULED
    return ACTIVE


def open_loan_clause():
    return and_(Loan.ReturnedAt.is_(None), Loan.Status.in_(OPEN_LOAN_STATES))


def overdue_loan_clause(now: datetime):
    return and_(open_loan_clause(), Loan.DueAt < now)


def is_item_borrowed(item: Item) -> bool:
    return any(is_loan_open(loan) for loan in (item.Loans or []))


def get_item_status(item: Item) -> str:
    if is_item_borrowed(item):
        return BORROWED
    return item.ReservationStatus


def can_modify_status(item: Item) -> bool:
    return not is_item_borrowed(item)


def select_item_for_update(db: Session, item_id: int) -> Item | None:
    return db.execute(
        select(Item)
        .where(Item.ItemID == item_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()


def lock_item(db: Session, item_id: int) -> Item:
    item = select_item_for_update(db, item_id)
    if item is None:
        raise NotFoundError(f"Item {item_id} not found.", itemID=item_id)
    return item


def next_reservation(
    db: Session,
    item_id: int,
    now: datetime,
    exclude_reservation_id: int | None = None,
) -> Reservation | None:
    stmt = (
        select(Reservation)
        .where(Reservation.ItemID == item_id)
        .where(Reservation.Status == CONFIRMED)
        .where(Reservation.EndDate >= now)
        .order_by(Reservation.StartDate, Reservation.ReservationID)
    )
    if exclude_reservation_id:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return db.execute(stmt).scalars().first()


def next_scheduled_loan(db: Session, item_id: int, exclude_loan_id: int | None = None) -> Loan | None:
    stmt = (
        select(Loan)
        .where(Loan.ItemID == item_id)
        .where(Loan.Status == SCHEDULED)
        .where(Loan.ReturnedAt.is_(None))
        .order_by(Loan.BorrowedAt, Loan.LoanID)
    )
    if exclude_loan_id:
        stmt = stmt.where(Loan.LoanID != exclude_loan_id)
    return db.execute(stmt).scalars().first()


def resolve_released_status(db: Session, item: Item, now: datetime) -> str:
    if next_reservation(db, item.ItemID, now) is not None:
        return PENDING
    if next_scheduled_loan(db, item.ItemID) is not None:
        return BORROWED
    return AVAILABLE


def derive_item_status(db: Session, item: Item, now: datetime | None = None) -> str:
    now = now or datetime.now()
    if is_item_borrowed(item):
        return BORROWED
    stored = item.ReservationStatus
    if stored in DERIVED_ITEM_STATES or stored not in ITEM_STATES:
        return resolve_released_status(db, item, now)
    return stored


def _open_loans_latest_first(item: Item) -> list[Loan]:
    open_loans = [loan for loan in (item.Loans or []) if is_loan_open(loan)]
    open_loans.sort(key=lambda loan: (loan.BorrowedAt or datetime.min, loan.LoanID or 0), reverse=True)
    return open_loans


def _loans_with_broken_return_marker(item: Item) -> list[Loan]:
    broken = []
    for loan in item.Loans or []:
        if loan.Status == RETURNED and loan.ReturnedAt is None:
            broken.append(loan)
        elif loan.ReturnedAt is not None and loan.Status != RETURNED:
            broken.append(loan)
    return broken


def _repair_return_markers(db: Session, item: Item, now: datetime, actor_id: int | None = None) -> list[int]:
    repaired: list[int] = []
    for loan in _loans_with_broken_return_marker(item):
        if loan.ReturnedAt is None:
            loan.ReturnedAt = loan.UpdatedDate or now
        else:
            loan.Status = RETURNED
        loan.UpdatedDate = now
        record(
            db,
            LOAN_HISTORY,
            loan.LoanID,
            actor_id,
            RETURNED,
            "Return marker repaired during reconciliation",
            user_id=loan.BorrowerID,
            when=now,
        )
        repaired.append(loan.LoanID)
    return repaired


def close_duplicate_open_loans(db: Session, item: Item, now: datetime, actor_id: int | None = None) -> list[int]:
    """Keep the most recent open loan and return the others."""
    closed: list[int] = []
    for loan in _open_loans_latest_first(item)[1:]:
        loan.Status = RETURNED
        loan.ReturnedAt = now
        loan.UpdatedDate = now
        record(
            db,
            LOAN_HISTORY,
            loan.LoanID,
            actor_id,
            RETURNED,
            "Closed as duplicate open loan during reconciliation",
            user_id=loan.BorrowerID,
            when=now,
        )
        closed.append(loan.LoanID)
    return closed


def _status_disagrees(item: Item, target: str) -> bool:
    if item.ReservationStatus != target:
        return True
    return item.Available is None or bool(item.Available) != (target == AVAILABLE)


def _apply_status(item: Item, status: str, now: datetime) -> None:
    item.ReservationStatus = status
    item.Available = status == AVAILABLE
    if status == AVAILABLE:
        item.ReservedBy = None
        item.ReservedAt = None
    item.UpdatedDate = now


def _reconcile(db: Session, item: Item, now: datetime, reason: str, actor_id: int | None) -> ItemRepair | None:
    db.flush()
    db.expire(item, ["Loans"])

    repaired_loans = _repair_return_markers(db, item, now, actor_id)
    closed_loans = close_duplicate_open_loans(db, item, now, actor_id)
    old_status = item.ReservationStatus
    target = derive_item_status(db, item, now)
    status_changed = _status_disagrees(item, target)
    if not status_changed and not closed_loans and not repaired_loans:
        return None

    if status_changed:
        _apply_status(item, target, now)
    db.flush()
    return ItemRepair(
        item_id=item.ItemID,
        item_name=item.Name,
        old_status=old_status,
        new_status=target,
        reason=reason,
        detected_at=now,
        closed_loan_ids=closed_loans,
        repaired_loan_ids=repaired_loans,
    )


def _report_repair(db: Session, repair: ItemRepair, actor_id: int | None) -> None:
    LOGGER.warning(
        "Item status repaired item_id=%s %s -> %s reason=%s closed_loans=%s repaired_loans=%s",
        repair.item_id,
        repair.old_status,
        repair.new_status,
        repair.reason,
        repair.closed_loan_ids,
        repair.repaired_loan_ids,
    )
    log_audit(db, "Item", repair.item_id, "StatusRepair", repair.describe(), user_id=actor_id)
    for hook in list(_REPAIR_HOOKS):
        hook(repair)


def reconcile_item(
    db: Session,
    item: Item,
    now: datetime | None = None,
    *,
    reason: str = "reconcile",
    actor_id: int | None = None,
) -> ItemRepair | None:
    """Bring the stored item status back in line with its loans and reservations.

    Any disagreement found here is an invariant violation, so it is reported
    through the logger, the audit log and the registered repair hooks. A second
    call in a row returns None and writes nothing.
    """
    now = now or datetime.now()
    repair = _reconcile(db, item, now, reason, actor_id)
    if repair is not None:
        _report_repair(db, repair, actor_id)
    return repair


def sync_item_status(db: Session, item: Item, now: datetime | None = None, *, actor_id: int | None = None) -> str:
    """Reconcile after an intended transition and return the resulting status."""
    now = now or datetime.now()
    repair = _reconcile(db, item, now, "sync", actor_id)
    if repair is not None and (repair.closed_loan_ids or repair.repaired_loan_ids):
        _report_repair(db, repair, actor_id)
    return item.ReservationStatus


def inspect_item(db: Session, item: Item, now: datetime | None = None) -> ItemRepair | None:
    """Dry-run counterpart of reconcile_item; nothing is written."""
    now = now or datetime.now()
    duplicates = [loan.LoanID for loan in _open_loans_latest_first(item)[1:]]
    broken = [loan.LoanID for loan in _loans_with_broken_return_marker(item)]
    target = derive_item_status(db, item, now)
    if not _status_disagrees(item, target) and not duplicates and not broken:
        return None
    return ItemRepair(
        item_id=item.ItemID,
        item_name=item.Name,
        old_status=item.ReservationStatus,
        new_status=target,
        reason="check",
        detected_at=now,
        closed_loan_ids=duplicates,
        repaired_loan_ids=broken,
    )


def reconcile_all_items(
    db: Session,
    now: datetime | None = None,
    *,
    fix: bool = True,
    actor_id: int | None = None,
) -> dict[str, Any]:
    now = now or datetime.now()
    item_ids = db.execute(select(Item.ItemID).order_by(Item.ItemID)).scalars().all()
    repairs: list[ItemRepair] = []
    for item_id in item_ids:
        if fix:
            with unit_of_work(db):
                item = select_item_for_update(db, item_id)
                repair = reconcile_item(db, item, now, reason="maintenance", actor_id=actor_id) if item else None
        else:
            item = db.get(Item, item_id)
            repair = inspect_item(db, item, now) if item else None
        if repair is not None:
            repairs.append(repair)

    LOGGER.info("Reconciliation pass checked=%s repairs=%s fix=%s", len(item_ids), len(repairs), fix)
    return {
        "checked": len(item_ids),
        "repaired": len(repairs) if fix else 0,
        "closedLoans": sum(len(repair.closed_loan_ids) for repair in repairs),
        "fix": fix,
        "repairs": [repair.as_dict() for repair in repairs],
    }
