from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from db.transaction import unit_of_work
from models.loan_models import Item, Reservation, User
from schemas.common import naive_local
from services.errors import (
    InvalidRangeError,
    InvalidRequestError,
    NotFoundError,
    PermissionDeniedError,
    ReservationOverlapError,
)
from services.history_service import RESERVATION_HISTORY, describe_window, record
from services.status_service import CONFIRMED, lock_item, sync_item_status


LOGGER = logging.getLogger("loan_management.reservations")

CANCELLED = "CANCELLED"
EXPIRED = "EXPIRED"
PENDING = "PENDING"
RESERVATION_STATES = {CONFIRMED, CANCELLED, EXPIRED, PENDING}


def intervals_conflict(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a <= end_b and start_b <= end_a


def validate_range(start: datetime | None, end: datetime | None) -> None:
    if start is None or end is None:
        raise InvalidRequestError("startDate and endDate are required.")
    if end <= start:
        raise InvalidRangeError(
            "endDate must be after startDate.",
            startDate=start,
            endDate=end,
        )


def find_conflicts(
    db: Session,
    item_id: int,
    start: datetime,
    end: datetime,
    exclude_reservation_id: int | None = None,
) -> list[Reservation]:
    stmt = (
        select(Reservation)
        .where(Reservation.ItemID == item_id)
        .where(Reservation.Status == CONFIRMED)
        .where(Reservation.StartDate <= end)
        .where(Reservation.EndDate >= start)
        .order_by(Reservation.StartDate, Reservation.ReservationID)
    )
    if exclude_reservation_id:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return list(db.execute(stmt).scalars().all())


def has_conflict(
    db: Session,
    item_id: int,
    start: datetime,
    end: datetime,
    exclude_reservation_id: int | None = None,
) -> bool:
    return bool(find_conflicts(db, item_id, start, end, exclude_reservation_id))


def _raise_overlap(item_id: int, conflicts: list[Reservation]) -> None:
    raise ReservationOverlapError(
        "The item is already reserved for this period.",
        itemID=item_id,
        conflictingReservationIDs=[reservation.ReservationID for reservation in conflicts],
    )


def _get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.", userID=user_id)
    return user


def get_reservation_or_404(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError(f"Reservation {reservation_id} not found.", reservationID=reservation_id)
    return reservation


def lock_reservation(db: Session, reservation_id: int) -> tuple[Reservation, Item]:
    """Lock the reservation's item, then re-read the reservation under that lock."""
    reservation = get_reservation_or_404(db, reservation_id)
    item = lock_item(db, reservation.ItemID)
    reservation = db.execute(
        select(Reservation)
        .where(Reservation.ReservationID == reservation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if reservation is None:
        raise NotFoundError(f"Reservation {reservation_id} not found.", reservationID=reservation_id)
    return reservation, item


def create_reservation(
    db: Session,
    *,
    item_id: int,
    user_id: int,
    start: datetime,
    end: datetime,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Reservation:
    start = naive_local(start)
    end = naive_local(end)
    validate_range(start, end)
    now = naive_local(now) or datetime.now()
    with unit_of_work(db):
        item = lock_item(db, item_id)
        user = _get_user_or_404(db, user_id)
        conflicts = find_conflicts(db, item.ItemID, start, end)
        if conflicts:
            _raise_overlap(item.ItemID, conflicts)

        reservation = Reservation(
            ItemID=item.ItemID,
            UserID=user.UserID,
            StartDate=start,
            EndDate=end,
            Status=CONFIRMED,
            CreatedDate=now,
        )
        db.add(reservation)
        db.flush()
        record(
            db,
            RESERVATION_HISTORY,
            item.ItemID,
            actor_id,
            "RESERVE",
            describe_window(item.Name, start, end, user),
            user_id=user.UserID,
            reservation_id=reservation.ReservationID,
            when=now,
        )
    LOGGER.info(
        "Reservation created reservation_id=%s item_id=%s user_id=%s",
        reservation.ReservationID,
        item_id,
        user_id,
    )
    return reservation


def modify_reservation(
    db: Session,
    reservation_id: int,
    *,
    modified_by_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    status: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    now = naive_local(now) or datetime.now()
    start = naive_local(start)
    end = naive_local(end)
    if status is not None and status not in RESERVATION_STATES:
        raise InvalidRequestError(f"Unknown reservation status: {status}", status=status)

    with unit_of_work(db):
        reservation, item = lock_reservation(db, reservation_id)
        modifier = _get_user_or_404(db, modified_by_id)
        if not modifier.IsAdmin and modifier.UserID != reservation.UserID:
            LOGGER.warning(
                "Reservation modify refused reservation_id=%s modifier_id=%s",
                reservation_id,
                modified_by_id,
            )
            raise PermissionDeniedError(
                "Only an administrator or the reservation owner can modify it.",
                reservationID=reservation_id,
            )

        new_start = start or reservation.StartDate
        new_end = end or reservation.EndDate
        validate_range(new_start, new_end)
        new_status = status or reservation.Status
        if new_status == CONFIRMED:
            conflicts = find_conflicts(db, item.ItemID, new_start, new_end, exclude_reservation_id=reservation.ReservationID)
            if conflicts:
                LOGGER.warning(
                    "Reservation modify overlaps reservation_id=%s conflicts=%s",
                    reservation_id,
                    [row.ReservationID for row in conflicts],
                )
                _raise_overlap(item.ItemID, conflicts)

        reservation.StartDate = new_start
        reservation.EndDate = new_end
        reservation.Status = new_status
        record(
            db,
            RESERVATION_HISTORY,
            item.ItemID,
            modifier.UserID,
            "MODIFY",
            describe_window(item.Name, new_start, new_end, reservation.User, prefix="Modified reservation"),
            user_id=reservation.UserID,
            reservation_id=reservation.ReservationID,
            when=now,
        )
        sync_item_status(db, item, now, actor_id=modifier.UserID)
    return reservation


def cancel_reservation(
    db: Session,
    reservation_id: int,
    *,
    cancelled_by_id: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now()
    with unit_of_work(db):
        reservation, item = lock_reservation(db, reservation_id)
        record(
            db,
            RESERVATION_HISTORY,
            item.ItemID,
            cancelled_by_id,
            "CANCEL",
            describe_window(item.Name, reservation.StartDate, reservation.EndDate, reservation.User, prefix="Cancelled reservation"),
            user_id=reservation.UserID,
            reservation_id=reservation.ReservationID,
            when=now,
        )
        db.delete(reservation)
        status = sync_item_status(db, item, now, actor_id=cancelled_by_id)
    LOGGER.info("Reservation cancelled reservation_id=%s item_id=%s", reservation_id, item.ItemID)
    return {"reservationID": reservation_id, "itemID": item.ItemID, "itemStatus": status}


def list_reservations(
    db: Session,
    *,
    item_id: int | None = None,
    user_id: int | None = None,
    status: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Reservation]:
    stmt = select(Reservation).options(selectinload(Reservation.Item), selectinload(Reservation.User))
    if item_id:
        stmt = stmt.where(Reservation.ItemID == item_id)
    if user_id:
        stmt = stmt.where(Reservation.UserID == user_id)
    if status:
        stmt = stmt.where(Reservation.Status == status)
    if start is not None:
        stmt = stmt.where(Reservation.EndDate >= start)
    if end is not None:
        stmt = stmt.where(Reservation.StartDate <= end)
    return list(db.execute(stmt.order_by(Reservation.StartDate, Reservation.ReservationID)).scalars().all())


def serialize_reservation(reservation: Reservation) -> dict[str, Any]:
    user = reservation.User
    return {
        "reservationID": reservation.ReservationID,
        "itemID": reservation.ItemID,
        "itemName": reservation.Item.Name if reservation.Item else None,
        "userID": reservation.UserID,
        "userName": f"{user.FirstName} {user.LastName}" if user else None,
        "startDate": reservation.StartDate,
        "endDate": reservation.EndDate,
        "status": reservation.Status,
        "createdDate": reservation.CreatedDate,
    }
