from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from db.transaction import unit_of_work
from models.loan_models import Reservation
from services.history_service import RESERVATION_HISTORY, describe_window, record
from services.status_service import CONFIRMED, sync_item_status


LOGGER = logging.getLogger("loan_management.expiry")


def find_expired_reservation_ids(db: Session, now: datetime) -> list[int]:
    return list(
        db.execute(
            select(Reservation.ReservationID)
            .where(Reservation.Status == CONFIRMED)
            .where(Reservation.EndDate < now)
            .order_by(Reservation.EndDate, Reservation.ReservationID)
        ).scalars().all()
    )


def _expire_one(db: Session, reservation_id: int, now: datetime) -> bool:
    with unit_of_work(db):
        reservation = db.execute(
            select(Reservation)
            .where(Reservation.ReservationID == reservation_id)
            .where(Reservation.Status == CONFIRMED)
            .where(Reservation.EndDate < now)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()
        if reservation is None:
            return False

        item = reservation.Item
        comment = describe_window(
            item.Name if item else None,
            reservation.StartDate,
            reservation.EndDate,
            reservation.User,
            prefix="Expired reservation",
        )
        item_id = reservation.ItemID
        user_id = reservation.UserID
        deleted = db.execute(
            delete(Reservation)
            .where(Reservation.ReservationID == reservation_id)
            .where(Reservation.Status == CONFIRMED)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        if deleted != 1:
            # Another sweep got here first.
            return False

        record(
            db,
            RESERVATION_HISTORY,
            item_id,
            None,
            "EXPIRED",
            comment,
            user_id=user_id,
            reservation_id=reservation_id,
            when=now,
        )
        if item is not None:
            db.expire(item, ["Reservations"])
            sync_item_status(db, item, now)
    return True


def sweep_expired(db: Session, now: datetime | None = None) -> int:
    """Delete every CONFIRMED reservation that ended before `now`.

    Each reservation is handled in its own transaction and re-checked under
    lock, so overlapping sweeps never process the same row twice.
    """
    now = now or datetime.now()
    processed = 0
    for reservation_id in find_expired_reservation_ids(db, now):
        if _expire_one(db, reservation_id, now):
            processed += 1
    LOGGER.info("Expiry sweep finished processed=%s now=%s", processed, now.isoformat())
    return processed
