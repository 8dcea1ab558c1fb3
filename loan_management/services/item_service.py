from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, selectinload

from db.transaction import unit_of_work
from models.loan_models import Item, Loan, User
from schemas.items import (
    ChangeCustomId,
    ChangeServiceCategory,
    ItemCreate,
    ItemUpdateRequest,
    RenameItem,
    SetReservationStatus,
    UpdateItemDetails,
)
from services.errors import InvalidRequestError, ItemBorrowedError, NotFoundError
from services.history_service import RESERVATION_HISTORY, display_user, record
from services.status_service import (
    AVAILABLE,
    RESERVED,
    RETURNED,
    can_modify_status,
    get_item_status,
    lock_item,
    reconcile_item,
    sync_item_status,
)


LOGGER = logging.getLogger("loan_management.items")


def _map_item_field(field_name: str) -> str | None:
    mapping = {
        "name": "Name",
        "customId": "CustomID",
        "category": "Category",
        "serviceCategory": "ServiceCategory",
        "reservationStatus": "ReservationStatus",
        "description": "Description",
        "author": "Author",
        "publisher": "Publisher",
        "yearPublished": "YearPublished",
        "isbn": "ISBN",
        "brand": "Brand",
        "model": "Model",
        "serialNumber": "SerialNumber",
        "coverImageUrl": "CoverImageUrl",
    }
    return mapping.get(field_name)


def _ensure_custom_id_free(db: Session, custom_id: str | None, item_id: int | None = None) -> None:
    if not custom_id:
        return
    stmt = select(Item.ItemID).where(Item.CustomID == custom_id)
    if item_id:
        stmt = stmt.where(Item.ItemID != item_id)
    if db.execute(stmt).first() is not None:
        raise InvalidRequestError(f"An item with customId {custom_id} already exists.", customId=custom_id)


def create_item(db: Session, payload: ItemCreate, *, actor_id: int | None = None, now: datetime | None = None) -> Item:
    now = now or datetime.now()
    with unit_of_work(db):
        custom_id = (payload.customId or "").strip() or None
        _ensure_custom_id_free(db, custom_id)
        item = Item(CreatedDate=now, UpdatedDate=now)
        for key, value in payload.model_dump().items():
            column = _map_item_field(key)
            if column:
                setattr(item, column, value)
        item.CustomID = custom_id
        item.Available = item.ReservationStatus == AVAILABLE
        db.add(item)
        db.flush()
    LOGGER.info("Item created item_id=%s custom_id=%s actor_id=%s", item.ItemID, custom_id, actor_id)
    return item


def get_item(db: Session, item_id: int, *, now: datetime | None = None) -> Item:
    """Load an item and repair its stored status if it drifted."""
    with unit_of_work(db):
        item = db.get(Item, item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found.", itemID=item_id)
        reconcile_item(db, item, now, reason="read")
    return item


def list_items(
    db: Session,
    *,
    category: str | None = None,
    status: str | None = None,
    search: str | None = None,
) -> list[Item]:
    stmt = select(Item).options(selectinload(Item.Loans), selectinload(Item.ReservedBy))
    if category:
        stmt = stmt.where(Item.Category == category.strip().upper())
    needle = (search or "").strip()
    if needle:
        pattern = f"%{needle}%"
        stmt = stmt.where(or_(Item.Name.ilike(pattern), Item.CustomID.ilike(pattern)))
    items = db.execute(stmt.order_by(Item.Name, Item.ItemID)).scalars().all()
    if status:
        # BORROWED comes from open loans, not from the stored column.
        items = [item for item in items if get_item_status(item) == status]
    return list(items)


def _set_reservation_status(db: Session, item: Item, change: SetReservationStatus, actor_id: int | None, now: datetime) -> None:
    if not can_modify_status(item):
        raise ItemBorrowedError(
            "The item has a loan in progress; its status cannot be changed.",
            itemID=item.ItemID,
            currentStatus=get_item_status(item),
            requestedStatus=change.target,
        )
    acting_user_id = change.actingUserID or actor_id

    if change.target == RESERVED:
        if not change.reservedByID:
            raise InvalidRequestError("reservedByID is required to reserve an item.", itemID=item.ItemID)
        user = db.get(User, change.reservedByID)
        if user is None:
            raise NotFoundError(f"User {change.reservedByID} not found.", userID=change.reservedByID)
        item.ReservedBy = user
        item.ReservedAt = now
        record(
            db,
            RESERVATION_HISTORY,
            item.ItemID,
            acting_user_id,
            "RESERVE",
            f"'{item.Name}' reserved for {display_user(user)}",
            user_id=user.UserID,
            when=now,
        )
    elif item.ReservedByID:
        previous = db.get(User, item.ReservedByID)
        record(
            db,
            RESERVATION_HISTORY,
            item.ItemID,
            acting_user_id,
            "CANCEL",
            f"Reservation of '{item.Name}' for {display_user(previous)} cancelled",
            user_id=item.ReservedByID,
            when=now,
        )
        item.ReservedBy = None
        item.ReservedAt = None

    item.ReservationStatus = change.target
    item.Available = change.target == AVAILABLE


def apply_item_update(
    db: Session,
    item_id: int,
    request: ItemUpdateRequest,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Item:
    now = now or datetime.now()
    with unit_of_work(db):
        item = lock_item(db, item_id)
        reconcile_item(db, item, now, reason="item-update", actor_id=actor_id)
        for change in request.changes:
            if isinstance(change, RenameItem):
                item.Name = change.name.strip()
            elif isinstance(change, ChangeCustomId):
                custom_id = change.customId.strip()
                _ensure_custom_id_free(db, custom_id, item.ItemID)
                item.CustomID = custom_id
            elif isinstance(change, ChangeServiceCategory):
                item.ServiceCategory = change.serviceCategory
            elif isinstance(change, UpdateItemDetails):
                for key, value in change.model_dump(exclude_unset=True, exclude={"kind"}).items():
                    column = _map_item_field(key)
                    if column:
                        setattr(item, column, value)
            elif isinstance(change, SetReservationStatus):
                _set_reservation_status(db, item, change, actor_id, now)
            else:
                raise InvalidRequestError(f"Unsupported item change: {type(change).__name__}")
        item.UpdatedDate = now
        sync_item_status(db, item, now, actor_id=actor_id)
    return item


def delete_item(db: Session, item_id: int, *, actor_id: int | None = None) -> dict[str, Any]:
    with unit_of_work(db):
        item = lock_item(db, item_id)
        blocking = db.execute(
            select(Loan.LoanID).where(Loan.ItemID == item.ItemID).where(Loan.Status != RETURNED)
        ).scalars().all()
        if blocking:
            raise ItemBorrowedError(
                "The item has a loan in progress and cannot be deleted.",
                itemID=item.ItemID,
                currentStatus=get_item_status(item),
                blockingLoanIDs=list(blocking),
            )
        detached = db.execute(
            update(Loan)
            .where(Loan.ItemID == item.ItemID)
            .values(ItemID=None)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        db.expire(item, ["Loans"])
        db.delete(item)
    LOGGER.info("Item deleted item_id=%s detached_loans=%s actor_id=%s", item_id, detached, actor_id)
    return {"itemID": item_id, "detachedLoans": int(detached or 0)}


def serialize_item(item: Item) -> dict[str, Any]:
    reserved_by = item.ReservedBy
    return {
        "itemID": item.ItemID,
        "name": item.Name,
        "customId": item.CustomID,
        "category": item.Category,
        "serviceCategory": item.ServiceCategory,
        "status": get_item_status(item),
        "reservationStatus": item.ReservationStatus,
        "available": bool(item.Available),
        "canModifyStatus": can_modify_status(item),
        "reservedByID": item.ReservedByID,
        "reservedByName": display_user(reserved_by) if reserved_by else None,
        "reservedAt": item.ReservedAt,
        "description": item.Description,
        "author": item.Author,
        "publisher": item.Publisher,
        "yearPublished": item.YearPublished,
        "isbn": item.ISBN,
        "brand": item.Brand,
        "model": item.Model,
        "serialNumber": item.SerialNumber,
        "coverImageUrl": item.CoverImageUrl,
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }
