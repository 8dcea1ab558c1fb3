from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from db.transaction import unit_of_work
from models.loan_models import Item, Loan, Reservation, User
from schemas.users import UserCreate, UserUpdate
from services.admin_auth_service import issue_password_token, set_user_password
from services.errors import InvalidRequestError, NotFoundError
from services.history_service import USER_HISTORY, record
from services.status_service import select_item_for_update, sync_item_status


LOGGER = logging.getLogger("loan_management.users")


def format_first_name(raw: str | None) -> str:
    value = (raw or "").strip()
    return value[:1].upper() + value[1:].lower()


def format_last_name(raw: str | None) -> str:
    return (raw or "").strip().upper()


def _ensure_email_free(db: Session, email: str, user_id: int | None = None) -> str:
    normalized = (email or "").strip().lower()
    stmt = select(User.UserID).where(func.lower(User.Email) == normalized)
    if user_id:
        stmt = stmt.where(User.UserID != user_id)
    if db.execute(stmt).first() is not None:
        raise InvalidRequestError(f"A user with email {normalized} already exists.", email=normalized)
    return normalized


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.", userID=user_id)
    return user


def list_users(db: Session, *, search: str | None = None, is_admin: bool | None = None) -> list[User]:
    stmt = select(User)
    needle = (search or "").strip()
    if needle:
        pattern = f"%{needle}%"
        stmt = stmt.where(
            or_(User.FirstName.ilike(pattern), User.LastName.ilike(pattern), User.Email.ilike(pattern))
        )
    if is_admin is not None:
        stmt = stmt.where(User.IsAdmin == is_admin)
    return list(db.execute(stmt.order_by(User.LastName, User.FirstName, User.UserID)).scalars().all())


def create_user(
    db: Session,
    payload: UserCreate,
    *,
    performer_id: int | None = None,
    password: str | None = None,
    now: datetime | None = None,
) -> tuple[User, str | None]:
    """Create a user; admins also get an activation token queued for delivery.

    When `password` is given it is set in the same transaction and no
    activation token is issued.
    """
    now = now or datetime.now()
    activation_token = None
    with unit_of_work(db):
        email = _ensure_email_free(db, payload.email)
        user = User(
            FirstName=format_first_name(payload.firstName),
            LastName=format_last_name(payload.lastName),
            Email=email,
            Phone=payload.phone,
            Address=payload.address,
            DepartmentCode=payload.departmentCode,
            DepartmentName=payload.departmentName,
            IsAdmin=payload.isAdmin,
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(user)
        db.flush()
        record(
            db,
            USER_HISTORY,
            user.UserID,
            performer_id,
            "CREATE",
            f"User {user.FirstName} {user.LastName} created",
            when=now,
        )
        if password is not None:
            set_user_password(user, password)
        elif user.IsAdmin:
            activation_token = issue_password_token(db, user, purpose="AccountActivation", now=now)
    LOGGER.info("User created user_id=%s admin=%s performer_id=%s", user.UserID, user.IsAdmin, performer_id)
    return user, activation_token


def update_user(
    db: Session,
    user_id: int,
    payload: UserUpdate,
    *,
    performer_id: int | None = None,
    now: datetime | None = None,
) -> User:
    now = now or datetime.now()
    changes = payload.model_dump(exclude_unset=True)
    with unit_of_work(db):
        user = get_user_or_404(db, user_id)
        changed: list[str] = []
        if "firstName" in changes and changes["firstName"] is not None:
            user.FirstName = format_first_name(changes["firstName"])
            changed.append("firstName")
        if "lastName" in changes and changes["lastName"] is not None:
            user.LastName = format_last_name(changes["lastName"])
            changed.append("lastName")
        if "email" in changes and changes["email"] is not None:
            user.Email = _ensure_email_free(db, changes["email"], user.UserID)
            changed.append("email")
        for key, column in (
            ("phone", "Phone"),
            ("address", "Address"),
            ("departmentCode", "DepartmentCode"),
            ("departmentName", "DepartmentName"),
        ):
            if key in changes:
                setattr(user, column, changes[key])
                changed.append(key)
        if "isAdmin" in changes and changes["isAdmin"] is not None:
            user.IsAdmin = bool(changes["isAdmin"])
            changed.append("isAdmin")
        if changed:
            user.UpdatedDate = now
            record(db, USER_HISTORY, user.UserID, performer_id, "UPDATE", f"Updated: {', '.join(changed)}", when=now)
    return user


def delete_user(
    db: Session,
    user_id: int,
    *,
    performer_id: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now()
    with unit_of_work(db):
        user = get_user_or_404(db, user_id)
        affected_item_ids = set(
            db.execute(select(Loan.ItemID).where(Loan.BorrowerID == user.UserID).where(Loan.ItemID.is_not(None))).scalars().all()
        )
        affected_item_ids.update(
            db.execute(select(Reservation.ItemID).where(Reservation.UserID == user.UserID)).scalars().all()
        )
        affected_item_ids.update(
            db.execute(select(Item.ItemID).where(Item.ReservedByID == user.UserID)).scalars().all()
        )
        record(
            db,
            USER_HISTORY,
            user.UserID,
            performer_id,
            "DELETE",
            f"User {user.FirstName} {user.LastName} ({user.Email}) deleted",
            when=now,
        )
        for item in list(user.ReservedItems):
            item.ReservedBy = None
            item.ReservedAt = None
        db.delete(user)
        db.flush()
        for item_id in sorted(affected_item_ids):
            item = select_item_for_update(db, item_id)
            if item is not None:
                sync_item_status(db, item, now, actor_id=performer_id)
    LOGGER.info("User deleted user_id=%s affected_items=%s", user_id, sorted(affected_item_ids))
    return {"userID": user_id, "affectedItemIDs": sorted(affected_item_ids)}


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "userID": user.UserID,
        "firstName": user.FirstName,
        "lastName": user.LastName,
        "email": user.Email,
        "phone": user.Phone,
        "address": user.Address,
        "departmentCode": user.DepartmentCode,
        "departmentName": user.DepartmentName,
        "isAdmin": bool(user.IsAdmin),
        "hasPassword": bool(user.PasswordHash),
        "createdDate": user.CreatedDate,
    }
