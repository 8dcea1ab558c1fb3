import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from db.base import Base
from db.deps import get_db
from db.session import engine_loans
from schemas.auth import AdminLoginRequest, ForgotPasswordRequest, SetPasswordRequest
from schemas.items import ItemCreate, ItemUpdateRequest
from schemas.loans import LoanCreate, LoanReturnRequest, LoanStatusUpdate
from schemas.reservations import ReservationCreate, ReservationUpdate
from schemas.users import UserCreate, UserUpdate
from services.admin_auth_service import (
    authenticate_admin,
    create_session,
    get_session,
    remove_session,
    request_password_reset,
    require_session_secret,
    session_payload_for,
    set_password_with_token,
)
from services.errors import LoanManagementError
from services.expiry_service import sweep_expired
from services.history_service import (
    list_loan_history,
    list_reservation_history,
    log_audit,
    serialize_loan_history,
    serialize_reservation_history,
)
from services.item_service import apply_item_update, create_item, delete_item, get_item, list_items, serialize_item
from services.loan_service import (
    change_loan_status,
    count_overdue_loans,
    create_loan,
    delete_loan,
    list_loans,
    return_loan,
    serialize_loan,
)
from services.reservation_service import (
    cancel_reservation,
    create_reservation,
    list_reservations,
    modify_reservation,
    serialize_reservation,
)
from services.status_service import reconcile_all_items
from services.user_service import create_user, delete_user, list_users, serialize_user, update_user

app = FastAPI()

LOGGER = logging.getLogger("loan_management.api")
AUTH_LOGGER = logging.getLogger("loan_management.auth")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=require_session_secret().decode("utf-8"),
    session_cookie="loan_management_session",
    same_site="lax",
    https_only=False,
)


@app.on_event("startup")
def create_tables() -> None:
    Base.metadata.create_all(bind=engine_loans)


@app.exception_handler(LoanManagementError)
def handle_loan_management_error(request: Request, exc: LoanManagementError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_error(exc))


@app.exception_handler(SQLAlchemyError)
def handle_storage_error(request: Request, exc: SQLAlchemyError):
    LOGGER.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Unexpected storage failure.", "kind": "unexpected"})


def jsonable_error(exc: LoanManagementError) -> dict:
    payload = exc.as_dict()
    payload["context"] = {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in payload["context"].items()
    }
    return payload


def _audit_auth_event(db: Session, *, action: str, details: str, user_id: int | None = None) -> None:
    try:
        log_audit(db, "Auth", int(user_id or 0), action, details, user_id=user_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        AUTH_LOGGER.exception("Could not record auth event action=%s", action)


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict):
        return dict(session_from_cookie)
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    return None


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_admin_session_or_403(request: Request, session_token: str | None) -> dict:
    session = _require_session_or_401(request, session_token)
    if str(session.get("role") or "").strip() != "Admin":
        raise HTTPException(status_code=403, detail="Admin role required.")
    return session


def _session_user_id(session: dict) -> int | None:
    try:
        value = int(session.get("userID") or 0)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = AdminLoginRequest.model_validate(payload)
    except ValidationError:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=invalid_payload")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    email = str(parsed.email or "").strip().lower()
    if not email or not parsed.password:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=missing_identity")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    user = authenticate_admin(db, email, parsed.password)
    if user is None:
        _audit_auth_event(db, action="LoginFailed", details=f"ip={client_ip} email={email}")
        AUTH_LOGGER.warning("Login failed ip=%s email=%s", client_ip, email)
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    session_payload = session_payload_for(user)
    token = create_session(session_payload)
    request.session["user"] = dict(session_payload)
    _audit_auth_event(db, action="LoginSuccess", details=f"ip={client_ip} email={email}", user_id=user.UserID)
    AUTH_LOGGER.info("Login success ip=%s user_id=%s", client_ip, user.UserID)
    return {"sessionToken": token, "user": session_payload}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    session = _require_session_or_401(request, x_session_token)
    return {"user": session}


@app.post("/api/auth/forgot-password")
def auth_forgot_password(payload: ForgotPasswordRequest, db: Session = Depends(get_db)):
    request_password_reset(db, payload.email)
    # Same answer whether or not the account exists.
    return {"ok": True, "message": "If an administrator account exists for this email, a link has been sent."}


@app.post("/api/auth/set-password")
def auth_set_password(payload: SetPasswordRequest, db: Session = Depends(get_db)):
    user = set_password_with_token(db, payload.token, payload.password)
    return {"ok": True, "userID": user.UserID}


@app.post("/api/items")
def create_item_route(
    request: Request,
    payload: ItemCreate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    item = create_item(db, payload, actor_id=_session_user_id(session))
    return serialize_item(item)


@app.get("/api/items")
def list_items_route(
    request: Request,
    category: str | None = Query(None),
    status: str | None = Query(None),
    search: str | None = Query(None),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    return [serialize_item(item) for item in list_items(db, category=category, status=status, search=search)]


@app.get("/api/items/{item_id}")
def get_item_route(
    request: Request,
    item_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    return serialize_item(get_item(db, item_id))


@app.put("/api/items/{item_id}")
def update_item_route(
    request: Request,
    item_id: int,
    payload: ItemUpdateRequest,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    item = apply_item_update(db, item_id, payload, actor_id=_session_user_id(session))
    return serialize_item(item)


@app.delete("/api/items/{item_id}")
def delete_item_route(
    request: Request,
    item_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    return delete_item(db, item_id, actor_id=_session_user_id(session))


@app.get("/api/loans")
def list_loans_route(
    request: Request,
    item_id: int | None = Query(None, alias="itemID"),
    borrower_id: int | None = Query(None, alias="borrowerID"),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    now = datetime.now()
    loans = list_loans(db, item_id=item_id, borrower_id=borrower_id, status=status, now=now)
    return [serialize_loan(loan, now) for loan in loans]


@app.get("/api/loans/overdue/count")
def overdue_count_route(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    return {"count": count_overdue_loans(db)}


@app.post("/api/loans")
def create_loan_route(
    request: Request,
    payload: LoanCreate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    loan = create_loan(
        db,
        item_id=payload.itemID,
        borrower_id=payload.borrowerID,
        borrowed_at=payload.borrowedAt,
        due_at=payload.dueAt,
        notes=payload.notes,
        contexts=payload.contexts,
        performed_by_id=_session_user_id(session),
    )
    return serialize_loan(loan)


@app.post("/api/loans/{loan_id}/return")
def return_loan_route(
    request: Request,
    loan_id: int,
    payload: LoanReturnRequest | None = None,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    outcome = return_loan(
        db,
        loan_id,
        performed_by_id=_session_user_id(session),
        returned_at=payload.returnedAt if payload else None,
    )
    return {
        "loan": serialize_loan(outcome.loan),
        "itemStatus": outcome.item_status,
        "nextReservationID": outcome.next_reservation_id,
        "nextLoanID": outcome.next_loan_id,
    }


@app.put("/api/loans/{loan_id}/status")
def change_loan_status_route(
    request: Request,
    loan_id: int,
    payload: LoanStatusUpdate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    loan = change_loan_status(db, loan_id, payload.status, performed_by_id=_session_user_id(session))
    return serialize_loan(loan)


@app.delete("/api/loans/{loan_id}")
def delete_loan_route(
    request: Request,
    loan_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    return delete_loan(db, loan_id, performed_by_id=_session_user_id(session))


@app.get("/api/reservations")
def list_reservations_route(
    request: Request,
    item_id: int | None = Query(None, alias="itemID"),
    user_id: int | None = Query(None, alias="userID"),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    rows = list_reservations(db, item_id=item_id, user_id=user_id, status=status)
    return [serialize_reservation(row) for row in rows]


@app.post("/api/reservations")
def create_reservation_route(
    request: Request,
    payload: ReservationCreate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    reservation = create_reservation(
        db,
        item_id=payload.itemID,
        user_id=payload.userID,
        start=payload.startDate,
        end=payload.endDate,
        actor_id=_session_user_id(session),
    )
    return serialize_reservation(reservation)


@app.put("/api/reservations/{reservation_id}")
def modify_reservation_route(
    request: Request,
    reservation_id: int,
    payload: ReservationUpdate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    actor_id = _session_user_id(session)
    if actor_id is None:
        raise HTTPException(status_code=403, detail="A user session is required to modify reservations.")
    reservation = modify_reservation(
        db,
        reservation_id,
        modified_by_id=actor_id,
        start=payload.startDate,
        end=payload.endDate,
        status=payload.status,
    )
    return serialize_reservation(reservation)


@app.delete("/api/reservations/{reservation_id}")
def cancel_reservation_route(
    request: Request,
    reservation_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    return cancel_reservation(db, reservation_id, cancelled_by_id=_session_user_id(session))


@app.post("/api/reservations/cleanup")
def cleanup_reservations_route(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    return {"processed": sweep_expired(db)}


@app.post("/api/maintenance/reconcile")
def reconcile_items_route(
    request: Request,
    fix: bool = Query(True),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    return reconcile_all_items(db, fix=fix, actor_id=_session_user_id(session))


@app.get("/api/users")
def list_users_route(
    request: Request,
    search: str | None = Query(None),
    is_admin: bool | None = Query(None, alias="isAdmin"),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    return [serialize_user(user) for user in list_users(db, search=search, is_admin=is_admin)]


@app.post("/api/users")
def create_user_route(
    request: Request,
    payload: UserCreate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    user, _ = create_user(db, payload, performer_id=_session_user_id(session))
    return serialize_user(user)


@app.put("/api/users/{user_id}")
def update_user_route(
    request: Request,
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    return serialize_user(update_user(db, user_id, payload, performer_id=_session_user_id(session)))


@app.delete("/api/users/{user_id}")
def delete_user_route(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    return delete_user(db, user_id, performer_id=_session_user_id(session))


@app.get("/api/loan-history")
def loan_history_route(
    request: Request,
    item_id: int | None = Query(None, alias="itemID"),
    user_id: int | None = Query(None, alias="userID"),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    entries = list_loan_history(db, item_id=item_id, user_id=user_id)
    return [serialize_loan_history(entry) for entry in entries]


@app.get("/api/reservation-history")
def reservation_history_route(
    request: Request,
    item_id: int | None = Query(None, alias="itemID"),
    user_id: int | None = Query(None, alias="userID"),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    entries = list_reservation_history(db, item_id=item_id, user_id=user_id)
    return [serialize_reservation_history(entry) for entry in entries]
