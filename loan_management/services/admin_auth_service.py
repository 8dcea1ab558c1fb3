from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from db.transaction import unit_of_work
from models.loan_models import NotificationQueue, PasswordToken, User
from services.errors import InvalidRequestError, InvalidTokenError
from services.history_service import USER_HISTORY, record


LOGGER = logging.getLogger("loan_management.auth")

SESSION_TTL_SECONDS = 60 * 60 * 12
PASSWORD_MIN_LENGTH = 8
PASSWORD_TOKEN_TTL_HOURS = int(os.environ.get("PASSWORD_TOKEN_TTL_HOURS") or "24")
PASSWORD_HASH_ITERATIONS = 120000

_BASE_DIR = Path(__file__).resolve().parent.parent
_DATA_DIR = Path(os.environ.get("LOAN_MANAGEMENT_DATA_DIR") or (_BASE_DIR / "data"))
_REVOKED_TOKENS_PATH = _DATA_DIR / "revoked_sessions.json"
_LOCK = threading.Lock()
_SESSIONS: dict[str, dict[str, Any]] = {}


def require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


def _ensure_data_dir() -> None:
    _DATA_DIR.mkdir(parents=True, exist_ok=True)


def password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    )
    return raw.hex()


def set_user_password(user: User, password: str) -> None:
    candidate = password or ""
    if len(candidate) < PASSWORD_MIN_LENGTH:
        raise InvalidRequestError(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters.",
            minLength=PASSWORD_MIN_LENGTH,
        )
    salt = secrets.token_hex(16)
    user.PasswordSalt = salt
    user.PasswordHash = password_hash(candidate, salt)
    user.UpdatedDate = datetime.now()


def verify_user_password(user: User, password: str) -> bool:
    if not user.PasswordHash or not user.PasswordSalt:
        return False
    return hmac.compare_digest(password_hash(password or "", user.PasswordSalt), user.PasswordHash)


def find_user_by_email(db: Session, email: str) -> User | None:
    normalized = (email or "").strip().lower()
    if not normalized:
        return None
    return db.execute(select(User).where(func.lower(User.Email) == normalized)).scalars().first()


def authenticate_admin(db: Session, email: str, password: str) -> User | None:
    user = find_user_by_email(db, email)
    if user is None or not user.IsAdmin:
        return None
    if not verify_user_password(user, password):
        return None
    return user


def session_payload_for(user: User) -> dict[str, Any]:
    return {
        "userID": user.UserID,
        "email": user.Email,
        "displayName": f"{user.FirstName} {user.LastName}",
        "role": "Admin" if user.IsAdmin else "User",
    }


def _hash_token(raw_token: str) -> str:
    return hashlib.sha256((raw_token or "").encode("utf-8")).hexdigest()


def issue_password_token(db: Session, user: User, *, purpose: str, now: datetime | None = None) -> str:
    """Store a hashed single-use token and queue its delivery; returns the raw token."""
    now = now or datetime.now()
    raw_token = secrets.token_urlsafe(32)
    expires_at = now + timedelta(hours=PASSWORD_TOKEN_TTL_HOURS)
    db.add(
        PasswordToken(
            TokenHash=_hash_token(raw_token),
            UserID=user.UserID,
            ExpiresAt=expires_at,
            CreatedAt=now,
        )
    )
    db.add(
        NotificationQueue(
            UserID=user.UserID,
            NotificationType=purpose,
            Payload=json.dumps(
                {
                    "userID": user.UserID,
                    "email": user.Email,
                    "token": raw_token,
                    "expiresAt": expires_at.isoformat(),
                },
                ensure_ascii=True,
            ),
            CreatedAt=now,
        )
    )
    db.flush()
    return raw_token


def request_password_reset(db: Session, email: str, *, now: datetime | None = None) -> None:
    """Queue a reset token for an admin account; unknown emails are ignored silently."""
    now = now or datetime.now()
    with unit_of_work(db):
        user = find_user_by_email(db, email)
        if user is None or not user.IsAdmin:
            LOGGER.info("Password reset requested for unknown or non-admin account")
            return
        issue_password_token(db, user, purpose="PasswordReset", now=now)
        record(db, USER_HISTORY, user.UserID, None, "PASSWORD_RESET_REQUESTED", "Password reset requested", when=now)
    LOGGER.info("Password reset token issued user_id=%s", user.UserID)


def set_password_with_token(db: Session, raw_token: str, password: str, *, now: datetime | None = None) -> User:
    now = now or datetime.now()
    with unit_of_work(db):
        token = db.execute(
            select(PasswordToken).where(PasswordToken.TokenHash == _hash_token(raw_token))
        ).scalars().first()
        if token is None or token.ExpiresAt < now:
            raise InvalidTokenError("The link is invalid or has expired.")
        user = token.User
        if user is None or not user.IsAdmin:
            raise InvalidTokenError("The link is invalid or has expired.")

        set_user_password(user, password)
        db.execute(
            delete(PasswordToken)
            .where(PasswordToken.UserID == user.UserID)
            .execution_options(synchronize_session="fetch")
        )
        record(db, USER_HISTORY, user.UserID, user.UserID, "PASSWORD_SET", "Password set from emailed link", when=now)
    LOGGER.info("Password set from token user_id=%s", user.UserID)
    return user


def _load_revoked_tokens_unlocked() -> dict[str, float]:
    _ensure_data_dir()
    if not _REVOKED_TOKENS_PATH.exists():
        return {}
    try:
        payload = json.loads(_REVOKED_TOKENS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, ValueError):
        return {}
    if not isinstance(payload, dict):
        return {}
    out: dict[str, float] = {}
    for token, expires_at in payload.items():
        try:
            out[str(token)] = float(expires_at)
        except (TypeError, ValueError):
            continue
    return out


def _save_revoked_tokens_unlocked(tokens: dict[str, float]) -> None:
    _ensure_data_dir()
    _REVOKED_TOKENS_PATH.write_text(json.dumps(tokens, ensure_ascii=True, indent=2), encoding="utf-8")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def _sign(encoded: str) -> bytes:
    return hmac.new(require_session_secret(), encoded.encode("ascii"), hashlib.sha256).digest()


def _decode_token(token: str) -> dict[str, Any] | None:
    try:
        encoded, encoded_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), _b64decode(encoded_sig)):
            return None
        decoded = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    return decoded if isinstance(decoded, dict) else None


def create_session(payload: dict[str, Any]) -> str:
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    token = f"{encoded}.{_b64encode(_sign(encoded))}"
    with _LOCK:
        _SESSIONS[token] = session_payload
    return token


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    decoded_session = _decode_token(token)
    if decoded_session is None:
        return None

    expires_at = float(decoded_session.get("expiresAt") or 0.0)
    if now >= expires_at:
        with _LOCK:
            _SESSIONS.pop(token, None)
        return None

    with _LOCK:
        revoked = _load_revoked_tokens_unlocked()
        pruned = {key: value for key, value in revoked.items() if now < value}
        if len(pruned) != len(revoked):
            _save_revoked_tokens_unlocked(pruned)
        if token in pruned:
            _SESSIONS.pop(token, None)
            return None

        # Cache for this process; cross-process validation remains token-based.
        _SESSIONS[token] = decoded_session
        return dict(decoded_session)


def remove_session(token: str | None) -> None:
    if not token:
        return
    now = time.time()
    decoded = _decode_token(token)
    expires_at = float((decoded or {}).get("expiresAt") or now + SESSION_TTL_SECONDS)
    with _LOCK:
        _SESSIONS.pop(token, None)
        if expires_at <= now:
            return
        revoked = _load_revoked_tokens_unlocked()
        revoked[token] = expires_at
        _save_revoked_tokens_unlocked(revoked)
