import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
            future=True,
        )
    return create_engine(url, pool_pre_ping=True, future=True)


def build_sessionmaker(bind) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


LOAN_MANAGEMENT_DB_URL = _require_env("LOAN_MANAGEMENT_DB_URL")

engine_loans = build_engine(LOAN_MANAGEMENT_DB_URL)

SessionLocalLoans = build_sessionmaker(engine_loans)
