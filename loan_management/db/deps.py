from collections.abc import Generator

from .session import SessionLocalLoans


def get_db() -> Generator:
    db = SessionLocalLoans()
    try:
        yield db
    finally:
        db.close()
