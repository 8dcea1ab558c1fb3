import os
import sys
import tempfile
import unittest
from datetime import datetime
from pathlib import Path


os.environ.setdefault("LOAN_MANAGEMENT_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("LOAN_MANAGEMENT_DATA_DIR", tempfile.mkdtemp(prefix="loan_management_tests_"))

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine, func, select
from sqlalchemy.pool import StaticPool

from db.base import Base
from db.session import build_sessionmaker
from models.loan_models import Item, Loan, Reservation, User


def make_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    return engine


class DatabaseTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.db = build_sessionmaker(self.engine)()
        self._email_counter = 0

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def add_user(self, first_name="Jane", last_name="DOE", email=None, is_admin=False) -> User:
        self._email_counter += 1
        user = User(
            FirstName=first_name,
            LastName=last_name,
            Email=email or f"user{self._email_counter}@example.org",
            IsAdmin=is_admin,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def add_item(self, name="Projector", status="AVAILABLE", custom_id=None, category="EQUIPMENT") -> Item:
        item = Item(
            Name=name,
            CustomID=custom_id,
            Category=category,
            ReservationStatus=status,
            Available=status == "AVAILABLE",
        )
        self.db.add(item)
        self.db.commit()
        return item

    def add_loan(self, item, borrower, borrowed_at, due_at, status="ACTIVE", returned_at=None) -> Loan:
        # Raw insert, bypassing the services, to build drifted fixtures.
        loan = Loan(
            ItemID=item.ItemID if item is not None else None,
            BorrowerID=borrower.UserID,
            BorrowedAt=borrowed_at,
            DueAt=due_at,
            Status=status,
            ReturnedAt=returned_at,
        )
        self.db.add(loan)
        self.db.commit()
        if item is not None:
            self.db.expire(item, ["Loans"])
        return loan

    def add_reservation(self, item, user, start, end, status="CONFIRMED") -> Reservation:
        reservation = Reservation(
            ItemID=item.ItemID,
            UserID=user.UserID,
            StartDate=start,
            EndDate=end,
            Status=status,
            CreatedDate=datetime(2024, 1, 1),
        )
        self.db.add(reservation)
        self.db.commit()
        return reservation

    def count(self, model) -> int:
        return int(self.db.execute(select(func.count()).select_from(model)).scalar() or 0)
