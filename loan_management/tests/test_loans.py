import unittest
from datetime import datetime, timedelta, timezone

from support import DatabaseTestCase

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from models.loan_models import AuditLog, Loan, LoanHistory
from services import loan_service
from services.errors import (
    InvalidRangeError,
    InvalidRequestError,
    ItemUnavailableError,
    LoanOverlapError,
    NotFoundError,
    ReservationOverlapError,
)
from services.loan_service import (
    change_loan_status,
    create_loan,
    delete_loan,
    list_loans,
    normalize_contexts,
    return_loan,
    serialize_loan,
)
from services.status_service import get_item_status


NOW = datetime(2024, 1, 5, 9, 0)


class LoanLifecycleTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.borrower = self.add_user(first_name="Jane", last_name="DOE")
        self.item = self.add_item(name="Laptop")

    def _borrow(self, **overrides):
        kwargs = {
            "item_id": self.item.ItemID,
            "borrower_id": self.borrower.UserID,
            "borrowed_at": NOW - timedelta(hours=1),
            "due_at": NOW + timedelta(days=7),
            "now": NOW,
        }
        kwargs.update(overrides)
        return create_loan(self.db, **kwargs)

    def test_borrow_marks_item_borrowed(self):
        loan = self._borrow()

        self.assertEqual(loan.Status, "ACTIVE")
        self.assertIsNone(loan.ReturnedAt)
        self.assertEqual(get_item_status(self.item), "BORROWED")
        self.assertEqual(self.item.ReservationStatus, "BORROWED")
        self.assertFalse(self.item.Available)
        history = self.db.execute(select(LoanHistory).where(LoanHistory.LoanID == loan.LoanID)).scalars().all()
        self.assertEqual([(row.Status, row.Comment) for row in history], [("ACTIVE", "Loan created")])

    def test_return_without_followers_makes_item_available(self):
        loan = self._borrow()

        outcome = return_loan(self.db, loan.LoanID, now=NOW + timedelta(days=1))

        self.assertEqual(outcome.loan.Status, "RETURNED")
        self.assertEqual(outcome.loan.ReturnedAt, NOW + timedelta(days=1))
        self.assertEqual(outcome.item_status, "AVAILABLE")
        self.assertTrue(self.item.Available)
        self.assertIsNone(outcome.next_reservation_id)
        self.assertIsNone(outcome.next_loan_id)

    def test_return_with_upcoming_reservation_makes_item_pending(self):
        loan = self._borrow(due_at=NOW + timedelta(days=2))
        other = self.add_user(first_name="Max", last_name="LATE")
        later = self.add_reservation(self.item, other, NOW + timedelta(days=10), NOW + timedelta(days=12))
        sooner = self.add_reservation(self.item, other, NOW + timedelta(days=4), NOW + timedelta(days=6))
        self.add_reservation(self.item, other, NOW - timedelta(days=9), NOW - timedelta(days=8))

        outcome = return_loan(self.db, loan.LoanID, now=NOW + timedelta(days=1))

        self.assertEqual(outcome.item_status, "PENDING")
        self.assertEqual(outcome.next_reservation_id, sooner.ReservationID)
        self.assertNotEqual(outcome.next_reservation_id, later.ReservationID)
        self.assertFalse(self.item.Available)

    def test_return_keeps_item_borrowed_for_scheduled_loan(self):
        active = self.add_loan(self.item, self.borrower, NOW - timedelta(days=2), NOW + timedelta(days=1))
        scheduled = self.add_loan(
            self.item,
            self.borrower,
            NOW + timedelta(days=3),
            NOW + timedelta(days=5),
            status="SCHEDULED",
        )

        outcome = return_loan(self.db, active.LoanID, now=NOW)

        self.assertEqual(outcome.item_status, "BORROWED")
        self.assertEqual(outcome.next_loan_id, scheduled.LoanID)

    def test_second_open_loan_is_rejected_without_writes(self):
        first = self._borrow()
        history_before = self.count(LoanHistory)

        with self.assertRaises(LoanOverlapError) as ctx:
            self._borrow(borrowed_at=NOW + timedelta(days=10), due_at=NOW + timedelta(days=12))

        self.assertEqual(ctx.exception.context["conflictingLoanIDs"], [first.LoanID])
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(self.count(Loan), 1)
        self.assertEqual(self.count(LoanHistory), history_before)

    def test_borrow_overlapping_confirmed_reservation_is_rejected(self):
        other = self.add_user(first_name="Res", last_name="HOLDER")
        reservation = self.add_reservation(self.item, other, NOW + timedelta(days=3), NOW + timedelta(days=4))

        with self.assertRaises(ReservationOverlapError) as ctx:
            self._borrow()

        self.assertEqual(ctx.exception.context["conflictingReservationIDs"], [reservation.ReservationID])
        self.assertEqual(self.count(Loan), 0)
        self.assertEqual(self.item.ReservationStatus, "AVAILABLE")

    def test_borrow_out_of_order_item_is_rejected(self):
        broken = self.add_item(name="Broken", status="OUT_OF_ORDER")
        with self.assertRaises(ItemUnavailableError) as ctx:
            self._borrow(item_id=broken.ItemID)
        self.assertEqual(ctx.exception.context["currentStatus"], "OUT_OF_ORDER")

    def test_borrow_rejects_inverted_range_and_unknown_entities(self):
        with self.assertRaises(InvalidRangeError):
            self._borrow(due_at=NOW - timedelta(days=1))
        with self.assertRaises(NotFoundError):
            self._borrow(item_id=9999)
        with self.assertRaises(NotFoundError):
            self._borrow(borrower_id=9999)
        self.assertEqual(self.count(Loan), 0)

    def test_future_borrow_is_scheduled(self):
        loan = self._borrow(borrowed_at=NOW + timedelta(days=2), due_at=NOW + timedelta(days=4))

        self.assertEqual(loan.Status, "SCHEDULED")
        self.assertEqual(serialize_loan(loan, NOW)["status"], "SCHEDULED")
        self.assertEqual(self.item.ReservationStatus, "BORROWED")

    def test_returning_twice_is_rejected(self):
        loan = self._borrow()
        return_loan(self.db, loan.LoanID, now=NOW)
        with self.assertRaises(InvalidRequestError):
            return_loan(self.db, loan.LoanID, now=NOW)

    def test_scheduled_loan_can_be_activated_but_not_reverted(self):
        loan = self._borrow(borrowed_at=NOW + timedelta(days=2), due_at=NOW + timedelta(days=4))

        change_loan_status(self.db, loan.LoanID, "ACTIVE", now=NOW)

        self.assertEqual(loan.Status, "ACTIVE")
        self.assertEqual(loan.BorrowedAt, NOW)
        comments = [row.Comment for row in loan.History]
        self.assertIn("Status change: SCHEDULED -> ACTIVE", comments)
        with self.assertRaises(InvalidRequestError):
            change_loan_status(self.db, loan.LoanID, "SCHEDULED", now=NOW)

    def test_status_change_to_returned_goes_through_return(self):
        loan = self._borrow()
        change_loan_status(self.db, loan.LoanID, "RETURNED", now=NOW)
        self.assertEqual(loan.Status, "RETURNED")
        self.assertEqual(self.item.ReservationStatus, "AVAILABLE")

    def test_delete_loan_releases_item_and_audits(self):
        loan = self._borrow()

        result = delete_loan(self.db, loan.LoanID, now=NOW)

        self.assertEqual(result["itemStatus"], "AVAILABLE")
        self.assertEqual(self.count(Loan), 0)
        self.assertEqual(self.count(LoanHistory), 0)
        audit = self.db.execute(select(AuditLog).where(AuditLog.Action == "LoanDeleted")).scalars().all()
        self.assertEqual(len(audit), 1)

    def test_contexts_are_filtered_to_known_values(self):
        self.assertEqual(normalize_contexts(["cicat", "unknown", "PNT", "CICAT"]), ["CICAT", "PNT"])
        loan = self._borrow(contexts=["savs", "nope"])
        self.assertEqual(serialize_loan(loan, NOW)["contexts"], ["SAVS"])

    def test_list_loans_filters_on_effective_status(self):
        self._borrow(due_at=NOW + timedelta(days=1))
        later = NOW + timedelta(days=3)
        self.assertEqual(len(list_loans(self.db, status="OVERDUE", now=later)), 1)
        self.assertEqual(len(list_loans(self.db, status="ACTIVE", now=later)), 0)

    def test_timezone_aware_dates_are_stored_as_local_time(self):
        borrowed = datetime(2024, 1, 5, 8, 0, tzinfo=timezone.utc)
        due = borrowed + timedelta(days=7)

        loan = self._borrow(borrowed_at=borrowed, due_at=due, now=borrowed + timedelta(hours=1))

        self.assertEqual(loan.Status, "ACTIVE")
        self.assertIsNone(loan.BorrowedAt.tzinfo)
        self.assertEqual(loan.BorrowedAt, borrowed.astimezone().replace(tzinfo=None))
        self.assertEqual(loan.DueAt, due.astimezone().replace(tzinfo=None))

        returned_at = borrowed + timedelta(days=1)
        outcome = return_loan(self.db, loan.LoanID, returned_at=returned_at, now=returned_at)
        self.assertEqual(outcome.loan.ReturnedAt, returned_at.astimezone().replace(tzinfo=None))

    def test_return_rereads_loan_closed_by_another_session(self):
        loan = self._borrow()
        with self.engine.begin() as conn:
            conn.execute(
                update(Loan)
                .where(Loan.LoanID == loan.LoanID)
                .values(Status="RETURNED", ReturnedAt=NOW, UpdatedDate=NOW)
            )

        with self.assertRaises(InvalidRequestError):
            return_loan(self.db, loan.LoanID, now=NOW + timedelta(hours=1))

        statuses = self.db.execute(select(LoanHistory.Status).where(LoanHistory.LoanID == loan.LoanID)).scalars().all()
        self.assertEqual(statuses, ["ACTIVE"])
        self.assertEqual(loan.ReturnedAt, NOW)

    def test_failed_history_write_rolls_back_the_return(self):
        loan = self._borrow()

        def failing_record(*args, **kwargs):
            raise SQLAlchemyError("history table unavailable")

        original = loan_service.record
        loan_service.record = failing_record
        try:
            with self.assertRaises(SQLAlchemyError):
                return_loan(self.db, loan.LoanID, now=NOW + timedelta(days=1))
        finally:
            loan_service.record = original

        self.db.expire_all()
        stored = self.db.get(Loan, loan.LoanID)
        self.assertEqual(stored.Status, "ACTIVE")
        self.assertIsNone(stored.ReturnedAt)
        self.assertEqual(get_item_status(self.item), "BORROWED")
        self.assertEqual(self.item.ReservationStatus, "BORROWED")
        returned_rows = self.db.execute(
            select(LoanHistory).where(LoanHistory.LoanID == loan.LoanID).where(LoanHistory.Status == "RETURNED")
        ).scalars().all()
        self.assertEqual(returned_rows, [])


if __name__ == "__main__":
    unittest.main()
