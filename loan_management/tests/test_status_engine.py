import unittest
from datetime import datetime, timedelta

from support import DatabaseTestCase

from sqlalchemy import select

from models.loan_models import AuditLog, Item, Loan, LoanHistory
from services.loan_service import count_overdue_loans
from services.status_service import (
    can_modify_status,
    effective_loan_status,
    get_item_status,
    is_item_borrowed,
    reconcile_all_items,
    reconcile_item,
    register_repair_hook,
    unregister_repair_hook,
)


NOW = datetime(2024, 3, 1, 12, 0)


class ItemStatusDerivationTests(DatabaseTestCase):
    def test_open_loan_states_make_item_borrowed(self):
        borrower = self.add_user()
        for status in ("ACTIVE", "OVERDUE", "SCHEDULED"):
            item = self.add_item(name=f"Item {status}", status="AVAILABLE")
            self.add_loan(item, borrower, NOW - timedelta(days=1), NOW + timedelta(days=5), status=status)
            self.assertTrue(is_item_borrowed(item), status)
            self.assertEqual(get_item_status(item), "BORROWED")
            self.assertFalse(can_modify_status(item))

    def test_stored_status_passes_through_without_open_loan(self):
        borrower = self.add_user()
        for stored in ("AVAILABLE", "RESERVED", "OUT_OF_ORDER"):
            item = self.add_item(name=f"Item {stored}", status=stored)
            self.add_loan(
                item,
                borrower,
                NOW - timedelta(days=10),
                NOW - timedelta(days=3),
                status="RETURNED",
                returned_at=NOW - timedelta(days=4),
            )
            self.assertFalse(is_item_borrowed(item))
            self.assertEqual(get_item_status(item), stored)
            self.assertTrue(can_modify_status(item))

    def test_loan_with_return_timestamp_is_not_open(self):
        borrower = self.add_user()
        item = self.add_item()
        self.add_loan(item, borrower, NOW - timedelta(days=3), NOW + timedelta(days=3), status="ACTIVE", returned_at=NOW)
        self.assertFalse(is_item_borrowed(item))


class ReconciliationTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.repairs = []
        register_repair_hook(self.repairs.append)

    def tearDown(self):
        unregister_repair_hook(self.repairs.append)
        super().tearDown()

    def test_stale_borrowed_item_is_repaired_once_and_reported(self):
        item = self.add_item(status="BORROWED")
        item.Available = False
        self.db.commit()

        repair = reconcile_item(self.db, item, NOW, reason="test")
        self.db.commit()

        self.assertIsNotNone(repair)
        self.assertEqual(repair.old_status, "BORROWED")
        self.assertEqual(repair.new_status, "AVAILABLE")
        self.assertEqual(item.ReservationStatus, "AVAILABLE")
        self.assertTrue(item.Available)
        self.assertEqual(len(self.repairs), 1)
        audit = self.db.execute(select(AuditLog).where(AuditLog.Action == "StatusRepair")).scalars().all()
        self.assertEqual(len(audit), 1)
        self.assertIn("BORROWED -> AVAILABLE", audit[0].Details)

        self.assertIsNone(reconcile_item(self.db, item, NOW, reason="test"))
        self.db.commit()
        self.assertEqual(len(self.repairs), 1)
        self.assertEqual(self.count(AuditLog), 1)

    def test_available_item_with_open_loan_becomes_borrowed(self):
        borrower = self.add_user()
        item = self.add_item(status="AVAILABLE")
        self.add_loan(item, borrower, NOW - timedelta(days=1), NOW + timedelta(days=2))

        repair = reconcile_item(self.db, item, NOW)
        self.db.commit()

        self.assertEqual(repair.new_status, "BORROWED")
        self.assertEqual(item.ReservationStatus, "BORROWED")
        self.assertFalse(item.Available)

    def test_stale_borrowed_item_with_upcoming_reservation_becomes_pending(self):
        user = self.add_user()
        item = self.add_item(status="BORROWED")
        self.add_reservation(item, user, NOW + timedelta(days=2), NOW + timedelta(days=4))

        reconcile_item(self.db, item, NOW)
        self.db.commit()

        self.assertEqual(item.ReservationStatus, "PENDING")
        self.assertFalse(item.Available)

    def test_pending_item_without_reservation_becomes_available(self):
        item = self.add_item(status="PENDING")
        reconcile_item(self.db, item, NOW)
        self.db.commit()
        self.assertEqual(item.ReservationStatus, "AVAILABLE")

    def test_available_flag_mismatch_is_repaired(self):
        item = self.add_item(status="OUT_OF_ORDER")
        item.Available = True
        self.db.commit()

        repair = reconcile_item(self.db, item, NOW)
        self.db.commit()

        self.assertIsNotNone(repair)
        self.assertEqual(item.ReservationStatus, "OUT_OF_ORDER")
        self.assertFalse(item.Available)

    def test_duplicate_open_loans_keep_only_the_latest(self):
        first = self.add_user(first_name="Ann", last_name="ONE")
        second = self.add_user(first_name="Bob", last_name="TWO")
        item = self.add_item(status="BORROWED")
        older = self.add_loan(item, first, NOW - timedelta(days=6), NOW + timedelta(days=1))
        newer = self.add_loan(item, second, NOW - timedelta(days=2), NOW + timedelta(days=4))

        repair = reconcile_item(self.db, item, NOW)
        self.db.commit()

        self.assertEqual(repair.closed_loan_ids, [older.LoanID])
        self.assertEqual(older.Status, "RETURNED")
        self.assertEqual(older.ReturnedAt, NOW)
        self.assertIsNone(newer.ReturnedAt)
        self.assertEqual(item.ReservationStatus, "BORROWED")
        open_loans = self.db.execute(
            select(Loan).where(Loan.ItemID == item.ItemID).where(Loan.ReturnedAt.is_(None))
        ).scalars().all()
        self.assertEqual([loan.LoanID for loan in open_loans], [newer.LoanID])
        history = self.db.execute(select(LoanHistory).where(LoanHistory.LoanID == older.LoanID)).scalars().all()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].Status, "RETURNED")

    def test_returned_status_without_timestamp_is_repaired(self):
        borrower = self.add_user()
        item = self.add_item(status="AVAILABLE")
        loan = self.add_loan(item, borrower, NOW - timedelta(days=6), NOW - timedelta(days=1), status="RETURNED")

        repair = reconcile_item(self.db, item, NOW)
        self.db.commit()

        self.assertEqual(repair.repaired_loan_ids, [loan.LoanID])
        self.assertIsNotNone(loan.ReturnedAt)
        history = self.db.execute(select(LoanHistory).where(LoanHistory.LoanID == loan.LoanID)).scalars().one()
        self.assertEqual(history.Status, "RETURNED")
        self.assertEqual(history.Comment, "Return marker repaired during reconciliation")
        self.assertEqual(history.UserID, borrower.UserID)
        self.assertEqual(history.Date, NOW)
        self.assertIsNone(reconcile_item(self.db, item, NOW))

    def test_active_status_with_return_timestamp_is_closed(self):
        borrower = self.add_user()
        item = self.add_item(status="AVAILABLE")
        returned_at = NOW - timedelta(days=2)
        loan = self.add_loan(
            item, borrower, NOW - timedelta(days=6), NOW - timedelta(days=1), status="ACTIVE", returned_at=returned_at
        )

        repair = reconcile_item(self.db, item, NOW)
        self.db.commit()

        self.assertEqual(repair.repaired_loan_ids, [loan.LoanID])
        self.assertEqual(loan.Status, "RETURNED")
        self.assertEqual(loan.ReturnedAt, returned_at)
        comments = self.db.execute(select(LoanHistory.Comment).where(LoanHistory.LoanID == loan.LoanID)).scalars().all()
        self.assertEqual(comments, ["Return marker repaired during reconciliation"])

    def test_reconcile_all_items_dry_run_writes_nothing(self):
        self.add_item(name="Stale", status="BORROWED")
        self.add_item(name="Fine", status="AVAILABLE")

        report = reconcile_all_items(self.db, NOW, fix=False)

        self.assertEqual(report["checked"], 2)
        self.assertEqual(report["repaired"], 0)
        self.assertEqual([row["itemName"] for row in report["repairs"]], ["Stale"])
        stale = self.db.execute(select(Item).where(Item.Name == "Stale")).scalars().one()
        self.assertEqual(stale.ReservationStatus, "BORROWED")
        self.assertEqual(self.repairs, [])

    def test_reconcile_all_items_fix_repairs_and_second_pass_is_clean(self):
        borrower = self.add_user()
        stale = self.add_item(name="Stale", status="BORROWED")
        drifted = self.add_item(name="Drifted", status="AVAILABLE")
        self.add_loan(drifted, borrower, NOW - timedelta(days=1), NOW + timedelta(days=1))

        report = reconcile_all_items(self.db, NOW, fix=True)

        self.assertEqual(report["repaired"], 2)
        self.assertEqual(stale.ReservationStatus, "AVAILABLE")
        self.assertEqual(drifted.ReservationStatus, "BORROWED")
        self.assertEqual(reconcile_all_items(self.db, NOW, fix=True)["repairs"], [])


class OverdueConsistencyTests(DatabaseTestCase):
    def test_effective_status_and_overdue_count_agree(self):
        borrower = self.add_user()
        item_a = self.add_item(name="A")
        item_b = self.add_item(name="B")
        item_c = self.add_item(name="C")
        item_d = self.add_item(name="D")
        self.add_loan(item_a, borrower, NOW - timedelta(days=10), NOW - timedelta(days=1))
        self.add_loan(item_b, borrower, NOW - timedelta(days=10), NOW + timedelta(days=1))
        self.add_loan(item_c, borrower, NOW + timedelta(days=1), NOW + timedelta(days=3), status="SCHEDULED")
        self.add_loan(
            item_d,
            borrower,
            NOW - timedelta(days=10),
            NOW - timedelta(days=2),
            status="RETURNED",
            returned_at=NOW - timedelta(days=3),
        )

        loans = self.db.execute(select(Loan).order_by(Loan.LoanID)).scalars().all()
        statuses = [effective_loan_status(loan, NOW) for loan in loans]

        self.assertEqual(statuses, ["OVERDUE", "ACTIVE", "SCHEDULED", "RETURNED"])
        self.assertEqual(count_overdue_loans(self.db, NOW), statuses.count("OVERDUE"))

    def test_overdue_is_not_persisted_on_read(self):
        borrower = self.add_user()
        item = self.add_item()
        loan = self.add_loan(item, borrower, NOW - timedelta(days=10), NOW - timedelta(days=1))
        self.assertEqual(effective_loan_status(loan, NOW), "OVERDUE")
        self.assertEqual(loan.Status, "ACTIVE")


if __name__ == "__main__":
    unittest.main()
