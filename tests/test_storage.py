#!/usr/bin/env python3
"""
Unit tests for the order store and the balance ledger.
"""
import threading
import unittest
from decimal import Decimal
from unittest import mock

from sqlalchemy.exc import IntegrityError, OperationalError

from common.error_handling import BusinessLogicError, DuplicateLoginError, ErrorCodes, NotFoundError
from common.security import hash_password
from loyalty_service.models import ORDER_NEW, ORDER_PROCESSING, ORDER_PROCESSED, ORDER_INVALID
from loyalty_service.storage import OrderRegistration, WithdrawResult

from ledger_fixtures import StorageTestCase


class TestUsers(StorageTestCase):

    def test_register_creates_zero_balance(self):
        self.register("alice")
        balance = self.storage.get_balance("alice")
        self.assertEqual(balance.current, Decimal("0"))
        self.assertEqual(balance.withdrawn, Decimal("0"))

    def test_duplicate_login_rejected(self):
        self.register("alice")
        with self.assertRaises(DuplicateLoginError):
            self.register("alice", "other")

    def test_logins_are_case_sensitive(self):
        self.register("alice")
        self.register("Alice")
        self.assertEqual(self.storage.get_balance("Alice").current, Decimal("0"))

    def test_authenticate(self):
        self.register("alice", "pw")
        self.assertTrue(self.storage.authenticate("alice", hash_password("pw")))
        self.assertFalse(self.storage.authenticate("alice", hash_password("wrong")))
        self.assertFalse(self.storage.authenticate("bob", hash_password("pw")))

    def test_unknown_balance(self):
        with self.assertRaises(NotFoundError):
            self.storage.get_balance("nobody")


class TestOrderStore(StorageTestCase):

    def setUp(self):
        super().setUp()
        self.register("alice")
        self.register("bob")

    def test_submit_is_idempotent_for_owner(self):
        self.assertEqual(self.storage.register_order("alice", "79927398713"), OrderRegistration.CREATED)
        self.assertEqual(self.storage.register_order("alice", "79927398713"), OrderRegistration.OWNED_BY_CALLER)
        self.assertEqual(len(self.storage.list_orders("alice")), 1)

    def test_other_user_conflicts(self):
        self.storage.register_order("alice", "79927398713")
        self.assertEqual(self.storage.register_order("bob", "79927398713"), OrderRegistration.OWNED_BY_OTHER)
        self.assertEqual(self.storage.list_orders("bob"), [])
        self.assertEqual(self.storage.get_order("79927398713").login, "alice")

    def test_lost_insert_race_resolved_by_constraint(self):
        self.storage.register_order("alice", "79927398713")
        # hide the existing row from the first ownership read, as if both
        # submissions passed it at the same time
        real_owner = self.storage._order_owner
        reads = []

        def racing_owner(db, number):
            reads.append(number)
            if len(reads) == 1:
                return None
            return real_owner(db, number)

        with mock.patch.object(self.storage, "_order_owner", side_effect=racing_owner):
            self.assertEqual(self.storage.register_order("bob", "79927398713"), OrderRegistration.OWNED_BY_OTHER)
        with mock.patch.object(self.storage, "_order_owner", side_effect=lambda db, n: None):
            with self.assertRaises(IntegrityError):
                self.storage.register_order("alice", "79927398713")
        self.assertEqual(len(self.storage.list_orders("alice")), 1)

    def test_new_order_defaults(self):
        self.storage.register_order("alice", "125764357")
        order = self.storage.get_order("125764357")
        self.assertEqual(order.status, ORDER_NEW)
        self.assertEqual(order.accrual, Decimal("0"))
        self.assertIsNotNone(order.uploaded_at)

    def test_list_orders_in_submission_order(self):
        for number in ["125764357", "5347754565", "87643"]:
            self.storage.register_order("alice", number)
        self.storage.register_order("bob", "45678976")
        self.assertEqual(
            [o.number for o in self.storage.list_orders("alice")],
            ["125764357", "5347754565", "87643"],
        )

    def test_claim_pending_is_idempotent(self):
        self.storage.register_order("alice", "125764357")
        self.storage.register_order("bob", "87643")

        first = self.storage.claim_pending()
        self.assertEqual({o.number for o in first}, {"125764357", "87643"})
        self.assertTrue(all(o.status == ORDER_PROCESSING for o in first))

        # nothing resolved: the same orders come back on the next claim
        second = self.storage.claim_pending()
        self.assertEqual({o.number for o in second}, {"125764357", "87643"})

    def test_claim_skips_terminal_orders(self):
        self.storage.register_order("alice", "125764357")
        self.storage.register_order("alice", "87643")
        self.storage.claim_pending()
        self.storage.mark_invalid("125764357")
        self.storage.mark_processed("87643", 10)
        self.assertEqual(self.storage.claim_pending(), [])

    def test_mark_invalid(self):
        self.storage.register_order("alice", "125764357")
        self.storage.claim_pending()
        self.assertTrue(self.storage.mark_invalid("125764357"))
        self.assertEqual(self.storage.get_order("125764357").status, ORDER_INVALID)
        self.assertEqual(self.storage.get_balance("alice").current, Decimal("0"))


class TestAccrualCredit(StorageTestCase):

    def setUp(self):
        super().setUp()
        self.register("alice")
        self.storage.register_order("alice", "79927398713")
        self.storage.claim_pending()

    def test_processed_order_credits_owner(self):
        self.assertTrue(self.storage.mark_processed("79927398713", Decimal("500")))
        order = self.storage.get_order("79927398713")
        self.assertEqual(order.status, ORDER_PROCESSED)
        self.assertEqual(order.accrual, Decimal("500"))
        self.assertEqual(self.storage.get_balance("alice").current, Decimal("500"))

    def test_order_is_credited_exactly_once(self):
        self.storage.mark_processed("79927398713", 500)
        self.assertFalse(self.storage.mark_processed("79927398713", 500))
        self.assertEqual(self.storage.get_balance("alice").current, Decimal("500"))

    def test_invalid_order_is_never_credited(self):
        self.storage.mark_invalid("79927398713")
        self.assertFalse(self.storage.mark_processed("79927398713", 500))
        self.assertEqual(self.storage.get_balance("alice").current, Decimal("0"))

    def test_unknown_order(self):
        self.assertFalse(self.storage.mark_processed("125764357", 500))

    def test_fractional_accrual(self):
        self.storage.mark_processed("79927398713", 729.98)
        self.assertEqual(self.storage.get_balance("alice").current, Decimal("729.98"))

    def test_failed_credit_rolls_back_status(self):
        with mock.patch.object(self.storage, "_credit", side_effect=OperationalError("UPDATE", {}, Exception("db gone"))):
            with self.assertRaises(OperationalError):
                self.storage.mark_processed("79927398713", 500)
        self.assertEqual(self.storage.get_order("79927398713").status, ORDER_PROCESSING)
        self.assertEqual(self.storage.get_balance("alice").current, Decimal("0"))


class TestWithdrawals(StorageTestCase):

    def setUp(self):
        super().setUp()
        self.register("alice")
        self.storage.credit("alice", 100)

    def test_withdraw_updates_balance_and_history(self):
        self.assertEqual(self.storage.withdraw("alice", "2377225624", 30), WithdrawResult.OK)
        balance = self.storage.get_balance("alice")
        self.assertEqual(balance.current, Decimal("70"))
        self.assertEqual(balance.withdrawn, Decimal("30"))

        history = self.storage.list_withdrawals("alice")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].order_number, "2377225624")
        self.assertEqual(history[0].sum, Decimal("30"))

    def test_insufficient_funds_leaves_balance_untouched(self):
        self.assertEqual(self.storage.withdraw("alice", "2377225624", 100.01), WithdrawResult.INSUFFICIENT_FUNDS)
        balance = self.storage.get_balance("alice")
        self.assertEqual(balance.current, Decimal("100"))
        self.assertEqual(balance.withdrawn, Decimal("0"))
        self.assertEqual(self.storage.list_withdrawals("alice"), [])

    def test_withdraw_whole_balance(self):
        self.assertEqual(self.storage.withdraw("alice", "2377225624", 100), WithdrawResult.OK)
        self.assertEqual(self.storage.get_balance("alice").current, Decimal("0"))

    def test_sequential_overdraw(self):
        self.assertEqual(self.storage.withdraw("alice", "2377225624", 80), WithdrawResult.OK)
        self.assertEqual(self.storage.withdraw("alice", "125764357", 80), WithdrawResult.INSUFFICIENT_FUNDS)
        self.assertEqual(self.storage.get_balance("alice").current, Decimal("20"))

    def test_concurrent_withdrawals_serialize(self):
        barrier = threading.Barrier(2)
        results = []

        def spend(ref):
            barrier.wait()
            results.append(self.storage.withdraw("alice", ref, 80))

        threads = [threading.Thread(target=spend, args=(ref,)) for ref in ("2377225624", "125764357")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        self.assertEqual(sorted(results), [WithdrawResult.INSUFFICIENT_FUNDS, WithdrawResult.OK])
        balance = self.storage.get_balance("alice")
        self.assertEqual(balance.current, Decimal("20"))
        self.assertEqual(balance.withdrawn, Decimal("80"))
        self.assertEqual(len(self.storage.list_withdrawals("alice")), 1)

    def test_history_is_per_user(self):
        self.register("bob")
        self.storage.credit("bob", 50)
        self.storage.withdraw("alice", "2377225624", 10)
        self.storage.withdraw("bob", "125764357", 5)
        self.assertEqual([w.order_number for w in self.storage.list_withdrawals("bob")], ["125764357"])

    def test_withdrawals_do_not_need_a_known_order(self):
        self.assertIsNone(self.storage.get_order("2377225624"))
        self.assertEqual(self.storage.withdraw("alice", "2377225624", 1), WithdrawResult.OK)

    def test_sub_cent_amounts_keep_ledger_consistent(self):
        self.register("bob")
        self.storage.credit("bob", 1)
        for ref in ("2377225624", "125764357", "79927398713"):
            self.assertEqual(self.storage.withdraw("bob", ref, 0.333), WithdrawResult.OK)

        balance = self.storage.get_balance("bob")
        history = self.storage.list_withdrawals("bob")
        self.assertEqual([w.sum for w in history], [Decimal("0.33")] * 3)
        self.assertEqual(sum(w.sum for w in history), balance.withdrawn)
        self.assertEqual(balance.current, Decimal("0.01"))
        self.assertEqual(balance.current + balance.withdrawn, Decimal("1"))

    def test_withdrawal_rounding_to_zero_is_refused(self):
        self.register("bob")
        self.storage.credit("bob", 0.01)
        for _ in range(3):
            with self.assertRaises(BusinessLogicError) as ctx:
                self.storage.withdraw("bob", "2377225624", 0.004)
            self.assertEqual(ctx.exception.code, ErrorCodes.VALIDATION_ERROR)

        balance = self.storage.get_balance("bob")
        self.assertEqual(balance.current, Decimal("0.01"))
        self.assertEqual(balance.withdrawn, Decimal("0"))
        self.assertEqual(self.storage.list_withdrawals("bob"), [])

    def test_credit_unknown_user(self):
        with self.assertRaises(NotFoundError):
            self.storage.credit("nobody", 10)


if __name__ == "__main__":
    unittest.main()
