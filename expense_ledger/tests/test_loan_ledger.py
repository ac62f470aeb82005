import unittest
from datetime import date
from decimal import Decimal

from expense_ledger.accounts import create_team_member
from expense_ledger.currency_conversion import round_money
from expense_ledger.errors import BadRequest, Forbidden, InsufficientBalance, RateNotFound
from expense_ledger.loan_ledger import (
    _apply_payment,
    cancel_loan,
    create_standalone_loan,
    get_loan,
    get_loan_history,
    list_loans,
    mark_loan_defaulted,
    notify_payment_received,
    record_loan_payment,
)
from expense_ledger.mailer import LOAN_PAYMENT_RECEIVED, RecordingMailer
from expense_ledger.tests.support import MEMBER_ID, OWNER_ID, LedgerTestCase


class LoanLedgerTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        with self.engine.begin() as conn:
            self.borrower = create_team_member(
                conn,
                OWNER_ID,
                self.org_id,
                "Robin",
                email="robin@example.com",
                account_ids=[self.eur_account.id],
            )

    def _create_loan(self, amount="100", currency="USD", **kwargs):
        with self.engine.begin() as conn:
            return create_standalone_loan(
                conn,
                OWNER_ID,
                self.borrower.id,
                self.eur_account.id,
                amount,
                date(2026, 3, 1),
                currency=currency,
                **kwargs,
            )

    def _pay(self, loan_id, amount, currency="EUR", actor_id=OWNER_ID, **kwargs):
        with self.engine.begin() as conn:
            return record_loan_payment(
                conn, actor_id, loan_id, amount, date(2026, 3, 10), currency=currency, **kwargs
            )

    def test_principal_is_stored_in_account_currency(self) -> None:
        loan = self._create_loan()

        self.assertEqual(loan.currency, "USD")
        self.assertEqual(loan.amount, Decimal("100"))
        self.assertEqual(round_money(loan.principal_amount), Decimal("90.00"))
        self.assertEqual(loan.current_balance, loan.principal_amount)
        self.assertEqual(round_money(loan.base_currency_amount), Decimal("100.00"))
        self.assertEqual(loan.status, "active")

    def test_overpayment_is_rejected_and_balance_unchanged(self) -> None:
        loan = self._create_loan()
        self._pay(loan.id, "50")

        with self.assertRaises(InsufficientBalance):
            self._pay(loan.id, "45")

        with self.engine.begin() as conn:
            current = get_loan(conn, loan.id)
            history = get_loan_history(conn, MEMBER_ID, loan.id)
        self.assertEqual(round_money(current.current_balance), Decimal("40.00"))
        self.assertEqual(len(history.payments), 1)

    def test_balance_equals_principal_minus_payments(self) -> None:
        loan = self._create_loan()
        self._pay(loan.id, "20")
        self._pay(loan.id, "11.11", currency="USD")

        with self.engine.begin() as conn:
            history = get_loan_history(conn, OWNER_ID, loan.id)

        self.assertEqual(
            history.loan.current_balance, history.loan.principal_amount - history.total_paid
        )
        self.assertEqual(round_money(history.payments[1].amount), Decimal("10.00"))
        self.assertEqual(history.payments[1].original_amount, Decimal("11.11"))

    def test_payment_in_third_currency_goes_through_base(self) -> None:
        loan = self._create_loan()
        payment = self._pay(loan.id, "40", currency="GBP")

        self.assertEqual(round_money(payment.amount), Decimal("45.00"))
        self.assertEqual(payment.currency, "GBP")

    def test_custom_rate_payment(self) -> None:
        loan = self._create_loan()
        payment = self._pay(
            loan.id, "10", currency="CAD", rate_type="custom", custom_rate="0.75"
        )

        self.assertEqual(round_money(payment.amount), Decimal("6.75"))

    def test_missing_rate_for_payment_currency(self) -> None:
        loan = self._create_loan()

        with self.assertRaises(RateNotFound) as ctx:
            self._pay(loan.id, "10", currency="CAD")
        self.assertEqual(ctx.exception.currency, "CAD")

    def test_paying_off_marks_loan_paid(self) -> None:
        loan = self._create_loan()
        self._pay(loan.id, "90")

        with self.engine.begin() as conn:
            paid = get_loan(conn, loan.id)
        self.assertEqual(paid.status, "paid")
        self.assertEqual(paid.current_balance, Decimal("0"))

        with self.assertRaises(BadRequest):
            self._pay(loan.id, "1")

    def test_fractional_payments_settle_exactly(self) -> None:
        loan = self._create_loan(amount="1.10", currency="EUR")
        self._pay(loan.id, "1.00")
        self._pay(loan.id, "0.10")

        with self.engine.begin() as conn:
            settled = get_loan(conn, loan.id)
        self.assertEqual(settled.amount, Decimal("1.10"))
        self.assertEqual(settled.status, "paid")
        self.assertEqual(settled.current_balance, Decimal("0"))

    def test_stale_balance_cannot_overwrite_concurrent_payment(self) -> None:
        loan = self._create_loan()
        with self.engine.begin() as conn:
            stale = get_loan(conn, loan.id)
        self._pay(loan.id, "50")

        with self.engine.begin() as conn:
            with self.assertRaises(InsufficientBalance):
                _apply_payment(conn, stale, Decimal("30"))

        with self.engine.begin() as conn:
            current = get_loan(conn, loan.id)
            history = get_loan_history(conn, OWNER_ID, loan.id)
        self.assertEqual(round_money(current.current_balance), Decimal("40.00"))
        self.assertEqual(current.status, "active")
        self.assertEqual(len(history.payments), 1)

    def test_members_cannot_record_payments(self) -> None:
        loan = self._create_loan()

        with self.assertRaises(Forbidden):
            self._pay(loan.id, "5", actor_id=MEMBER_ID)

    def test_members_cannot_create_loans(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(Forbidden):
                create_standalone_loan(
                    conn,
                    MEMBER_ID,
                    self.borrower.id,
                    self.eur_account.id,
                    "100",
                    date(2026, 3, 1),
                )

    def test_borrower_must_be_associated_with_account(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(BadRequest):
                create_standalone_loan(
                    conn,
                    OWNER_ID,
                    self.borrower.id,
                    self.usd_account.id,
                    "100",
                    date(2026, 3, 1),
                )

    def test_payment_type_is_validated(self) -> None:
        loan = self._create_loan()

        with self.assertRaises(BadRequest):
            self._pay(loan.id, "5", payment_type="fees")
        payment = self._pay(loan.id, "5", payment_type="Interest")
        self.assertEqual(payment.payment_type, "interest")

    def test_cancel_keeps_history(self) -> None:
        loan = self._create_loan()
        self._pay(loan.id, "10")

        with self.engine.begin() as conn:
            with self.assertRaises(Forbidden):
                cancel_loan(conn, MEMBER_ID, loan.id)
            cancelled = cancel_loan(conn, OWNER_ID, loan.id)
            history = get_loan_history(conn, OWNER_ID, loan.id)

        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(len(history.payments), 1)
        with self.assertRaises(BadRequest):
            self._pay(loan.id, "10")

    def test_terminal_states_cannot_change(self) -> None:
        loan = self._create_loan()

        with self.engine.begin() as conn:
            defaulted = mark_loan_defaulted(conn, OWNER_ID, loan.id)
            with self.assertRaises(BadRequest):
                cancel_loan(conn, OWNER_ID, loan.id)

        self.assertEqual(defaulted.status, "defaulted")

    def test_list_loans_by_status(self) -> None:
        first = self._create_loan()
        second = self._create_loan(amount="50")
        with self.engine.begin() as conn:
            cancel_loan(conn, OWNER_ID, first.id)
            active = list_loans(conn, self.org_id, status="active")
            every = list_loans(conn, self.org_id)

        self.assertEqual([loan.id for loan in active], [second.id])
        self.assertEqual(len(every), 2)

    def test_payment_notification_goes_to_borrower(self) -> None:
        loan = self._create_loan()
        payment = self._pay(loan.id, "50")
        mailer = RecordingMailer()

        with self.engine.connect() as conn:
            sent = notify_payment_received(conn, mailer, payment, "https://app.example.com")

        self.assertTrue(sent)
        self.assertEqual(mailer.sent[0].to, "robin@example.com")
        self.assertEqual(mailer.sent[0].template_id, LOAN_PAYMENT_RECEIVED)
        self.assertEqual(mailer.sent[0].context["remainingBalance"], "EUR 40.00")

    def test_payment_notification_failure_is_swallowed(self) -> None:
        loan = self._create_loan()
        payment = self._pay(loan.id, "50")
        mailer = RecordingMailer(fail_for={"robin@example.com"})

        with self.engine.connect() as conn:
            self.assertFalse(notify_payment_received(conn, mailer, payment))


if __name__ == "__main__":
    unittest.main()
