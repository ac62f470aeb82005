import unittest
from datetime import date
from decimal import Decimal

from expense_ledger.currency_conversion import round_money
from expense_ledger.entries import list_expenses
from expense_ledger.errors import BadRequest, Forbidden, NotFound
from expense_ledger.subscriptions import (
    cancel_subscription,
    create_subscription,
    deactivate_subscription,
    delete_subscription,
    get_subscription,
    get_upcoming_renewals,
    pause_subscription,
    resume_subscription,
    update_reminder_settings,
    update_subscription,
)
from expense_ledger.tests.support import MEMBER_ID, OUTSIDER_ID, OWNER_ID, LedgerTestCase

TODAY = date(2026, 3, 10)


class SubscriptionTests(LedgerTestCase):
    def _create(self, **overrides):
        values = {
            "title": "Design tool",
            "amount": "20",
            "start_date": date(2026, 4, 1),
            "today": TODAY,
        }
        values.update(overrides)
        with self.engine.begin() as conn:
            return create_subscription(
                conn, MEMBER_ID, self.eur_account.id, self.subscription_category, **values
            )

    def test_future_start_renews_one_period_later(self) -> None:
        subscription = self._create()

        self.assertEqual(subscription.renewal_date, date(2026, 5, 1))
        self.assertEqual(subscription.next_reminder_date, date(2026, 4, 24))
        self.assertEqual(subscription.reminder_days, 7)
        self.assertEqual(subscription.currency, "EUR")
        with self.engine.begin() as conn:
            self.assertEqual(list_expenses(conn, self.org_id), [])

    def test_past_start_books_first_charge_and_catches_up(self) -> None:
        subscription = self._create(start_date=date(2026, 1, 31), amount="18")

        self.assertEqual(subscription.renewal_date, date(2026, 3, 28))
        with self.engine.begin() as conn:
            charges = list_expenses(conn, self.org_id)
        self.assertEqual(len(charges), 1)
        self.assertEqual(charges[0].subscription_id, subscription.id)
        self.assertEqual(charges[0].date, date(2026, 1, 31))
        self.assertEqual(round_money(charges[0].base_currency_amount), Decimal("20.00"))

    def test_inactive_subscription_books_nothing(self) -> None:
        self._create(start_date=date(2026, 3, 1), status="inactive")

        with self.engine.begin() as conn:
            self.assertEqual(list_expenses(conn, self.org_id), [])

    def test_explicit_renewal_date_cannot_be_in_the_past(self) -> None:
        with self.assertRaises(BadRequest):
            self._create(renewal_date=date(2026, 3, 9))
        subscription = self._create(renewal_date=TODAY, reminder_days=3)
        self.assertEqual(subscription.next_reminder_date, date(2026, 3, 7))

    def test_reminder_days_bounds(self) -> None:
        with self.assertRaises(BadRequest):
            self._create(reminder_days=0)
        with self.assertRaises(BadRequest):
            self._create(reminder_days=31)

    def test_custom_frequency_requires_interval(self) -> None:
        with self.assertRaises(BadRequest):
            self._create(renewal_frequency="custom")
        subscription = self._create(renewal_frequency="custom", custom_interval_days=10)
        self.assertEqual(subscription.renewal_date, date(2026, 4, 11))
        self.assertEqual(subscription.custom_interval_days, 10)

    def test_outsider_cannot_create(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(Forbidden):
                create_subscription(
                    conn,
                    OUTSIDER_ID,
                    self.eur_account.id,
                    self.subscription_category,
                    "Tool",
                    "5",
                    date(2026, 4, 1),
                    today=TODAY,
                )

    def test_update_reminder_settings_recomputes_date(self) -> None:
        subscription = self._create()
        with self.engine.begin() as conn:
            updated = update_reminder_settings(conn, MEMBER_ID, subscription.id, 14)

        self.assertEqual(updated.next_reminder_date, date(2026, 4, 17))

    def test_pause_and_resume_skips_missed_renewals(self) -> None:
        subscription = self._create(start_date=date(2026, 2, 15))
        with self.engine.begin() as conn:
            paused = pause_subscription(conn, MEMBER_ID, subscription.id)
            resumed = resume_subscription(conn, MEMBER_ID, subscription.id, today=date(2026, 6, 20))

        self.assertEqual(paused.status, "paused")
        self.assertEqual(resumed.status, "active")
        self.assertEqual(resumed.renewal_date, date(2026, 7, 15))
        self.assertEqual(resumed.next_reminder_date, date(2026, 7, 8))

    def test_cancelled_subscription_cannot_resume(self) -> None:
        subscription = self._create()
        with self.engine.begin() as conn:
            cancel_subscription(conn, MEMBER_ID, subscription.id)
            with self.assertRaises(BadRequest):
                resume_subscription(conn, MEMBER_ID, subscription.id, today=TODAY)

    def test_deactivated_subscription_can_be_resumed(self) -> None:
        subscription = self._create()
        with self.engine.begin() as conn:
            inactive = deactivate_subscription(conn, MEMBER_ID, subscription.id)
            with self.assertRaises(BadRequest):
                pause_subscription(conn, MEMBER_ID, subscription.id)
            resumed = resume_subscription(conn, MEMBER_ID, subscription.id, today=TODAY)

        self.assertEqual(inactive.status, "inactive")
        self.assertEqual(resumed.status, "active")
        self.assertEqual(resumed.renewal_date, subscription.renewal_date)

    def test_update_amount_takes_a_new_snapshot(self) -> None:
        subscription = self._create()
        with self.engine.begin() as conn:
            updated = update_subscription(
                conn, OWNER_ID, subscription.id, amount="30", currency="GBP", today=TODAY
            )

        self.assertEqual(updated.currency, "GBP")
        self.assertEqual(updated.amount, Decimal("30"))
        self.assertEqual(round_money(updated.base_currency_amount), Decimal("37.50"))
        self.assertEqual(updated.renewal_date, subscription.renewal_date)
        self.assertEqual(updated.next_reminder_date, subscription.next_reminder_date)

    def test_update_schedule_moves_reminder(self) -> None:
        subscription = self._create(renewal_frequency="custom", custom_interval_days=10)
        with self.engine.begin() as conn:
            updated = update_subscription(
                conn,
                OWNER_ID,
                subscription.id,
                title="  Design suite ",
                renewal_date=date(2026, 6, 1),
                renewal_frequency="monthly",
                reminder_days=3,
                today=TODAY,
            )

        self.assertEqual(updated.title, "Design suite")
        self.assertEqual(updated.renewal_frequency, "monthly")
        self.assertIsNone(updated.custom_interval_days)
        self.assertEqual(updated.renewal_date, date(2026, 6, 1))
        self.assertEqual(updated.next_reminder_date, date(2026, 5, 29))
        self.assertEqual(updated.base_currency_amount, subscription.base_currency_amount)

    def test_update_is_for_managers_and_rejects_past_renewals(self) -> None:
        subscription = self._create()
        with self.engine.begin() as conn:
            with self.assertRaises(Forbidden):
                update_subscription(conn, MEMBER_ID, subscription.id, title="Other", today=TODAY)
            with self.assertRaises(BadRequest):
                update_subscription(
                    conn, OWNER_ID, subscription.id, renewal_date=date(2026, 3, 1), today=TODAY
                )
            with self.assertRaises(BadRequest):
                update_subscription(conn, OWNER_ID, subscription.id, status="paused", today=TODAY)

    def test_delete_keeps_booked_charges(self) -> None:
        subscription = self._create(start_date=date(2026, 1, 31), amount="18")
        with self.engine.begin() as conn:
            with self.assertRaises(Forbidden):
                delete_subscription(conn, MEMBER_ID, subscription.id)
            delete_subscription(conn, OWNER_ID, subscription.id)
            charges = list_expenses(conn, self.org_id)
            with self.assertRaises(NotFound):
                get_subscription(conn, subscription.id)

        self.assertEqual(len(charges), 1)
        self.assertIsNone(charges[0].subscription_id)

    def test_upcoming_renewals_window(self) -> None:
        soon = self._create(start_date=date(2026, 3, 1), renewal_date=date(2026, 3, 20))
        self._create(renewal_date=date(2026, 6, 1))

        with self.engine.begin() as conn:
            upcoming = get_upcoming_renewals(conn, MEMBER_ID, self.org_id, today=TODAY, days=30)

        self.assertEqual([item.id for item in upcoming], [soon.id])


if __name__ == "__main__":
    unittest.main()
