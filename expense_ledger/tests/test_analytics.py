import unittest
from datetime import date
from decimal import Decimal

from expense_ledger.accounts import create_team_member
from expense_ledger.analytics import (
    compare_accounts,
    get_category_breakdown,
    get_team_member_expense_summary,
    get_trend_analysis,
    period_key,
)
from expense_ledger.currency_conversion import round_money
from expense_ledger.entries import create_expense
from expense_ledger.errors import BadRequest, Forbidden
from expense_ledger.tests.support import MEMBER_ID, OUTSIDER_ID, OWNER_ID, LedgerTestCase


class AnalyticsTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        with self.engine.begin() as conn:
            self.robin = create_team_member(
                conn, OWNER_ID, self.org_id, "Robin", account_ids=[self.eur_account.id]
            )
        self._expense(self.eur_account, "45", date(2026, 3, 2), team_member_id=self.robin.id)
        self._expense(self.eur_account, "40", date(2026, 3, 3), currency="GBP")
        self._expense(
            self.eur_account, "9", date(2026, 3, 9), category=self.subscription_category
        )
        self._expense(self.eur_account, "18", date(2026, 4, 1), team_member_id=self.robin.id)
        self._expense(self.usd_account, "20", date(2026, 3, 5))

    def _expense(self, account, amount, day, currency=None, category=None, team_member_id=None):
        with self.engine.begin() as conn:
            return create_expense(
                conn,
                MEMBER_ID,
                account.id,
                category or self.one_time_category,
                amount,
                day,
                currency=currency,
                team_member_id=team_member_id,
            )

    def test_category_breakdown_in_account_currency(self) -> None:
        with self.engine.connect() as conn:
            items = get_category_breakdown(conn, MEMBER_ID, self.eur_account.id)

        self.assertEqual(
            [(item.category_name, round_money(item.total_amount), item.count) for item in items],
            [("One-time", Decimal("108.00"), 3), ("Subscription", Decimal("9.00"), 1)],
        )
        self.assertEqual({item.currency for item in items}, {"EUR"})

    def test_category_breakdown_respects_dates(self) -> None:
        with self.engine.connect() as conn:
            items = get_category_breakdown(
                conn,
                MEMBER_ID,
                self.eur_account.id,
                start_date=date(2026, 4, 1),
                end_date=date(2026, 4, 30),
            )

        self.assertEqual([(item.category_name, item.count) for item in items], [("One-time", 1)])

    def test_monthly_trend(self) -> None:
        with self.engine.connect() as conn:
            points = get_trend_analysis(
                conn, MEMBER_ID, self.eur_account.id, date(2026, 3, 1), date(2026, 4, 30)
            )

        self.assertEqual(
            [(point.period, round_money(point.total)) for point in points],
            [("2026-03", Decimal("99.00")), ("2026-04", Decimal("18.00"))],
        )

    def test_weekly_trend_starts_on_sunday(self) -> None:
        with self.engine.connect() as conn:
            points = get_trend_analysis(
                conn,
                MEMBER_ID,
                self.eur_account.id,
                date(2026, 3, 1),
                date(2026, 4, 30),
                group_by="week",
            )

        self.assertEqual(
            [(point.period, round_money(point.total)) for point in points],
            [
                ("2026-03-01", Decimal("90.00")),
                ("2026-03-08", Decimal("9.00")),
                ("2026-03-29", Decimal("18.00")),
            ],
        )

    def test_daily_trend_and_period_keys(self) -> None:
        with self.engine.connect() as conn:
            points = get_trend_analysis(
                conn,
                MEMBER_ID,
                self.eur_account.id,
                date(2026, 3, 1),
                date(2026, 3, 31),
                group_by="day",
            )

        self.assertEqual(
            [point.period for point in points], ["2026-03-02", "2026-03-03", "2026-03-09"]
        )
        self.assertEqual(period_key(date(2026, 3, 1), "week"), "2026-03-01")
        self.assertEqual(period_key(date(2026, 3, 7), "week"), "2026-03-01")
        self.assertEqual(period_key(date(2026, 12, 31), "month"), "2026-12")

    def test_trend_validates_grouping(self) -> None:
        with self.engine.connect() as conn:
            with self.assertRaises(BadRequest):
                get_trend_analysis(
                    conn,
                    MEMBER_ID,
                    self.eur_account.id,
                    date(2026, 3, 1),
                    date(2026, 3, 31),
                    group_by="quarter",
                )
            with self.assertRaises(BadRequest):
                get_trend_analysis(
                    conn, MEMBER_ID, self.eur_account.id, date(2026, 3, 31), date(2026, 3, 1)
                )

    def test_compare_accounts_ranks_by_base_currency(self) -> None:
        with self.engine.connect() as conn:
            items = compare_accounts(
                conn,
                MEMBER_ID,
                self.org_id,
                start_date=date(2026, 3, 1),
                end_date=date(2026, 3, 31),
            )

        self.assertEqual(
            [
                (
                    item.account_name,
                    item.currency,
                    round_money(item.total_amount),
                    round_money(item.base_currency_amount),
                    item.count,
                )
                for item in items
            ],
            [
                ("Berlin Studio", "EUR", Decimal("99.00"), Decimal("110.00"), 3),
                ("HQ", "USD", Decimal("20.00"), Decimal("20.00"), 1),
            ],
        )

    def test_team_member_summary_skips_unassigned_expenses(self) -> None:
        with self.engine.connect() as conn:
            items = get_team_member_expense_summary(conn, MEMBER_ID, self.eur_account.id)

        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].team_member_name, "Robin")
        self.assertEqual(round_money(items[0].total_amount), Decimal("63.00"))
        self.assertEqual(items[0].count, 2)

    def test_outsiders_see_nothing(self) -> None:
        with self.engine.connect() as conn:
            with self.assertRaises(Forbidden):
                get_category_breakdown(conn, OUTSIDER_ID, self.eur_account.id)
            with self.assertRaises(Forbidden):
                compare_accounts(conn, OUTSIDER_ID, self.org_id)


if __name__ == "__main__":
    unittest.main()
