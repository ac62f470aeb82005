import unittest
from datetime import date

from fastapi.testclient import TestClient

from expense_ledger.accounts import create_team_member
from expense_ledger.main import app, get_engine, get_mailer, get_rate_limiter
from expense_ledger.mailer import RecordingMailer
from expense_ledger.rate_limit import InMemoryCounterStore, RateLimiter
from expense_ledger.settings import Settings, get_settings
from expense_ledger.tests.support import MEMBER_ID, OUTSIDER_ID, OWNER_ID, LedgerTestCase

CRON_SECRET = "s3cret"


class ApiTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.mailer = RecordingMailer()
        self.settings = Settings(cron_secret=CRON_SECRET, app_base_url="https://app.example.com")
        self.limiter = RateLimiter(InMemoryCounterStore(), max_requests=2, window_seconds=3600)
        app.dependency_overrides[get_engine] = lambda: self.engine
        app.dependency_overrides[get_mailer] = lambda: self.mailer
        app.dependency_overrides[get_settings] = lambda: self.settings
        app.dependency_overrides[get_rate_limiter] = lambda: self.limiter
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)
        with self.engine.begin() as conn:
            self.borrower = create_team_member(
                conn,
                OWNER_ID,
                self.org_id,
                "Robin",
                email="robin@example.com",
                account_ids=[self.eur_account.id],
            )

    def as_user(self, user_id: int) -> dict:
        return {"x-user-id": str(user_id)}

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_missing_identity_is_unauthorized(self) -> None:
        response = self.client.get(f"/organizations/{self.org_id}/expense-accounts")

        self.assertEqual(response.status_code, 401)

    def test_loan_repayment_flow(self) -> None:
        created = self.client.post(
            "/loans",
            json={
                "team_member_id": self.borrower.id,
                "business_id": self.eur_account.id,
                "amount": "100",
                "currency": "USD",
                "loan_date": "2026-03-01",
            },
            headers=self.as_user(OWNER_ID),
        )
        self.assertEqual(created.status_code, 200, created.text)
        loan = created.json()
        self.assertEqual(loan["amount"], "100.00")
        self.assertEqual(loan["current_balance"], "90.00")
        self.assertEqual(loan["currency"], "USD")

        paid = self.client.post(
            f"/loans/{loan['id']}/payments",
            json={"amount": "50", "currency": "EUR", "payment_date": "2026-03-10"},
            headers=self.as_user(OWNER_ID),
        )
        self.assertEqual(paid.status_code, 200, paid.text)
        self.assertEqual([item.to for item in self.mailer.sent], ["robin@example.com"])

        over = self.client.post(
            f"/loans/{loan['id']}/payments",
            json={"amount": "45", "currency": "EUR", "payment_date": "2026-03-11"},
            headers=self.as_user(OWNER_ID),
        )
        self.assertEqual(over.status_code, 400)

        history = self.client.get(f"/loans/{loan['id']}", headers=self.as_user(MEMBER_ID))
        self.assertEqual(history.status_code, 200)
        body = history.json()
        self.assertEqual(body["loan"]["current_balance"], "40.00")
        self.assertEqual(body["total_paid"], "50.00")
        self.assertEqual(len(body["payments"]), 1)

    def test_invalid_loan_amount(self) -> None:
        response = self.client.post(
            "/loans",
            json={
                "team_member_id": self.borrower.id,
                "business_id": self.eur_account.id,
                "amount": "0",
                "loan_date": "2026-03-01",
            },
            headers=self.as_user(OWNER_ID),
        )

        self.assertEqual(response.status_code, 400)

    def test_error_status_mapping(self) -> None:
        forbidden = self.client.get(
            f"/organizations/{self.org_id}/expense-accounts", headers=self.as_user(OUTSIDER_ID)
        )
        missing = self.client.get("/loans/9999", headers=self.as_user(OWNER_ID))
        missing_rate = self.client.post(
            f"/expense-accounts/{self.usd_account.id}/expenses",
            json={
                "category_id": self.one_time_category,
                "amount": "10",
                "currency": "CAD",
                "date": "2026-03-02",
            },
            headers=self.as_user(MEMBER_ID),
        )

        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing_rate.status_code, 400)
        self.assertIn("CAD", missing_rate.json()["detail"])

    def test_expense_and_summary(self) -> None:
        created = self.client.post(
            f"/expense-accounts/{self.eur_account.id}/expenses",
            json={
                "category_id": self.one_time_category,
                "amount": "40",
                "currency": "GBP",
                "date": date.today().isoformat(),
                "title": "Train",
            },
            headers=self.as_user(MEMBER_ID),
        )
        self.assertEqual(created.status_code, 200, created.text)
        self.assertEqual(created.json()["base_currency_amount"], "50.00")

        summary = self.client.get(
            f"/organizations/{self.org_id}/expenses/summary",
            params={"account_ids": [self.eur_account.id]},
            headers=self.as_user(MEMBER_ID),
        )
        self.assertEqual(summary.status_code, 200)
        self.assertEqual(summary.json()["currency"], "EUR")
        self.assertEqual(summary.json()["last_30_days"], "45.00")

    def test_expense_edit_and_delete(self) -> None:
        created = self.client.post(
            f"/expense-accounts/{self.eur_account.id}/expenses",
            json={
                "category_id": self.one_time_category,
                "amount": "45",
                "date": "2026-03-02",
                "team_member_id": self.borrower.id,
            },
            headers=self.as_user(MEMBER_ID),
        ).json()

        refused = self.client.put(
            f"/expenses/{created['id']}", json={"title": "Mine"}, headers=self.as_user(MEMBER_ID)
        )
        edited = self.client.put(
            f"/expenses/{created['id']}",
            json={"amount": "90", "date": "2026-03-04", "title": "Desk"},
            headers=self.as_user(OWNER_ID),
        )
        self.assertEqual(refused.status_code, 403)
        self.assertEqual(edited.status_code, 200, edited.text)
        self.assertEqual(edited.json()["date"], "2026-03-04")
        self.assertEqual(edited.json()["base_currency_amount"], "100.00")

        trends = self.client.get(
            f"/expense-accounts/{self.eur_account.id}/analytics/trends",
            params={"start_date": "2026-03-01", "end_date": "2026-03-31", "group_by": "day"},
            headers=self.as_user(MEMBER_ID),
        )
        team = self.client.get(
            f"/expense-accounts/{self.eur_account.id}/analytics/team-members",
            headers=self.as_user(MEMBER_ID),
        )
        compared = self.client.get(
            f"/organizations/{self.org_id}/analytics/accounts", headers=self.as_user(MEMBER_ID)
        )
        self.assertEqual(
            trends.json(), [{"period": "2026-03-04", "currency": "EUR", "total": "90.00"}]
        )
        self.assertEqual(team.json()[0]["team_member_name"], "Robin")
        self.assertEqual(compared.json()[0]["base_currency_amount"], "100.00")

        deleted = self.client.delete(f"/expenses/{created['id']}", headers=self.as_user(OWNER_ID))
        breakdown = self.client.get(
            f"/expense-accounts/{self.eur_account.id}/analytics/category-breakdown",
            headers=self.as_user(MEMBER_ID),
        )
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(breakdown.json(), [])

    def test_subscription_edit_and_delete(self) -> None:
        created = self.client.post(
            f"/expense-accounts/{self.eur_account.id}/subscriptions",
            json={
                "category_id": self.subscription_category,
                "title": "Hosting",
                "amount": "20",
                "start_date": "2099-01-01",
            },
            headers=self.as_user(MEMBER_ID),
        ).json()

        edited = self.client.put(
            f"/subscriptions/{created['id']}",
            json={"reminder_days": 3, "amount": "25"},
            headers=self.as_user(OWNER_ID),
        )
        self.assertEqual(edited.status_code, 200, edited.text)
        self.assertEqual(edited.json()["amount"], "25.00")
        self.assertEqual(edited.json()["reminder_days"], 3)

        deleted = self.client.delete(
            f"/subscriptions/{created['id']}", headers=self.as_user(OWNER_ID)
        )
        upcoming = self.client.get(
            f"/organizations/{self.org_id}/subscriptions/upcoming",
            params={"days": 365},
            headers=self.as_user(MEMBER_ID),
        )
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(upcoming.json(), [])

    def test_conversion_preview(self) -> None:
        updated = self.client.put(
            f"/organizations/{self.org_id}/currency-rates/EUR",
            json={"rate": "0.90", "symbol": "€", "symbol_position": "left"},
            headers=self.as_user(OWNER_ID),
        )
        self.assertEqual(updated.status_code, 200, updated.text)

        response = self.client.post(
            f"/organizations/{self.org_id}/conversions/preview",
            json={"amount": "1000", "from_currency": "USD", "to_currency": "EUR"},
            headers=self.as_user(MEMBER_ID),
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["amount"], "900.00")
        self.assertEqual(response.json()["formatted"], "€900.00")

    def test_members_cannot_change_rates(self) -> None:
        response = self.client.put(
            f"/organizations/{self.org_id}/currency-rates/EUR",
            json={"rate": "0.95"},
            headers=self.as_user(MEMBER_ID),
        )

        self.assertEqual(response.status_code, 403)

    def test_cron_requires_secret(self) -> None:
        missing = self.client.get("/cron/expense-reminders")
        wrong = self.client.get(
            "/cron/expense-reminders", headers={"Authorization": "Bearer nope"}
        )

        self.assertEqual(missing.status_code, 401)
        self.assertEqual(wrong.status_code, 401)

    def test_cron_runs_with_secret(self) -> None:
        response = self.client.get(
            "/cron/expense-reminders", headers={"Authorization": f"Bearer {CRON_SECRET}"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "reminders_sent": 0})

    def test_cron_is_rate_limited(self) -> None:
        headers = {"Authorization": f"Bearer {CRON_SECRET}", "x-forwarded-for": "203.0.113.5"}
        for _ in range(2):
            self.client.get("/cron/generate-monthly-reports", headers=headers)

        response = self.client.get("/cron/generate-monthly-reports", headers=headers)

        self.assertEqual(response.status_code, 429)

    def test_cron_disabled_without_configured_secret(self) -> None:
        self.settings = Settings(cron_secret="")

        response = self.client.get(
            "/cron/generate-monthly-reports", headers={"Authorization": "Bearer "}
        )

        self.assertEqual(response.status_code, 401)


if __name__ == "__main__":
    unittest.main()
