import unittest
from decimal import Decimal

from sqlalchemy import insert

from expense_ledger.accounts import create_expense_account, find_category_id
from expense_ledger.db import build_engine, currency_rates, init_db, members, organizations

OWNER_ID = 1
MEMBER_ID = 2
OUTSIDER_ID = 99


def make_engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    return engine


def add_organization(conn, name: str, slug: str) -> int:
    return conn.execute(
        insert(organizations).values(name=name, slug=slug).returning(organizations.c.id)
    ).scalar_one()


def add_member(conn, organization_id: int, user_id: int, role: str, email: str | None) -> None:
    conn.execute(
        insert(members).values(
            organization_id=organization_id, user_id=user_id, role=role, email=email
        )
    )


def add_rate(conn, organization_id: int, currency: str, rate: str) -> None:
    conn.execute(
        insert(currency_rates).values(
            organization_id=organization_id,
            from_currency="USD",
            to_currency=currency,
            rate=Decimal(rate),
        )
    )


class LedgerTestCase(unittest.TestCase):
    """Workspace with USD base, EUR at 0.90 and GBP at 0.80, plus EUR and USD accounts."""

    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            self.org_id = add_organization(conn, "Acme", "acme")
            add_member(conn, self.org_id, OWNER_ID, "owner", "owner@example.com")
            add_member(conn, self.org_id, MEMBER_ID, "member", "member@example.com")
            add_rate(conn, self.org_id, "EUR", "0.90")
            add_rate(conn, self.org_id, "GBP", "0.80")
            self.eur_account = create_expense_account(
                conn, OWNER_ID, self.org_id, "Berlin Studio", "EUR"
            )
            self.usd_account = create_expense_account(conn, OWNER_ID, self.org_id, "HQ", "USD")
            self.subscription_category = find_category_id(conn, self.org_id, "Subscription")
            self.one_time_category = find_category_id(conn, self.org_id, "One-time")
            self.loan_category = find_category_id(conn, self.org_id, "Team Member Loan")

    def tearDown(self) -> None:
        self.engine.dispose()
