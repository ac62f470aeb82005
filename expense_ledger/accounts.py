from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import insert, select
from sqlalchemy.engine import Connection

from expense_ledger.currency_conversion import normalize_currency
from expense_ledger.db import (
    expense_accounts,
    expense_categories,
    organizations,
    team_member_accounts,
    team_members,
)
from expense_ledger.errors import BadRequest, NotFound
from expense_ledger.log import get_logger
from expense_ledger.membership import require_manager
from expense_ledger.rate_table import load_rate_provider

LOGGER = get_logger(__name__)

DEFAULT_CATEGORIES = [
    "Subscription",
    "Team Salary",
    "One-time",
    "Team Member Loan",
]


@dataclass(frozen=True)
class ExpenseAccount:
    id: int
    organization_id: int
    name: str
    currency: str


@dataclass(frozen=True)
class TeamMember:
    id: int
    organization_id: int
    name: str
    email: str | None
    business_id: int | None
    account_ids: tuple[int, ...]


def get_expense_account(conn: Connection, account_id: int) -> ExpenseAccount:
    row = conn.execute(
        select(expense_accounts).where(expense_accounts.c.id == account_id)
    ).mappings().first()
    if not row:
        raise NotFound("Expense account not found.")
    return ExpenseAccount(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        currency=row["currency"],
    )


def list_expense_accounts(conn: Connection, organization_id: int) -> list[ExpenseAccount]:
    rows = conn.execute(
        select(expense_accounts)
        .where(expense_accounts.c.organization_id == organization_id)
        .order_by(expense_accounts.c.id.asc())
    ).mappings().all()
    return [
        ExpenseAccount(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            currency=row["currency"],
        )
        for row in rows
    ]


def create_expense_account(
    conn: Connection,
    actor_id: int,
    organization_id: int,
    name: str,
    currency: str,
    base_currency: str | None = None,
) -> ExpenseAccount:
    require_manager(conn, organization_id, actor_id, "create expense accounts")
    name = name.strip()
    if not name:
        raise BadRequest("Account name required.")
    try:
        normalized = normalize_currency(currency)
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc
    provider = load_rate_provider(conn, organization_id, base_currency)
    if not provider.has_rate(normalized):
        raise BadRequest(
            f"Conversion rate not found for {normalized}. Please set up the currency rate "
            "in workspace settings."
        )
    ensure_default_categories(conn, organization_id)
    row = conn.execute(
        insert(expense_accounts)
        .values(organization_id=organization_id, name=name, currency=normalized)
        .returning(expense_accounts.c.id)
    ).first()
    LOGGER.info("Expense account %s (%s) created in organization %s", row[0], normalized, organization_id)
    return get_expense_account(conn, row[0])


def ensure_default_categories(conn: Connection, organization_id: int) -> None:
    existing = conn.execute(
        select(expense_categories.c.id)
        .where(expense_categories.c.organization_id == organization_id)
        .limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(expense_categories),
        [{"organization_id": organization_id, "name": name} for name in DEFAULT_CATEGORIES],
    )


def get_category(conn: Connection, category_id: int) -> dict:
    row = conn.execute(
        select(expense_categories).where(expense_categories.c.id == category_id)
    ).mappings().first()
    if not row:
        raise NotFound("Category not found.")
    return dict(row)


def find_category_id(conn: Connection, organization_id: int, name: str) -> int | None:
    return conn.execute(
        select(expense_categories.c.id).where(
            expense_categories.c.organization_id == organization_id,
            expense_categories.c.name == name,
        )
    ).scalar_one_or_none()


def create_team_member(
    conn: Connection,
    actor_id: int,
    organization_id: int,
    name: str,
    email: str | None = None,
    account_ids: Iterable[int] = (),
) -> TeamMember:
    require_manager(conn, organization_id, actor_id, "add team members")
    name = name.strip()
    if not name:
        raise BadRequest("Team member name required.")
    ids = list(dict.fromkeys(account_ids))
    for account_id in ids:
        account = get_expense_account(conn, account_id)
        if account.organization_id != organization_id:
            raise BadRequest("Expense account does not belong to this workspace.")

    row = conn.execute(
        insert(team_members)
        .values(
            organization_id=organization_id,
            business_id=ids[0] if ids else None,
            name=name,
            email=email.strip() if email else None,
        )
        .returning(team_members.c.id)
    ).first()
    if ids:
        conn.execute(
            insert(team_member_accounts),
            [{"team_member_id": row[0], "account_id": account_id} for account_id in ids],
        )
    return get_team_member(conn, row[0])


def get_team_member(conn: Connection, team_member_id: int) -> TeamMember:
    row = conn.execute(
        select(team_members).where(team_members.c.id == team_member_id)
    ).mappings().first()
    if not row:
        raise NotFound("Team member not found.")
    account_ids = conn.execute(
        select(team_member_accounts.c.account_id)
        .where(team_member_accounts.c.team_member_id == team_member_id)
        .order_by(team_member_accounts.c.account_id.asc())
    ).scalars().all()
    return TeamMember(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        email=row["email"],
        business_id=row["business_id"],
        account_ids=tuple(account_ids),
    )


def is_team_member_associated(conn: Connection, team_member_id: int, account_id: int) -> bool:
    member = get_team_member(conn, team_member_id)
    return member.business_id == account_id or account_id in member.account_ids


@dataclass(frozen=True)
class Organization:
    id: int
    name: str
    slug: str


def get_organization(conn: Connection, organization_id: int) -> Organization:
    row = conn.execute(
        select(organizations).where(organizations.c.id == organization_id)
    ).mappings().first()
    if not row:
        raise NotFound("Organization not found.")
    return Organization(id=row["id"], name=row["name"], slug=row["slug"])


def list_organizations(conn: Connection) -> list[Organization]:
    rows = conn.execute(select(organizations).order_by(organizations.c.id.asc())).mappings().all()
    return [Organization(id=row["id"], name=row["name"], slug=row["slug"]) for row in rows]
