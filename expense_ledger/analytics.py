"""Read-only expense rollups for one account or a whole workspace.

Per-account figures are in the account's native currency. Cross-account
comparisons add a base-currency total so accounts can be ranked against each
other.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.engine import Connection

from expense_ledger.accounts import get_expense_account, list_expense_accounts
from expense_ledger.currency_conversion import ZERO
from expense_ledger.db import to_storage
from expense_ledger.entries import Expense, list_expenses
from expense_ledger.errors import BadRequest
from expense_ledger.membership import require_member
from expense_ledger.rate_table import load_rate_provider
from expense_ledger.reports import amount_in_currency, category_names, team_member_names

TREND_GROUPS = {"day", "week", "month"}


@dataclass(frozen=True)
class CategoryBreakdownItem:
    category_id: int
    category_name: str
    currency: str
    total_amount: Decimal
    count: int


@dataclass(frozen=True)
class TrendPoint:
    period: str
    currency: str
    total: Decimal


@dataclass(frozen=True)
class AccountComparison:
    account_id: int
    account_name: str
    currency: str
    total_amount: Decimal
    base_currency_amount: Decimal
    count: int


@dataclass(frozen=True)
class TeamMemberTotal:
    team_member_id: int
    team_member_name: str
    currency: str
    total_amount: Decimal
    count: int


def period_key(day: date, group_by: str) -> str:
    """Bucket label for ``day``: ISO date, the Sunday opening its week, or ``YYYY-MM``."""
    if group_by == "day":
        return day.isoformat()
    if group_by == "week":
        return (day - timedelta(days=(day.weekday() + 1) % 7)).isoformat()
    return f"{day.year:04d}-{day.month:02d}"


def get_category_breakdown(
    conn: Connection,
    actor_id: int,
    account_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    base_currency: str | None = None,
) -> list[CategoryBreakdownItem]:
    account, entries, provider = _account_entries(
        conn, actor_id, account_id, start_date, end_date, base_currency
    )
    names = category_names(conn, account.organization_id)
    totals: dict[int, Decimal] = {}
    counts: dict[int, int] = {}
    for expense in entries:
        value = amount_in_currency(expense, account.currency, provider)
        totals[expense.category_id] = totals.get(expense.category_id, ZERO) + value
        counts[expense.category_id] = counts.get(expense.category_id, 0) + 1
    items = [
        CategoryBreakdownItem(
            category_id=category_id,
            category_name=names.get(category_id, "Unknown"),
            currency=account.currency,
            total_amount=to_storage(amount),
            count=counts[category_id],
        )
        for category_id, amount in totals.items()
    ]
    return sorted(items, key=lambda item: (-item.total_amount, item.category_name))


def get_trend_analysis(
    conn: Connection,
    actor_id: int,
    account_id: int,
    start_date: date,
    end_date: date,
    group_by: str = "month",
    base_currency: str | None = None,
) -> list[TrendPoint]:
    """Account spending per day, week or month, oldest period first; empty periods are omitted."""
    if group_by not in TREND_GROUPS:
        raise BadRequest("Group by must be 'day', 'week', or 'month'.")
    if end_date < start_date:
        raise BadRequest("End date must not be before start date.")
    account, entries, provider = _account_entries(
        conn, actor_id, account_id, start_date, end_date, base_currency
    )
    totals: dict[str, Decimal] = {}
    for expense in entries:
        key = period_key(expense.date, group_by)
        totals[key] = totals.get(key, ZERO) + amount_in_currency(
            expense, account.currency, provider
        )
    return [
        TrendPoint(period=key, currency=account.currency, total=to_storage(amount))
        for key, amount in sorted(totals.items())
    ]


def compare_accounts(
    conn: Connection,
    actor_id: int,
    organization_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    base_currency: str | None = None,
) -> list[AccountComparison]:
    """Every account that has spending in the window, ranked by its base-currency total."""
    require_member(conn, organization_id, actor_id)
    accounts = {account.id: account for account in list_expense_accounts(conn, organization_id)}
    provider = load_rate_provider(conn, organization_id, base_currency)
    native: dict[int, Decimal] = {}
    base: dict[int, Decimal] = {}
    counts: dict[int, int] = {}
    for expense in list_expenses(conn, organization_id, start_date=start_date, end_date=end_date):
        account = accounts.get(expense.expense_account_id)
        if account is None:
            continue
        native[account.id] = native.get(account.id, ZERO) + amount_in_currency(
            expense, account.currency, provider
        )
        base[account.id] = base.get(account.id, ZERO) + expense.base_currency_amount
        counts[account.id] = counts.get(account.id, 0) + 1
    items = [
        AccountComparison(
            account_id=account_id,
            account_name=accounts[account_id].name,
            currency=accounts[account_id].currency,
            total_amount=to_storage(native[account_id]),
            base_currency_amount=to_storage(base[account_id]),
            count=counts[account_id],
        )
        for account_id in native
    ]
    return sorted(items, key=lambda item: (-item.base_currency_amount, item.account_id))


def get_team_member_expense_summary(
    conn: Connection,
    actor_id: int,
    account_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    base_currency: str | None = None,
) -> list[TeamMemberTotal]:
    account, entries, provider = _account_entries(
        conn, actor_id, account_id, start_date, end_date, base_currency
    )
    names = team_member_names(conn, account.organization_id)
    totals: dict[int, Decimal] = {}
    counts: dict[int, int] = {}
    for expense in entries:
        if expense.team_member_id is None:
            continue
        member_id = expense.team_member_id
        totals[member_id] = totals.get(member_id, ZERO) + amount_in_currency(
            expense, account.currency, provider
        )
        counts[member_id] = counts.get(member_id, 0) + 1
    items = [
        TeamMemberTotal(
            team_member_id=member_id,
            team_member_name=names.get(member_id, "Unknown"),
            currency=account.currency,
            total_amount=to_storage(amount),
            count=counts[member_id],
        )
        for member_id, amount in totals.items()
    ]
    return sorted(items, key=lambda item: (-item.total_amount, item.team_member_name))


def _account_entries(
    conn: Connection,
    actor_id: int,
    account_id: int,
    start_date: date | None,
    end_date: date | None,
    base_currency: str | None,
):
    account = get_expense_account(conn, account_id)
    require_member(conn, account.organization_id, actor_id)
    provider = load_rate_provider(conn, account.organization_id, base_currency)
    entries: list[Expense] = list_expenses(
        conn,
        account.organization_id,
        account_ids=[account_id],
        start_date=start_date,
        end_date=end_date,
    )
    return account, entries, provider
