"""Money entries: the shared amount/currency/snapshot shape of expenses,
subscriptions, loans and loan payments.

Every entry keeps the amount the user typed, the input -> base conversion
rate used at creation time and the base-currency amount computed once from
it. The base-currency amount is never recomputed from later rates, so
historical figures survive rate edits.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection

from expense_ledger.accounts import get_category, get_expense_account, is_team_member_associated
from expense_ledger.currency_conversion import (
    ZERO,
    TableRateProvider,
    coerce_decimal,
    conversion_rate_to_base,
    convert_amount,
    convert_with_explicit_rate,
    normalize_currency,
)
from expense_ledger.db import expense_accounts, expenses, rate_to_storage, to_storage
from expense_ledger.errors import BadRequest, NotFound
from expense_ledger.log import get_logger
from expense_ledger.membership import require_manager, require_member
from expense_ledger.rate_table import load_rate_provider

LOGGER = get_logger(__name__)

RATE_TYPES = {"default", "custom"}


@dataclass(frozen=True)
class MoneyEntry:
    amount: Decimal
    currency: str
    rate_type: str
    conversion_rate: Decimal | None
    base_currency_amount: Decimal
    account_amount: Decimal
    account_currency: str

    def storage_values(self) -> dict:
        return {
            "amount": to_storage(self.amount),
            "currency": self.currency,
            "rate_type": self.rate_type,
            "conversion_rate": rate_to_storage(self.conversion_rate),
            "base_currency_amount": to_storage(self.base_currency_amount),
        }


@dataclass(frozen=True)
class Expense:
    id: int
    expense_account_id: int
    category_id: int
    amount: Decimal
    currency: str
    conversion_rate: Decimal | None
    base_currency_amount: Decimal
    date: date
    title: str | None = None
    description: str | None = None
    team_member_id: int | None = None
    subscription_id: int | None = None
    status: str = "active"
    rate_type: str = "default"


def validate_rate_type(rate_type: str | None) -> str:
    normalized = (rate_type or "default").strip().lower()
    if normalized not in RATE_TYPES:
        raise ValueError("Rate type must be 'default' or 'custom'.")
    return normalized


def resolve_money_entry(
    amount: Decimal | int | float | str,
    currency: str,
    account_currency: str,
    rate_provider: TableRateProvider,
    rate_type: str | None = "default",
    custom_rate: Decimal | int | float | str | None = None,
) -> MoneyEntry:
    """Turn a user-entered amount into its base and account currency values.

    ``custom_rate`` is the input -> base multiplier chosen by the user instead
    of the table rate. Raises ``RateNotFound`` naming the missing currency.
    """
    try:
        coerced_amount = coerce_decimal(amount)
        normalized_currency = normalize_currency(currency)
        normalized_account_currency = normalize_currency(account_currency)
        normalized_rate_type = validate_rate_type(rate_type)
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc
    if coerced_amount <= ZERO:
        raise BadRequest("Amount must be greater than zero.")

    base_currency = rate_provider.base_currency
    if normalized_currency == base_currency:
        return MoneyEntry(
            amount=coerced_amount,
            currency=normalized_currency,
            rate_type="default",
            conversion_rate=None,
            base_currency_amount=coerced_amount,
            account_amount=convert_amount(
                coerced_amount, base_currency, normalized_account_currency, rate_provider
            ),
            account_currency=normalized_account_currency,
        )

    if normalized_rate_type == "custom":
        if custom_rate is None:
            raise BadRequest("A custom rate is required when rate type is 'custom'.")
        try:
            conversion_rate = coerce_decimal(custom_rate)
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc
        if conversion_rate <= ZERO:
            raise BadRequest("Custom rate must be greater than zero.")
        base_amount = coerced_amount * conversion_rate
        account_amount = convert_with_explicit_rate(
            coerced_amount,
            normalized_currency,
            normalized_account_currency,
            rate_provider,
            conversion_rate,
        )
    else:
        conversion_rate = conversion_rate_to_base(normalized_currency, rate_provider)
        base_amount = convert_amount(
            coerced_amount, normalized_currency, base_currency, rate_provider
        )
        account_amount = convert_amount(
            coerced_amount, normalized_currency, normalized_account_currency, rate_provider
        )

    return MoneyEntry(
        amount=coerced_amount,
        currency=normalized_currency,
        rate_type=normalized_rate_type,
        conversion_rate=conversion_rate,
        base_currency_amount=base_amount,
        account_amount=account_amount,
        account_currency=normalized_account_currency,
    )


def account_amount_for(
    base_currency_amount: Decimal | int | float | str,
    account_currency: str,
    rate_provider: TableRateProvider,
) -> Decimal:
    """Derive an entry's value in its account's native currency from the stored snapshot."""
    return convert_amount(
        base_currency_amount, rate_provider.base_currency, account_currency, rate_provider
    )


def create_expense(
    conn: Connection,
    actor_id: int,
    expense_account_id: int,
    category_id: int,
    amount: Decimal | int | float | str,
    expense_date: date,
    currency: str | None = None,
    rate_type: str | None = "default",
    custom_rate: Decimal | int | float | str | None = None,
    title: str | None = None,
    description: str | None = None,
    team_member_id: int | None = None,
    subscription_id: int | None = None,
    base_currency: str | None = None,
) -> Expense:
    account = get_expense_account(conn, expense_account_id)
    require_member(conn, account.organization_id, actor_id)
    category = get_category(conn, category_id)
    if category["organization_id"] != account.organization_id:
        raise BadRequest("Category does not belong to this workspace.")
    if team_member_id is not None and not is_team_member_associated(
        conn, team_member_id, expense_account_id
    ):
        raise BadRequest("Team member is not associated with this expense account.")

    provider = load_rate_provider(conn, account.organization_id, base_currency)
    entry = resolve_money_entry(
        amount,
        currency or account.currency,
        account.currency,
        provider,
        rate_type=rate_type,
        custom_rate=custom_rate,
    )
    row = conn.execute(
        insert(expenses)
        .values(
            expense_account_id=expense_account_id,
            category_id=category_id,
            team_member_id=team_member_id,
            subscription_id=subscription_id,
            title=title.strip() if title else None,
            description=description,
            date=expense_date,
            created_by=actor_id,
            **entry.storage_values(),
        )
        .returning(expenses.c.id)
    ).first()
    return get_expense(conn, row[0])


def update_expense(
    conn: Connection,
    actor_id: int,
    expense_id: int,
    category_id: int | None = None,
    amount: Decimal | int | float | str | None = None,
    expense_date: date | None = None,
    currency: str | None = None,
    rate_type: str | None = None,
    custom_rate: Decimal | int | float | str | None = None,
    title: str | None = None,
    description: str | None = None,
    team_member_id: int | None = None,
    base_currency: str | None = None,
) -> Expense:
    """Edit an expense; ``None`` leaves a field unchanged.

    Changing the amount, currency or rate takes a fresh snapshot at today's
    rates. Edits that leave those alone keep the stored base-currency amount.
    """
    expense = get_expense(conn, expense_id)
    account = get_expense_account(conn, expense.expense_account_id)
    require_manager(conn, account.organization_id, actor_id, "update expenses")

    values: dict = {}
    if category_id is not None:
        category = get_category(conn, category_id)
        if category["organization_id"] != account.organization_id:
            raise BadRequest("Category does not belong to this workspace.")
        values["category_id"] = category_id
    if team_member_id is not None:
        if not is_team_member_associated(conn, team_member_id, expense.expense_account_id):
            raise BadRequest("Team member is not associated with this expense account.")
        values["team_member_id"] = team_member_id
    if expense_date is not None:
        values["date"] = expense_date
    if title is not None:
        values["title"] = title.strip() or None
    if description is not None:
        values["description"] = description

    if any(item is not None for item in (amount, currency, rate_type, custom_rate)):
        next_rate_type = rate_type or expense.rate_type
        same_custom_rate = next_rate_type == expense.rate_type == "custom" and currency is None
        if custom_rate is None and same_custom_rate:
            custom_rate = expense.conversion_rate
        provider = load_rate_provider(conn, account.organization_id, base_currency)
        entry = resolve_money_entry(
            amount if amount is not None else expense.amount,
            currency or expense.currency,
            account.currency,
            provider,
            rate_type=next_rate_type,
            custom_rate=custom_rate,
        )
        values.update(entry.storage_values())

    if values:
        conn.execute(update(expenses).where(expenses.c.id == expense_id).values(**values))
        LOGGER.info("Expense %s updated by user %s: %s", expense_id, actor_id, sorted(values))
    return get_expense(conn, expense_id)


def delete_expense(conn: Connection, actor_id: int, expense_id: int) -> None:
    expense = get_expense(conn, expense_id)
    account = get_expense_account(conn, expense.expense_account_id)
    require_manager(conn, account.organization_id, actor_id, "delete expenses")
    conn.execute(delete(expenses).where(expenses.c.id == expense_id))
    LOGGER.info("Expense %s deleted by user %s", expense_id, actor_id)


def get_expense(conn: Connection, expense_id: int) -> Expense:
    row = conn.execute(select(expenses).where(expenses.c.id == expense_id)).mappings().first()
    if not row:
        raise NotFound("Expense not found.")
    return _row_to_expense(row)


def list_expenses(
    conn: Connection,
    organization_id: int,
    account_ids: list[int] | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[Expense]:
    conditions = [
        expense_accounts.c.organization_id == organization_id,
        expenses.c.status != "cancelled",
    ]
    if account_ids:
        conditions.append(expenses.c.expense_account_id.in_(account_ids))
    if start_date is not None:
        conditions.append(expenses.c.date >= start_date)
    if end_date is not None:
        conditions.append(expenses.c.date <= end_date)
    rows = conn.execute(
        select(expenses)
        .select_from(
            expenses.join(expense_accounts, expenses.c.expense_account_id == expense_accounts.c.id)
        )
        .where(*conditions)
        .order_by(expenses.c.date.asc(), expenses.c.id.asc())
    ).mappings().all()
    return [_row_to_expense(row) for row in rows]


def _row_to_expense(row) -> Expense:
    return Expense(
        id=row["id"],
        expense_account_id=row["expense_account_id"],
        category_id=row["category_id"],
        amount=coerce_decimal(row["amount"]),
        currency=row["currency"],
        conversion_rate=(
            coerce_decimal(row["conversion_rate"]) if row["conversion_rate"] is not None else None
        ),
        base_currency_amount=coerce_decimal(row["base_currency_amount"]),
        date=row["date"],
        title=row["title"],
        description=row["description"],
        team_member_id=row["team_member_id"],
        subscription_id=row["subscription_id"],
        status=row["status"],
        rate_type=row["rate_type"],
    )
