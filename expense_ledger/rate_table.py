from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from expense_ledger.currency_conversion import (
    ZERO,
    CurrencyRate,
    TableRateProvider,
    coerce_decimal,
    normalize_currency,
)
from expense_ledger.db import currency_rates, expense_accounts, expenses, rate_to_storage
from expense_ledger.errors import BadRequest, Conflict, NotFound, RateNotFound
from expense_ledger.log import get_logger
from expense_ledger.membership import require_manager
from expense_ledger.settings import get_settings

LOGGER = get_logger(__name__)

SYMBOL_POSITIONS = {"left", "right"}


def resolve_base_currency(base_currency: str | None = None) -> str:
    return normalize_currency(base_currency or get_settings().base_currency)


def _row_to_rate(row) -> CurrencyRate:
    return CurrencyRate(
        id=row["id"],
        organization_id=row["organization_id"],
        to_currency=row["to_currency"],
        rate=coerce_decimal(row["rate"]),
        symbol=row["symbol"],
        symbol_position=row["symbol_position"] or "left",
        separator=row["separator"] or ",",
        decimal_separator=row["decimal_separator"] or ".",
    )


def list_rates(conn: Connection, organization_id: int) -> list[CurrencyRate]:
    rows = conn.execute(
        select(currency_rates)
        .where(currency_rates.c.organization_id == organization_id)
        .order_by(currency_rates.c.to_currency.asc())
    ).mappings().all()
    return [_row_to_rate(row) for row in rows]


def find_rate(conn: Connection, organization_id: int, to_currency: str) -> CurrencyRate | None:
    row = conn.execute(
        select(currency_rates).where(
            currency_rates.c.organization_id == organization_id,
            currency_rates.c.to_currency == normalize_currency(to_currency),
        )
    ).mappings().first()
    return _row_to_rate(row) if row else None


def get_rate(conn: Connection, organization_id: int, to_currency: str) -> CurrencyRate:
    rate = find_rate(conn, organization_id, to_currency)
    if rate is None:
        raise RateNotFound(normalize_currency(to_currency))
    return rate


def load_rate_provider(
    conn: Connection, organization_id: int, base_currency: str | None = None
) -> TableRateProvider:
    return TableRateProvider.from_rates(
        resolve_base_currency(base_currency), list_rates(conn, organization_id)
    )


def upsert_rate(
    conn: Connection,
    actor_id: int,
    organization_id: int,
    to_currency: str,
    rate: Decimal | int | float | str,
    symbol: str | None = None,
    symbol_position: str | None = None,
    separator: str | None = None,
    decimal_separator: str | None = None,
    base_currency: str | None = None,
    supported_currencies: tuple[str, ...] | None = None,
) -> CurrencyRate:
    """Create or replace the base -> ``to_currency`` rate of an organization."""
    require_manager(conn, organization_id, actor_id, "manage currency rates")
    base = resolve_base_currency(base_currency)
    supported = supported_currencies or get_settings().supported_currencies
    try:
        currency = normalize_currency(to_currency)
        rate_value = coerce_decimal(rate)
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc
    if currency == base:
        raise BadRequest(f"Cannot set conversion rate for base currency ({base}).")
    if currency not in supported:
        raise BadRequest(f"Currency must be one of: {', '.join(supported)}")
    if rate_value <= ZERO:
        raise BadRequest("Rate must be greater than zero.")
    if symbol_position is not None and symbol_position not in SYMBOL_POSITIONS:
        raise BadRequest("Symbol position must be 'left' or 'right'.")

    changes = {
        "rate": rate_to_storage(rate_value),
        "symbol": symbol,
        "symbol_position": symbol_position,
        "separator": separator,
        "decimal_separator": decimal_separator,
        "updated_by": actor_id,
    }
    provided = {key: value for key, value in changes.items() if value is not None}

    existing = find_rate(conn, organization_id, currency)
    if existing is None:
        try:
            conn.execute(
                insert(currency_rates).values(
                    organization_id=organization_id,
                    from_currency=base,
                    to_currency=currency,
                    rate=provided["rate"],
                    symbol=symbol,
                    symbol_position=symbol_position or "left",
                    separator=separator or ",",
                    decimal_separator=decimal_separator or ".",
                    updated_by=actor_id,
                )
            )
        except IntegrityError as exc:
            raise Conflict(f"Currency rate for {currency} was changed concurrently. Please retry.") from exc
    else:
        conn.execute(
            update(currency_rates)
            .where(currency_rates.c.id == existing.id)
            .values(**provided, updated_at=func.now())
        )

    LOGGER.info(
        "Currency rate %s->%s set to %s for organization %s",
        base,
        currency,
        rate_value,
        organization_id,
    )
    return get_rate(conn, organization_id, currency)


def delete_rate(conn: Connection, actor_id: int, rate_id: int) -> None:
    """Remove a rate once no account or expense is denominated in its currency.

    Ledger entries keep their own snapshot so past figures never depend on it.
    """
    row = conn.execute(select(currency_rates).where(currency_rates.c.id == rate_id)).mappings().first()
    if not row:
        raise NotFound("Currency rate not found.")
    organization_id = row["organization_id"]
    currency = row["to_currency"]
    require_manager(conn, organization_id, actor_id, "delete currency rates")

    account_count = conn.execute(
        select(func.count())
        .select_from(expense_accounts)
        .where(
            expense_accounts.c.organization_id == organization_id,
            expense_accounts.c.currency == currency,
        )
    ).scalar_one()
    if account_count:
        raise Conflict(
            f"Cannot delete currency {currency}. It is currently used by {account_count} "
            "expense account(s). Please update or delete those expense accounts first."
        )

    expense_count = conn.execute(
        select(func.count())
        .select_from(
            expenses.join(expense_accounts, expenses.c.expense_account_id == expense_accounts.c.id)
        )
        .where(
            expense_accounts.c.organization_id == organization_id,
            expenses.c.currency == currency,
        )
    ).scalar_one()
    if expense_count:
        raise Conflict(
            f"Cannot delete currency {currency}. It is currently used by {expense_count} "
            "expense(s). Please update or delete those expenses first."
        )

    conn.execute(currency_rates.delete().where(currency_rates.c.id == rate_id))
    LOGGER.info("Currency rate %s deleted for organization %s", currency, organization_id)
