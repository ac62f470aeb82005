from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection

from expense_ledger.accounts import get_category, get_expense_account
from expense_ledger.currency_conversion import coerce_decimal
from expense_ledger.db import expense_accounts, expense_reminders, expenses, subscriptions
from expense_ledger.entries import resolve_money_entry
from expense_ledger.errors import BadRequest, NotFound
from expense_ledger.log import get_logger
from expense_ledger.membership import require_manager, require_member
from expense_ledger.rate_table import load_rate_provider
from expense_ledger.recurrence import (
    next_renewal_after,
    reminder_date_for,
    validate_custom_interval,
    validate_frequency,
)

LOGGER = get_logger(__name__)

SUBSCRIPTION_STATUSES = {"active", "paused", "cancelled", "inactive"}
MIN_REMINDER_DAYS = 1
MAX_REMINDER_DAYS = 30


@dataclass(frozen=True)
class Subscription:
    id: int
    expense_account_id: int
    category_id: int | None
    title: str
    amount: Decimal
    currency: str
    rate_type: str
    conversion_rate: Decimal | None
    base_currency_amount: Decimal
    start_date: date
    renewal_date: date
    renewal_frequency: str
    custom_interval_days: int | None
    reminder_days: int
    next_reminder_date: date
    last_reminder_date: date | None
    status: str
    description: str | None = None


def validate_reminder_days(reminder_days: int) -> int:
    if reminder_days < MIN_REMINDER_DAYS or reminder_days > MAX_REMINDER_DAYS:
        raise ValueError(
            f"Reminder days must be between {MIN_REMINDER_DAYS} and {MAX_REMINDER_DAYS}."
        )
    return reminder_days


def create_subscription(
    conn: Connection,
    actor_id: int,
    expense_account_id: int,
    category_id: int,
    title: str,
    amount: Decimal | int | float | str,
    start_date: date,
    currency: str | None = None,
    rate_type: str | None = "default",
    custom_rate: Decimal | int | float | str | None = None,
    renewal_frequency: str = "monthly",
    renewal_date: date | None = None,
    custom_interval_days: int | None = None,
    reminder_days: int = 7,
    status: str = "active",
    description: str | None = None,
    today: date | None = None,
    base_currency: str | None = None,
) -> Subscription:
    """Create a subscription; a start date on or before today also books the first charge."""
    today = today or date.today()
    account = get_expense_account(conn, expense_account_id)
    require_member(conn, account.organization_id, actor_id)
    category = get_category(conn, category_id)
    if category["organization_id"] != account.organization_id:
        raise BadRequest("Category does not belong to this workspace.")
    title = title.strip()
    if not title:
        raise BadRequest("Title is required for subscriptions.")
    try:
        frequency = validate_frequency(renewal_frequency)
        interval = validate_custom_interval(frequency, custom_interval_days)
        reminder_days = validate_reminder_days(reminder_days)
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc
    if status not in {"active", "inactive"}:
        raise BadRequest("New subscriptions must be 'active' or 'inactive'.")

    if renewal_date is not None:
        if renewal_date < today:
            raise BadRequest(
                "Renewal date cannot be in the past. Please select today or a future date."
            )
        final_renewal_date = renewal_date
    else:
        final_renewal_date = next_renewal_after(start_date, frequency, today, interval)

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
        insert(subscriptions)
        .values(
            expense_account_id=expense_account_id,
            category_id=category_id,
            title=title,
            description=description,
            start_date=start_date,
            renewal_date=final_renewal_date,
            renewal_frequency=frequency,
            custom_interval_days=interval,
            reminder_days=reminder_days,
            next_reminder_date=reminder_date_for(final_renewal_date, reminder_days),
            status=status,
            created_by=actor_id,
            **entry.storage_values(),
        )
        .returning(subscriptions.c.id)
    ).first()
    subscription_id = row[0]

    if status == "active" and start_date <= today:
        conn.execute(
            insert(expenses).values(
                expense_account_id=expense_account_id,
                category_id=category_id,
                subscription_id=subscription_id,
                title=title,
                description=description,
                date=start_date,
                created_by=actor_id,
                **entry.storage_values(),
            )
        )
    LOGGER.info(
        "Subscription %s created on account %s, renews %s (%s)",
        subscription_id,
        expense_account_id,
        final_renewal_date.isoformat(),
        frequency,
    )
    return get_subscription(conn, subscription_id)


def get_subscription(conn: Connection, subscription_id: int) -> Subscription:
    row = conn.execute(
        select(subscriptions).where(subscriptions.c.id == subscription_id)
    ).mappings().first()
    if not row:
        raise NotFound("Subscription not found.")
    return row_to_subscription(row)


def cancel_subscription(conn: Connection, actor_id: int, subscription_id: int) -> Subscription:
    return _transition(conn, actor_id, subscription_id, "cancelled", {"active", "paused", "inactive"})


def pause_subscription(conn: Connection, actor_id: int, subscription_id: int) -> Subscription:
    return _transition(conn, actor_id, subscription_id, "paused", {"active"})


def deactivate_subscription(conn: Connection, actor_id: int, subscription_id: int) -> Subscription:
    return _transition(conn, actor_id, subscription_id, "inactive", {"active", "paused"})


def resume_subscription(
    conn: Connection, actor_id: int, subscription_id: int, today: date | None = None
) -> Subscription:
    """Reactivate a paused or inactive subscription, skipping renewals missed meanwhile."""
    today = today or date.today()
    subscription = _load_for_member(conn, actor_id, subscription_id)
    if subscription.status not in {"paused", "inactive"}:
        raise BadRequest(f"Cannot resume a {subscription.status} subscription.")
    renewal = subscription.renewal_date
    if renewal < today:
        renewal = next_renewal_after(
            renewal, subscription.renewal_frequency, today, subscription.custom_interval_days
        )
    result = conn.execute(
        update(subscriptions)
        .where(
            subscriptions.c.id == subscription_id,
            subscriptions.c.status == subscription.status,
        )
        .values(
            status="active",
            renewal_date=renewal,
            next_reminder_date=reminder_date_for(renewal, subscription.reminder_days),
        )
    )
    if result.rowcount != 1:
        raise BadRequest("Subscription was changed concurrently. Please retry.")
    return get_subscription(conn, subscription_id)


def update_reminder_settings(
    conn: Connection, actor_id: int, subscription_id: int, reminder_days: int
) -> Subscription:
    subscription = _load_for_member(conn, actor_id, subscription_id)
    try:
        reminder_days = validate_reminder_days(reminder_days)
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc
    conn.execute(
        update(subscriptions)
        .where(
            subscriptions.c.id == subscription_id,
            subscriptions.c.renewal_date == subscription.renewal_date,
        )
        .values(
            reminder_days=reminder_days,
            next_reminder_date=reminder_date_for(subscription.renewal_date, reminder_days),
        )
    )
    return get_subscription(conn, subscription_id)


def update_subscription(
    conn: Connection,
    actor_id: int,
    subscription_id: int,
    title: str | None = None,
    description: str | None = None,
    amount: Decimal | int | float | str | None = None,
    currency: str | None = None,
    rate_type: str | None = None,
    custom_rate: Decimal | int | float | str | None = None,
    renewal_date: date | None = None,
    renewal_frequency: str | None = None,
    custom_interval_days: int | None = None,
    reminder_days: int | None = None,
    status: str | None = None,
    today: date | None = None,
    base_currency: str | None = None,
) -> Subscription:
    """Edit a subscription; ``None`` leaves a field unchanged.

    A new amount, currency or rate takes a fresh snapshot. The reminder date
    follows any change to the renewal date or reminder days. Charges already
    booked keep their own snapshots.
    """
    today = today or date.today()
    subscription = get_subscription(conn, subscription_id)
    account = get_expense_account(conn, subscription.expense_account_id)
    require_manager(conn, account.organization_id, actor_id, "update subscriptions")
    if subscription.status == "cancelled":
        raise BadRequest("Cannot update a cancelled subscription.")

    values: dict = {}
    if title is not None:
        title = title.strip()
        if not title:
            raise BadRequest("Title is required for subscriptions.")
        values["title"] = title
    if description is not None:
        values["description"] = description
    if status is not None:
        if status not in {"active", "inactive"}:
            raise BadRequest("Subscription status must be 'active' or 'inactive'.")
        values["status"] = status

    try:
        frequency = validate_frequency(renewal_frequency or subscription.renewal_frequency)
        if custom_interval_days is None and frequency == "custom":
            custom_interval_days = subscription.custom_interval_days
        interval = validate_custom_interval(frequency, custom_interval_days)
        next_reminder_days = validate_reminder_days(
            reminder_days if reminder_days is not None else subscription.reminder_days
        )
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc
    values.update(
        renewal_frequency=frequency,
        custom_interval_days=interval,
        reminder_days=next_reminder_days,
    )

    if renewal_date is not None:
        if renewal_date < today:
            raise BadRequest(
                "Renewal date cannot be in the past. Please select today or a future date."
            )
        next_renewal = renewal_date
    else:
        next_renewal = subscription.renewal_date
        if status == "active" and subscription.status != "active" and next_renewal < today:
            next_renewal = next_renewal_after(next_renewal, frequency, today, interval)
    values["renewal_date"] = next_renewal
    values["next_reminder_date"] = reminder_date_for(next_renewal, next_reminder_days)

    if any(item is not None for item in (amount, currency, rate_type, custom_rate)):
        next_rate_type = rate_type or subscription.rate_type
        same_custom_rate = next_rate_type == subscription.rate_type == "custom" and currency is None
        if custom_rate is None and same_custom_rate:
            custom_rate = subscription.conversion_rate
        provider = load_rate_provider(conn, account.organization_id, base_currency)
        entry = resolve_money_entry(
            amount if amount is not None else subscription.amount,
            currency or subscription.currency,
            account.currency,
            provider,
            rate_type=next_rate_type,
            custom_rate=custom_rate,
        )
        values.update(entry.storage_values())

    result = conn.execute(
        update(subscriptions)
        .where(
            subscriptions.c.id == subscription_id,
            subscriptions.c.status == subscription.status,
            subscriptions.c.renewal_date == subscription.renewal_date,
        )
        .values(**values)
    )
    if result.rowcount != 1:
        raise BadRequest("Subscription was changed concurrently. Please retry.")
    LOGGER.info("Subscription %s updated by user %s", subscription_id, actor_id)
    return get_subscription(conn, subscription_id)


def delete_subscription(conn: Connection, actor_id: int, subscription_id: int) -> None:
    """Delete a subscription; its booked charges stay as plain expenses."""
    subscription = get_subscription(conn, subscription_id)
    account = get_expense_account(conn, subscription.expense_account_id)
    require_manager(conn, account.organization_id, actor_id, "delete subscriptions")
    conn.execute(
        update(expenses)
        .where(expenses.c.subscription_id == subscription_id)
        .values(subscription_id=None)
    )
    conn.execute(
        delete(expense_reminders).where(expense_reminders.c.subscription_id == subscription_id)
    )
    conn.execute(delete(subscriptions).where(subscriptions.c.id == subscription_id))
    LOGGER.info("Subscription %s deleted by user %s", subscription_id, actor_id)


def get_upcoming_renewals(
    conn: Connection,
    actor_id: int,
    organization_id: int,
    today: date | None = None,
    days: int = 30,
) -> list[Subscription]:
    require_member(conn, organization_id, actor_id)
    today = today or date.today()
    rows = conn.execute(
        select(subscriptions)
        .select_from(
            subscriptions.join(
                expense_accounts, subscriptions.c.expense_account_id == expense_accounts.c.id
            )
        )
        .where(
            expense_accounts.c.organization_id == organization_id,
            subscriptions.c.status == "active",
            subscriptions.c.renewal_date >= today,
            subscriptions.c.renewal_date <= today + timedelta(days=days),
        )
        .order_by(subscriptions.c.renewal_date.asc(), subscriptions.c.id.asc())
    ).mappings().all()
    return [row_to_subscription(row) for row in rows]


def _load_for_member(conn: Connection, actor_id: int, subscription_id: int) -> Subscription:
    subscription = get_subscription(conn, subscription_id)
    account = get_expense_account(conn, subscription.expense_account_id)
    require_member(conn, account.organization_id, actor_id)
    return subscription


def _transition(
    conn: Connection,
    actor_id: int,
    subscription_id: int,
    status: str,
    allowed_from: set[str],
) -> Subscription:
    subscription = _load_for_member(conn, actor_id, subscription_id)
    if subscription.status not in allowed_from:
        raise BadRequest(f"Cannot change a {subscription.status} subscription to {status}.")
    result = conn.execute(
        update(subscriptions)
        .where(
            subscriptions.c.id == subscription_id,
            subscriptions.c.status.in_(allowed_from),
        )
        .values(status=status)
    )
    if result.rowcount != 1:
        raise BadRequest("Subscription was changed concurrently. Please retry.")
    LOGGER.info("Subscription %s is now %s", subscription_id, status)
    return get_subscription(conn, subscription_id)


def row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row["id"],
        expense_account_id=row["expense_account_id"],
        category_id=row["category_id"],
        title=row["title"],
        amount=coerce_decimal(row["amount"]),
        currency=row["currency"],
        rate_type=row["rate_type"],
        conversion_rate=(
            coerce_decimal(row["conversion_rate"]) if row["conversion_rate"] is not None else None
        ),
        base_currency_amount=coerce_decimal(row["base_currency_amount"]),
        start_date=row["start_date"],
        renewal_date=row["renewal_date"],
        renewal_frequency=row["renewal_frequency"],
        custom_interval_days=row["custom_interval_days"],
        reminder_days=row["reminder_days"],
        next_reminder_date=row["next_reminder_date"],
        last_reminder_date=row["last_reminder_date"],
        status=row["status"],
        description=row["description"],
    )
