"""Renewal reminder batch.

Each due subscription is claimed in its own transaction: the renewal date,
next reminder date and the ``expense_reminders`` row for the cycle are all
written before any email leaves. A crash after the commit loses the reminder
for that cycle instead of repeating it, and a second run inside the same cycle
finds nothing to claim.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from expense_ledger.accounts import ExpenseAccount, Organization, get_expense_account, get_organization
from expense_ledger.currency_conversion import round_money
from expense_ledger.db import expense_reminders, subscriptions
from expense_ledger.log import get_logger
from expense_ledger.mailer import SUBSCRIPTION_RENEWAL_REMINDER, Mailer
from expense_ledger.membership import list_member_emails
from expense_ledger.recurrence import next_renewal_after, reminder_date_for
from expense_ledger.settings import get_settings
from expense_ledger.subscriptions import Subscription, row_to_subscription

LOGGER = get_logger(__name__)

REMINDER_TYPE_RENEWAL = "renewal"


@dataclass(frozen=True)
class ClaimedReminder:
    reminder_id: int
    subscription: Subscription
    account: ExpenseAccount
    organization: Organization
    recipients: list[str]


def find_due_subscriptions(conn: Connection, today: date) -> list[Subscription]:
    rows = conn.execute(
        select(subscriptions)
        .where(
            subscriptions.c.status == "active",
            subscriptions.c.next_reminder_date <= today,
        )
        .order_by(subscriptions.c.next_reminder_date.asc(), subscriptions.c.id.asc())
    ).mappings().all()
    return [row_to_subscription(row) for row in rows]


def claim_reminder(
    conn: Connection, subscription: Subscription, today: date
) -> ClaimedReminder | None:
    """Advance the subscription past its current cycle and record the reminder.

    Returns ``None`` when another run already advanced the subscription; a
    duplicate reminder row for the cycle raises ``IntegrityError`` and rolls the
    claim back.
    """
    # keep the next reminder date after today
    next_renewal = next_renewal_after(
        subscription.renewal_date,
        subscription.renewal_frequency,
        today + timedelta(days=subscription.reminder_days + 1),
        subscription.custom_interval_days,
    )
    result = conn.execute(
        update(subscriptions)
        .where(
            subscriptions.c.id == subscription.id,
            subscriptions.c.status == "active",
            subscriptions.c.renewal_date == subscription.renewal_date,
            subscriptions.c.next_reminder_date <= today,
        )
        .values(
            renewal_date=next_renewal,
            next_reminder_date=reminder_date_for(next_renewal, subscription.reminder_days),
            last_reminder_date=today,
        )
    )
    if result.rowcount != 1:
        return None

    account = get_expense_account(conn, subscription.expense_account_id)
    recipients = list_member_emails(conn, account.organization_id)
    row = conn.execute(
        insert(expense_reminders)
        .values(
            subscription_id=subscription.id,
            reminder_type=REMINDER_TYPE_RENEWAL,
            renewal_date=subscription.renewal_date,
            scheduled_date=today,
            status="pending",
            recipients=len(recipients),
        )
        .returning(expense_reminders.c.id)
    ).first()
    return ClaimedReminder(
        reminder_id=row[0],
        subscription=subscription,
        account=account,
        organization=get_organization(conn, account.organization_id),
        recipients=recipients,
    )


def reminder_context(claimed: ClaimedReminder, app_base_url: str) -> dict:
    subscription = claimed.subscription
    return {
        "url": (
            f"{app_base_url}/{claimed.organization.slug}/expense-accounts/"
            f"{claimed.account.id}/subscriptions/{subscription.id}"
        ),
        "subscriptionName": subscription.title,
        "renewalDate": subscription.renewal_date.isoformat(),
        "businessName": claimed.account.name,
        "amount": str(round_money(subscription.amount)),
        "currency": subscription.currency or claimed.account.currency,
    }


def dispatch_reminder(mailer: Mailer, claimed: ClaimedReminder, app_base_url: str) -> int:
    """Email every recipient; one bad address does not stop the others."""
    context = reminder_context(claimed, app_base_url)
    delivered = 0
    for email in claimed.recipients:
        try:
            if mailer.send_email(email, SUBSCRIPTION_RENEWAL_REMINDER, context):
                delivered += 1
        except Exception:
            LOGGER.exception(
                "Failed to email reminder for subscription %s to %s", claimed.subscription.id, email
            )
    return delivered


def process_subscription_reminders(
    engine: Engine,
    mailer: Mailer,
    now: datetime | None = None,
    app_base_url: str | None = None,
) -> dict[str, int]:
    """Send one reminder per due subscription cycle and return ``{"reminders_sent": n}``."""
    now = now or datetime.now()
    today = now.date()
    if app_base_url is None:
        app_base_url = get_settings().app_base_url

    with engine.connect() as conn:
        due = find_due_subscriptions(conn, today)
    LOGGER.info("%s subscription(s) due for a renewal reminder", len(due))

    reminders_sent = 0
    for subscription in due:
        try:
            with engine.begin() as conn:
                claimed = claim_reminder(conn, subscription, today)
        except IntegrityError:
            LOGGER.info("Subscription %s already reminded for this cycle", subscription.id)
            continue
        except Exception:
            LOGGER.exception("Failed to claim reminder for subscription %s", subscription.id)
            continue
        if claimed is None:
            LOGGER.info("Subscription %s already reminded for this cycle", subscription.id)
            continue

        delivered = dispatch_reminder(mailer, claimed, app_base_url)
        if not claimed.recipients:
            status = "skipped"
        elif delivered:
            status = "sent"
        else:
            status = "failed"
        try:
            with engine.begin() as conn:
                conn.execute(
                    update(expense_reminders)
                    .where(expense_reminders.c.id == claimed.reminder_id)
                    .values(status=status, recipients=delivered)
                )
        except Exception:
            LOGGER.exception("Failed to record reminder %s outcome", claimed.reminder_id)
        if status == "sent":
            reminders_sent += 1
            LOGGER.info(
                "Reminder for subscription %s sent to %s member(s)", subscription.id, delivered
            )
        elif status == "skipped":
            LOGGER.warning("Subscription %s has no member to remind", subscription.id)

    LOGGER.info("Subscription reminders complete: %s sent", reminders_sent)
    return {"reminders_sent": reminders_sent}
