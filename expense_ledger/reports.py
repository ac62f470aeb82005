"""Expense summaries and report snapshots.

Every figure is derived from the amounts persisted on each expense: an
expense already denominated in the target currency contributes its amount as
entered, anything else is converted from its stored base-currency amount.
Generated reports freeze their totals and breakdowns as JSON payloads; they
are never recomputed when expenses or rates change later.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Union

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from expense_ledger.accounts import (
    ExpenseAccount,
    Organization,
    list_expense_accounts,
    list_organizations,
)
from expense_ledger.currency_conversion import (
    ZERO,
    TableRateProvider,
    coerce_decimal,
    normalize_currency,
    round_money,
)
from expense_ledger.db import expense_categories, expense_reports, team_members, to_storage
from expense_ledger.entries import Expense, account_amount_for, list_expenses
from expense_ledger.errors import BadRequest, NotFound
from expense_ledger.log import get_logger
from expense_ledger.mailer import MONTHLY_EXPENSE_REPORT, Mailer
from expense_ledger.membership import list_member_emails, require_member
from expense_ledger.rate_table import load_rate_provider
from expense_ledger.settings import get_settings

LOGGER = get_logger(__name__)

MONTHLY_REPORT_TYPE = "monthly"
REPORT_TYPE_CATEGORIES = {
    "all_categories": None,
    "subscription": "Subscription",
    "team_salary": "Team Salary",
    "one_time": "One-time",
    "team_member_loan": "Team Member Loan",
}
SUMMARY_WINDOW_DAYS = 30


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    amount: Decimal

    def to_json(self) -> dict[str, Any]:
        return {"category": self.category, "amount": str(self.amount)}

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "CategoryTotal":
        return cls(category=payload["category"], amount=coerce_decimal(payload["amount"]))


@dataclass(frozen=True)
class AccountTotal:
    account_id: int
    account_name: str
    currency: str
    amount: Decimal
    category_breakdown: list[CategoryTotal] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "account_name": self.account_name,
            "currency": self.currency,
            "amount": str(self.amount),
            "category_breakdown": [item.to_json() for item in self.category_breakdown],
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "AccountTotal":
        return cls(
            account_id=payload["account_id"],
            account_name=payload["account_name"],
            currency=payload["currency"],
            amount=coerce_decimal(payload["amount"]),
            category_breakdown=[
                CategoryTotal.from_json(item) for item in payload.get("category_breakdown", [])
            ],
        )


@dataclass(frozen=True)
class ExpenseLine:
    id: int
    title: str | None
    description: str | None
    amount: Decimal
    currency: str
    date: date
    category: str
    account: str
    team_member: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "amount": str(self.amount),
            "currency": self.currency,
            "date": self.date.isoformat(),
            "category": self.category,
            "account": self.account,
            "team_member": self.team_member,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "ExpenseLine":
        return cls(
            id=payload["id"],
            title=payload.get("title"),
            description=payload.get("description"),
            amount=coerce_decimal(payload["amount"]),
            currency=payload["currency"],
            date=date.fromisoformat(payload["date"]),
            category=payload["category"],
            account=payload["account"],
            team_member=payload.get("team_member"),
        )


@dataclass(frozen=True)
class MonthlyReportData:
    base_currency: str
    total_expenses: Decimal
    accounts: list[AccountTotal]
    report_type: str = MONTHLY_REPORT_TYPE

    def to_json(self) -> dict[str, Any]:
        return {
            "report_type": self.report_type,
            "base_currency": self.base_currency,
            "total_expenses": str(self.total_expenses),
            "accounts": [item.to_json() for item in self.accounts],
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "MonthlyReportData":
        return cls(
            base_currency=payload["base_currency"],
            total_expenses=coerce_decimal(payload["total_expenses"]),
            accounts=[AccountTotal.from_json(item) for item in payload["accounts"]],
        )


@dataclass(frozen=True)
class CustomReportData:
    report_type: str
    report_currency: str
    total_expenses: Decimal
    category_breakdown: list[CategoryTotal]
    account_breakdown: list[AccountTotal]
    expenses: list[ExpenseLine] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "report_type": self.report_type,
            "report_currency": self.report_currency,
            "total_expenses": str(self.total_expenses),
            "category_breakdown": [item.to_json() for item in self.category_breakdown],
            "account_breakdown": [item.to_json() for item in self.account_breakdown],
            "expenses": [item.to_json() for item in self.expenses],
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "CustomReportData":
        return cls(
            report_type=payload["report_type"],
            report_currency=payload["report_currency"],
            total_expenses=coerce_decimal(payload["total_expenses"]),
            category_breakdown=[
                CategoryTotal.from_json(item) for item in payload["category_breakdown"]
            ],
            account_breakdown=[AccountTotal.from_json(item) for item in payload["account_breakdown"]],
            expenses=[ExpenseLine.from_json(item) for item in payload.get("expenses", [])],
        )


ReportData = Union[MonthlyReportData, CustomReportData]


def parse_report_data(payload: dict[str, Any]) -> ReportData:
    if payload.get("report_type") == MONTHLY_REPORT_TYPE:
        return MonthlyReportData.from_json(payload)
    return CustomReportData.from_json(payload)


@dataclass(frozen=True)
class ExpenseReport:
    id: int
    organization_id: int
    report_name: str
    report_type: str
    report_period_start: date
    report_period_end: date
    report_currency: str
    selected_account_ids: list[int] | None
    total_expenses: Decimal
    category_breakdown: dict[str, Decimal]
    data: ReportData
    is_scheduled: bool
    email_sent_at: datetime | None = None


@dataclass(frozen=True)
class SummaryStats:
    last_30_days: Decimal
    current_month: Decimal
    total_count: int
    currency: str | None = None
    last_30_days_breakdown: list[AccountTotal] | None = None
    current_month_breakdown: list[AccountTotal] | None = None


def amount_in_currency(
    expense: Expense, currency: str, rate_provider: TableRateProvider
) -> Decimal:
    """Value of ``expense`` in ``currency``, starting from its persisted snapshot."""
    if expense.currency == currency:
        return expense.amount
    return account_amount_for(expense.base_currency_amount, currency, rate_provider)


def calculate_summary_stats(
    conn: Connection,
    actor_id: int,
    organization_id: int,
    selected_account_ids: Iterable[int] = (),
    now: datetime | None = None,
    base_currency: str | None = None,
) -> SummaryStats:
    """Totals for the last 30 days and the current calendar month.

    With accounts selected, everything is expressed in the first selected
    account's currency. With no selection each account gets its own subtotal
    in its native currency and the scalar totals stay zero.
    """
    require_member(conn, organization_id, actor_id)
    now = now or datetime.now()
    today = now.date()
    window_start = (now - timedelta(days=SUMMARY_WINDOW_DAYS)).date()
    month_start = today.replace(day=1)
    selected = list(dict.fromkeys(selected_account_ids))

    accounts = {account.id: account for account in list_expense_accounts(conn, organization_id)}
    provider = load_rate_provider(conn, organization_id, base_currency)
    entries = list_expenses(conn, organization_id, account_ids=selected or None)

    if selected:
        first = next((accounts[account_id] for account_id in selected if account_id in accounts), None)
        if first is None:
            raise NotFound("Expense account not found.")
        last_30_days = ZERO
        current_month = ZERO
        for expense in entries:
            if expense.date > today:
                continue
            value = amount_in_currency(expense, first.currency, provider)
            if expense.date >= window_start:
                last_30_days += value
            if expense.date >= month_start:
                current_month += value
        return SummaryStats(
            last_30_days=last_30_days,
            current_month=current_month,
            total_count=len(entries),
            currency=first.currency,
        )

    last_30_days_by_account: dict[int, Decimal] = {}
    current_month_by_account: dict[int, Decimal] = {}
    for expense in entries:
        account = accounts.get(expense.expense_account_id)
        if account is None or expense.date > today:
            continue
        value = amount_in_currency(expense, account.currency, provider)
        if expense.date >= window_start:
            last_30_days_by_account[account.id] = (
                last_30_days_by_account.get(account.id, ZERO) + value
            )
        if expense.date >= month_start:
            current_month_by_account[account.id] = (
                current_month_by_account.get(account.id, ZERO) + value
            )
    return SummaryStats(
        last_30_days=ZERO,
        current_month=ZERO,
        total_count=len(entries),
        last_30_days_breakdown=_account_totals(last_30_days_by_account, accounts),
        current_month_breakdown=_account_totals(current_month_by_account, accounts),
    )


def generate_custom_report(
    conn: Connection,
    actor_id: int,
    organization_id: int,
    period_start: date,
    period_end: date,
    report_currency: str | None = None,
    account_ids: Iterable[int] | None = None,
    report_type: str = "all_categories",
    report_name: str | None = None,
    include_details: bool = True,
    base_currency: str | None = None,
) -> ExpenseReport:
    """Snapshot expenses in a period into a stored report.

    Totals use ``report_currency`` when given, otherwise the base currency.
    Without an explicit report currency each account subtotal stays in that
    account's native currency.
    """
    require_member(conn, organization_id, actor_id)
    if report_type not in REPORT_TYPE_CATEGORIES:
        raise BadRequest(f"Report type must be one of: {', '.join(REPORT_TYPE_CATEGORIES)}")
    if period_end < period_start:
        raise BadRequest("Report period end must not be before its start.")
    provider = load_rate_provider(conn, organization_id, base_currency)
    try:
        currency = normalize_currency(report_currency or provider.base_currency)
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc
    if not provider.has_rate(currency):
        raise BadRequest(
            f"Conversion rate not found for {currency}. Please set up the currency rate "
            "in workspace settings."
        )

    selected = list(dict.fromkeys(account_ids or []))
    accounts = {account.id: account for account in list_expense_accounts(conn, organization_id)}
    for account_id in selected:
        if account_id not in accounts:
            raise BadRequest("Expense account does not belong to this workspace.")
    categories = category_names(conn, organization_id)
    wanted_category = REPORT_TYPE_CATEGORIES[report_type]
    entries = [
        expense
        for expense in list_expenses(
            conn,
            organization_id,
            account_ids=selected or None,
            start_date=period_start,
            end_date=period_end,
        )
        if wanted_category is None or categories.get(expense.category_id) == wanted_category
    ]

    total = ZERO
    by_category: dict[str, Decimal] = {}
    by_account: dict[int, Decimal] = {}
    for expense in entries:
        value = amount_in_currency(expense, currency, provider)
        total += value
        category = categories.get(expense.category_id, "Uncategorized")
        by_category[category] = by_category.get(category, ZERO) + value
        account_id = expense.expense_account_id
        if report_currency is None:
            account_value = amount_in_currency(expense, accounts[account_id].currency, provider)
        else:
            account_value = value
        by_account[account_id] = by_account.get(account_id, ZERO) + account_value

    lines: list[ExpenseLine] = []
    if include_details:
        member_names = team_member_names(conn, organization_id)
        lines = [
            ExpenseLine(
                id=expense.id,
                title=expense.title,
                description=expense.description,
                amount=expense.amount,
                currency=expense.currency,
                date=expense.date,
                category=categories.get(expense.category_id, "Uncategorized"),
                account=accounts[expense.expense_account_id].name,
                team_member=member_names.get(expense.team_member_id),
            )
            for expense in entries
        ]

    category_breakdown = _category_totals(by_category)
    data = CustomReportData(
        report_type=report_type,
        report_currency=currency,
        total_expenses=to_storage(total),
        category_breakdown=category_breakdown,
        account_breakdown=_account_totals(
            by_account, accounts, currency if report_currency is not None else None
        ),
        expenses=lines,
    )
    report_id = _insert_report(
        conn,
        organization_id=organization_id,
        report_name=report_name or f"Report {date.today().isoformat()}",
        report_type=report_type,
        period_start=period_start,
        period_end=period_end,
        report_currency=currency,
        selected_account_ids=selected or None,
        total=total,
        category_breakdown=category_breakdown,
        data=data,
        is_scheduled=False,
        created_by=actor_id,
    )
    LOGGER.info(
        "Custom report %s generated for organization %s: %s %s across %s expense(s)",
        report_id,
        organization_id,
        round_money(total),
        currency,
        len(entries),
    )
    return get_report(conn, actor_id, report_id)


def previous_month_period(today: date) -> tuple[date, date]:
    period_end = today.replace(day=1) - timedelta(days=1)
    return period_end.replace(day=1), period_end


def generate_monthly_report(
    conn: Connection,
    organization: Organization,
    period_start: date,
    period_end: date,
    base_currency: str | None = None,
) -> ExpenseReport | None:
    """Snapshot one organization's month; ``None`` when there is nothing to report on."""
    accounts = list_expense_accounts(conn, organization.id)
    if not accounts:
        return None
    existing = conn.execute(
        select(expense_reports.c.id).where(
            expense_reports.c.organization_id == organization.id,
            expense_reports.c.report_type == MONTHLY_REPORT_TYPE,
            expense_reports.c.report_period_start == period_start,
            expense_reports.c.report_period_end == period_end,
        )
    ).first()
    if existing:
        LOGGER.info(
            "Monthly report for organization %s (%s) already exists", organization.id, period_start
        )
        return None

    provider = load_rate_provider(conn, organization.id, base_currency)
    categories = category_names(conn, organization.id)
    account_totals: list[AccountTotal] = []
    base_total = ZERO
    base_by_category: dict[str, Decimal] = {}
    for account in accounts:
        entries = list_expenses(
            conn, organization.id, account_ids=[account.id], start_date=period_start, end_date=period_end
        )
        account_total = ZERO
        account_by_category: dict[str, Decimal] = {}
        for expense in entries:
            category = categories.get(expense.category_id, "Uncategorized")
            value = amount_in_currency(expense, account.currency, provider)
            account_total += value
            account_by_category[category] = account_by_category.get(category, ZERO) + value
            base_total += expense.base_currency_amount
            base_by_category[category] = (
                base_by_category.get(category, ZERO) + expense.base_currency_amount
            )
        account_totals.append(
            AccountTotal(
                account_id=account.id,
                account_name=account.name,
                currency=account.currency,
                amount=to_storage(account_total),
                category_breakdown=_category_totals(account_by_category),
            )
        )

    category_breakdown = _category_totals(base_by_category)
    data = MonthlyReportData(
        base_currency=provider.base_currency,
        total_expenses=to_storage(base_total),
        accounts=account_totals,
    )
    report_id = _insert_report(
        conn,
        organization_id=organization.id,
        report_name=f"Monthly Report {period_start.strftime('%B %Y')}",
        report_type=MONTHLY_REPORT_TYPE,
        period_start=period_start,
        period_end=period_end,
        report_currency=provider.base_currency,
        selected_account_ids=None,
        total=base_total,
        category_breakdown=category_breakdown,
        data=data,
        is_scheduled=True,
        created_by=None,
    )
    return _load_report(conn, report_id)


def generate_monthly_reports(
    engine: Engine,
    mailer: Mailer,
    now: datetime | None = None,
    app_base_url: str | None = None,
    base_currency: str | None = None,
) -> dict[str, int]:
    """Report the previous calendar month for every organization.

    Runs only on the first day of the month. Each organization is handled in
    its own transaction so one failure never blocks the rest.
    """
    now = now or datetime.now()
    today = now.date()
    if today.day != 1:
        LOGGER.info("Monthly reports only run on the first day of the month")
        return {"reports_generated": 0}
    if app_base_url is None:
        app_base_url = get_settings().app_base_url
    period_start, period_end = previous_month_period(today)

    with engine.connect() as conn:
        organizations = list_organizations(conn)

    reports_generated = 0
    for organization in organizations:
        try:
            with engine.begin() as conn:
                report = generate_monthly_report(
                    conn, organization, period_start, period_end, base_currency
                )
                recipients = list_member_emails(conn, organization.id) if report else []
        except Exception:
            LOGGER.exception("Failed to generate monthly report for organization %s", organization.id)
            continue
        if report is None:
            continue
        reports_generated += 1
        LOGGER.info("Monthly report %s generated for organization %s", report.id, organization.id)

        context = {
            "url": f"{app_base_url}/{organization.slug}/expenses/reports/{report.id}",
            "businessName": None,
            "reportPeriodStart": period_start.isoformat(),
            "reportPeriodEnd": period_end.isoformat(),
            "totalExpenses": str(round_money(report.total_expenses)),
            "currency": report.report_currency,
        }
        delivered = 0
        for email in recipients:
            try:
                if mailer.send_email(email, MONTHLY_EXPENSE_REPORT, context):
                    delivered += 1
            except Exception:
                LOGGER.exception("Failed to email monthly report %s to %s", report.id, email)
        if delivered:
            try:
                with engine.begin() as conn:
                    conn.execute(
                        update(expense_reports)
                        .where(expense_reports.c.id == report.id)
                        .values(email_sent_at=datetime.now())
                    )
            except Exception:
                LOGGER.exception("Failed to mark monthly report %s as emailed", report.id)

    LOGGER.info("Monthly reports complete: %s generated", reports_generated)
    return {"reports_generated": reports_generated}


def get_report(conn: Connection, actor_id: int, report_id: int) -> ExpenseReport:
    report = _load_report(conn, report_id)
    require_member(conn, report.organization_id, actor_id)
    return report


def list_reports(conn: Connection, actor_id: int, organization_id: int) -> list[ExpenseReport]:
    require_member(conn, organization_id, actor_id)
    rows = conn.execute(
        select(expense_reports)
        .where(expense_reports.c.organization_id == organization_id)
        .order_by(expense_reports.c.created_at.desc(), expense_reports.c.id.desc())
    ).mappings().all()
    return [_row_to_report(row) for row in rows]


def _load_report(conn: Connection, report_id: int) -> ExpenseReport:
    row = conn.execute(
        select(expense_reports).where(expense_reports.c.id == report_id)
    ).mappings().first()
    if not row:
        raise NotFound("Report not found.")
    return _row_to_report(row)


def _insert_report(
    conn: Connection,
    *,
    organization_id: int,
    report_name: str,
    report_type: str,
    period_start: date,
    period_end: date,
    report_currency: str,
    selected_account_ids: list[int] | None,
    total: Decimal,
    category_breakdown: list[CategoryTotal],
    data: ReportData,
    is_scheduled: bool,
    created_by: int | None,
) -> int:
    row = conn.execute(
        insert(expense_reports)
        .values(
            organization_id=organization_id,
            report_name=report_name,
            report_type=report_type,
            report_period_start=period_start,
            report_period_end=period_end,
            report_currency=report_currency,
            selected_account_ids=selected_account_ids,
            total_expenses=to_storage(total),
            category_breakdown={item.category: str(item.amount) for item in category_breakdown},
            report_data=data.to_json(),
            is_scheduled=is_scheduled,
            created_by=created_by,
        )
        .returning(expense_reports.c.id)
    ).first()
    return row[0]


def _row_to_report(row) -> ExpenseReport:
    return ExpenseReport(
        id=row["id"],
        organization_id=row["organization_id"],
        report_name=row["report_name"],
        report_type=row["report_type"],
        report_period_start=row["report_period_start"],
        report_period_end=row["report_period_end"],
        report_currency=row["report_currency"],
        selected_account_ids=row["selected_account_ids"],
        total_expenses=coerce_decimal(row["total_expenses"]),
        category_breakdown={
            name: coerce_decimal(amount) for name, amount in (row["category_breakdown"] or {}).items()
        },
        data=parse_report_data(row["report_data"]),
        is_scheduled=bool(row["is_scheduled"]),
        email_sent_at=row["email_sent_at"],
    )


def category_names(conn: Connection, organization_id: int) -> dict[int, str]:
    rows = conn.execute(
        select(expense_categories.c.id, expense_categories.c.name).where(
            expense_categories.c.organization_id == organization_id
        )
    ).all()
    return {row[0]: row[1] for row in rows}


def team_member_names(conn: Connection, organization_id: int) -> dict[int, str]:
    rows = conn.execute(
        select(team_members.c.id, team_members.c.name).where(
            team_members.c.organization_id == organization_id
        )
    ).all()
    return {row[0]: row[1] for row in rows}


def _category_totals(totals: dict[str, Decimal]) -> list[CategoryTotal]:
    return [
        CategoryTotal(category=name, amount=to_storage(amount))
        for name, amount in sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    ]


def _account_totals(
    totals: dict[int, Decimal],
    accounts: dict[int, ExpenseAccount],
    currency: str | None = None,
) -> list[AccountTotal]:
    """Per-account totals, labelled with ``currency`` or else each account's own currency."""
    return [
        AccountTotal(
            account_id=account_id,
            account_name=accounts[account_id].name,
            currency=currency or accounts[account_id].currency,
            amount=to_storage(amount),
        )
        for account_id, amount in sorted(totals.items())
        if account_id in accounts
    ]
