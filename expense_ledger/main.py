from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from expense_ledger.accounts import (
    ExpenseAccount,
    TeamMember,
    create_expense_account,
    create_team_member,
    list_expense_accounts,
)
from expense_ledger.analytics import (
    compare_accounts,
    get_category_breakdown,
    get_team_member_expense_summary,
    get_trend_analysis,
)
from expense_ledger.currency_conversion import (
    CurrencyRate,
    convert_amount,
    convert_with_explicit_rate,
    format_currency,
    round_money,
)
from expense_ledger.db import create_engine_from_settings, init_db
from expense_ledger.entries import (
    Expense,
    create_expense,
    delete_expense,
    list_expenses,
    update_expense,
    validate_rate_type,
)
from expense_ledger.errors import BadRequest, LedgerError
from expense_ledger.loan_ledger import (
    Loan,
    LoanPayment,
    cancel_loan,
    create_standalone_loan,
    get_loan_history,
    list_loans,
    mark_loan_defaulted,
    notify_payment_received,
    record_loan_payment,
)
from expense_ledger.log import get_logger, init_logging
from expense_ledger.mailer import LoggingMailer, Mailer
from expense_ledger.membership import require_member
from expense_ledger.rate_limit import InMemoryCounterStore, RateLimiter, client_ip_from_headers
from expense_ledger.rate_table import delete_rate, list_rates, load_rate_provider, upsert_rate
from expense_ledger.reports import (
    AccountTotal,
    ExpenseReport,
    calculate_summary_stats,
    generate_custom_report,
    generate_monthly_reports,
    get_report,
    list_reports,
)
from expense_ledger.settings import Settings, get_settings
from expense_ledger.subscription_reminders import process_subscription_reminders
from expense_ledger.subscriptions import (
    Subscription,
    cancel_subscription,
    create_subscription,
    deactivate_subscription,
    delete_subscription,
    get_upcoming_renewals,
    pause_subscription,
    resume_subscription,
    update_reminder_settings,
    update_subscription,
)

LOGGER = get_logger(__name__)

app = FastAPI(title="Expense Ledger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().app_base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_engine_from_settings(get_settings())


def get_mailer() -> Mailer:
    return LoggingMailer()


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(
        InMemoryCounterStore(),
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    init_logging(settings.log_level)
    init_db(get_engine())


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def money(amount: Decimal) -> Decimal:
    return round_money(amount)


class CurrencyRatePayload(BaseModel):
    rate: Decimal
    symbol: str | None = None
    symbol_position: str | None = None
    separator: str | None = None
    decimal_separator: str | None = None


class CurrencyRateResponse(BaseModel):
    id: int | None = None
    organization_id: int | None = None
    to_currency: str
    rate: Decimal
    symbol: str | None = None
    symbol_position: str
    separator: str
    decimal_separator: str


class ConversionPreviewPayload(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str
    rate_type: str = "default"
    custom_rate: Decimal | None = None


class ConversionPreviewResponse(BaseModel):
    amount: Decimal
    currency: str
    formatted: str


class ExpenseAccountPayload(BaseModel):
    name: str
    currency: str


class ExpenseAccountResponse(BaseModel):
    id: int
    organization_id: int
    name: str
    currency: str


class ExpensePayload(BaseModel):
    category_id: int
    amount: Decimal
    date: date
    currency: str | None = None
    rate_type: str = "default"
    custom_rate: Decimal | None = None
    title: str | None = None
    description: str | None = None
    team_member_id: int | None = None


class ExpenseResponse(BaseModel):
    id: int
    expense_account_id: int
    category_id: int
    amount: Decimal
    currency: str
    conversion_rate: Decimal | None = None
    base_currency_amount: Decimal
    date: date
    title: str | None = None
    description: str | None = None
    team_member_id: int | None = None
    subscription_id: int | None = None


class ExpenseUpdatePayload(BaseModel):
    category_id: int | None = None
    amount: Decimal | None = None
    expense_date: date | None = Field(None, alias="date")
    currency: str | None = None
    rate_type: str | None = None
    custom_rate: Decimal | None = None
    title: str | None = None
    description: str | None = None
    team_member_id: int | None = None


class SubscriptionPayload(BaseModel):
    category_id: int
    title: str
    amount: Decimal
    start_date: date
    currency: str | None = None
    rate_type: str = "default"
    custom_rate: Decimal | None = None
    renewal_frequency: str = "monthly"
    renewal_date: date | None = None
    custom_interval_days: int | None = None
    reminder_days: int = 7
    status: str = "active"
    description: str | None = None


class SubscriptionUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    rate_type: str | None = None
    custom_rate: Decimal | None = None
    renewal_date: date | None = None
    renewal_frequency: str | None = None
    custom_interval_days: int | None = None
    reminder_days: int | None = None
    status: str | None = None


class ReminderSettingsPayload(BaseModel):
    reminder_days: int


class SubscriptionResponse(BaseModel):
    id: int
    expense_account_id: int
    category_id: int | None = None
    title: str
    description: str | None = None
    amount: Decimal
    currency: str
    rate_type: str
    conversion_rate: Decimal | None = None
    base_currency_amount: Decimal
    start_date: date
    renewal_date: date
    renewal_frequency: str
    custom_interval_days: int | None = None
    reminder_days: int
    next_reminder_date: date
    last_reminder_date: date | None = None
    status: str


class TeamMemberPayload(BaseModel):
    name: str
    email: str | None = None
    account_ids: list[int] = []


class TeamMemberResponse(BaseModel):
    id: int
    organization_id: int
    name: str
    email: str | None = None
    business_id: int | None = None
    account_ids: list[int]


class LoanPayload(BaseModel):
    team_member_id: int
    business_id: int
    amount: Decimal
    loan_date: date
    currency: str | None = None
    rate_type: str = "default"
    custom_rate: Decimal | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "LoanPayload") -> "LoanPayload":
        payload.rate_type = validate_rate_type(payload.rate_type)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.notes = payload.notes.strip() if payload.notes else None
        return payload


class LoanPaymentPayload(BaseModel):
    amount: Decimal
    payment_date: date
    currency: str | None = None
    rate_type: str = "default"
    custom_rate: Decimal | None = None
    payment_type: str = "principal"
    notes: str | None = None


class LoanResponse(BaseModel):
    id: int
    expense_account_id: int
    team_member_id: int
    amount: Decimal
    principal_amount: Decimal
    current_balance: Decimal
    currency: str
    rate_type: str
    conversion_rate: Decimal | None = None
    base_currency_amount: Decimal
    loan_date: date
    status: str
    notes: str | None = None


class LoanPaymentResponse(BaseModel):
    id: int
    loan_id: int
    amount: Decimal
    original_amount: Decimal
    currency: str
    conversion_rate: Decimal | None = None
    payment_date: date
    payment_type: str
    notes: str | None = None


class LoanHistoryResponse(BaseModel):
    loan: LoanResponse
    payments: list[LoanPaymentResponse]
    total_paid: Decimal


class AccountTotalResponse(BaseModel):
    account_id: int
    account_name: str
    currency: str
    amount: Decimal


class SummaryStatsResponse(BaseModel):
    last_30_days: Decimal
    current_month: Decimal
    total_count: int
    currency: str | None = None
    last_30_days_breakdown: list[AccountTotalResponse] | None = None
    current_month_breakdown: list[AccountTotalResponse] | None = None


class CategoryBreakdownResponse(BaseModel):
    category_id: int
    category_name: str
    currency: str
    total_amount: Decimal
    count: int


class TrendPointResponse(BaseModel):
    period: str
    currency: str
    total: Decimal


class AccountComparisonResponse(BaseModel):
    account_id: int
    account_name: str
    currency: str
    total_amount: Decimal
    base_currency_amount: Decimal
    count: int


class TeamMemberTotalResponse(BaseModel):
    team_member_id: int
    team_member_name: str
    currency: str
    total_amount: Decimal
    count: int


class CustomReportPayload(BaseModel):
    report_period_start: date
    report_period_end: date
    report_currency: str | None = None
    account_ids: list[int] | None = None
    report_type: str = "all_categories"
    report_name: str | None = None
    include_details: bool = True


class ReportResponse(BaseModel):
    id: int
    organization_id: int
    report_name: str
    report_type: str
    report_period_start: date
    report_period_end: date
    report_currency: str
    selected_account_ids: list[int] | None = None
    total_expenses: Decimal
    category_breakdown: dict[str, Decimal]
    report_data: dict
    is_scheduled: bool
    email_sent_at: datetime | None = None


def _rate_response(rate: CurrencyRate) -> CurrencyRateResponse:
    return CurrencyRateResponse(
        id=rate.id,
        organization_id=rate.organization_id,
        to_currency=rate.to_currency,
        rate=rate.rate,
        symbol=rate.symbol,
        symbol_position=rate.symbol_position,
        separator=rate.separator,
        decimal_separator=rate.decimal_separator,
    )


def _account_response(account: ExpenseAccount) -> ExpenseAccountResponse:
    return ExpenseAccountResponse(
        id=account.id,
        organization_id=account.organization_id,
        name=account.name,
        currency=account.currency,
    )


def _expense_response(expense: Expense) -> ExpenseResponse:
    return ExpenseResponse(
        id=expense.id,
        expense_account_id=expense.expense_account_id,
        category_id=expense.category_id,
        amount=money(expense.amount),
        currency=expense.currency,
        conversion_rate=expense.conversion_rate,
        base_currency_amount=money(expense.base_currency_amount),
        date=expense.date,
        title=expense.title,
        description=expense.description,
        team_member_id=expense.team_member_id,
        subscription_id=expense.subscription_id,
    )


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        expense_account_id=subscription.expense_account_id,
        category_id=subscription.category_id,
        title=subscription.title,
        description=subscription.description,
        amount=money(subscription.amount),
        currency=subscription.currency,
        rate_type=subscription.rate_type,
        conversion_rate=subscription.conversion_rate,
        base_currency_amount=money(subscription.base_currency_amount),
        start_date=subscription.start_date,
        renewal_date=subscription.renewal_date,
        renewal_frequency=subscription.renewal_frequency,
        custom_interval_days=subscription.custom_interval_days,
        reminder_days=subscription.reminder_days,
        next_reminder_date=subscription.next_reminder_date,
        last_reminder_date=subscription.last_reminder_date,
        status=subscription.status,
    )


def _team_member_response(member: TeamMember) -> TeamMemberResponse:
    return TeamMemberResponse(
        id=member.id,
        organization_id=member.organization_id,
        name=member.name,
        email=member.email,
        business_id=member.business_id,
        account_ids=list(member.account_ids),
    )


def _loan_response(loan: Loan) -> LoanResponse:
    return LoanResponse(
        id=loan.id,
        expense_account_id=loan.expense_account_id,
        team_member_id=loan.team_member_id,
        amount=money(loan.amount),
        principal_amount=money(loan.principal_amount),
        current_balance=money(loan.current_balance),
        currency=loan.currency,
        rate_type=loan.rate_type,
        conversion_rate=loan.conversion_rate,
        base_currency_amount=money(loan.base_currency_amount),
        loan_date=loan.loan_date,
        status=loan.status,
        notes=loan.notes,
    )


def _payment_response(payment: LoanPayment) -> LoanPaymentResponse:
    return LoanPaymentResponse(
        id=payment.id,
        loan_id=payment.loan_id,
        amount=money(payment.amount),
        original_amount=money(payment.original_amount),
        currency=payment.currency,
        conversion_rate=payment.conversion_rate,
        payment_date=payment.payment_date,
        payment_type=payment.payment_type,
        notes=payment.notes,
    )


def _account_totals_response(items: list[AccountTotal] | None) -> list[AccountTotalResponse] | None:
    if items is None:
        return None
    return [
        AccountTotalResponse(
            account_id=item.account_id,
            account_name=item.account_name,
            currency=item.currency,
            amount=money(item.amount),
        )
        for item in items
    ]


def _report_response(report: ExpenseReport) -> ReportResponse:
    return ReportResponse(
        id=report.id,
        organization_id=report.organization_id,
        report_name=report.report_name,
        report_type=report.report_type,
        report_period_start=report.report_period_start,
        report_period_end=report.report_period_end,
        report_currency=report.report_currency,
        selected_account_ids=report.selected_account_ids,
        total_expenses=money(report.total_expenses),
        category_breakdown={
            name: money(amount) for name, amount in report.category_breakdown.items()
        },
        report_data=report.data.to_json(),
        is_scheduled=report.is_scheduled,
        email_sent_at=report.email_sent_at,
    )


def require_cron_secret(
    request: Request,
    authorization: str | None = Header(None),
    settings: Settings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    fallback = request.client.host if request.client else None
    limiter.check(client_ip_from_headers(request.headers, fallback))
    if not settings.cron_secret or authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/organizations/{organization_id}/currency-rates", response_model=list[CurrencyRateResponse])
def get_currency_rates(
    organization_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[CurrencyRateResponse]:
    with engine.begin() as conn:
        require_member(conn, organization_id, user_id)
        return [_rate_response(rate) for rate in list_rates(conn, organization_id)]


@app.put(
    "/organizations/{organization_id}/currency-rates/{currency}",
    response_model=CurrencyRateResponse,
)
def put_currency_rate(
    organization_id: int,
    currency: str,
    payload: CurrencyRatePayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> CurrencyRateResponse:
    with engine.begin() as conn:
        rate = upsert_rate(
            conn,
            user_id,
            organization_id,
            currency,
            payload.rate,
            symbol=payload.symbol,
            symbol_position=payload.symbol_position,
            separator=payload.separator,
            decimal_separator=payload.decimal_separator,
        )
    return _rate_response(rate)


@app.delete("/currency-rates/{rate_id}")
def remove_currency_rate(
    rate_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        delete_rate(conn, user_id, rate_id)
    return {"status": "deleted"}


@app.post(
    "/organizations/{organization_id}/conversions/preview",
    response_model=ConversionPreviewResponse,
)
def preview_conversion(
    organization_id: int,
    payload: ConversionPreviewPayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> ConversionPreviewResponse:
    with engine.begin() as conn:
        require_member(conn, organization_id, user_id)
        provider = load_rate_provider(conn, organization_id)
    try:
        rate_type = validate_rate_type(payload.rate_type)
        if rate_type == "custom":
            if payload.custom_rate is None:
                raise BadRequest("A custom rate is required when rate type is 'custom'.")
            converted = convert_with_explicit_rate(
                payload.amount,
                payload.from_currency,
                payload.to_currency,
                provider,
                payload.custom_rate,
            )
        else:
            converted = convert_amount(
                payload.amount, payload.from_currency, payload.to_currency, provider
            )
    except ValueError as exc:
        raise BadRequest(str(exc)) from exc
    target = payload.to_currency.strip().upper()
    return ConversionPreviewResponse(
        amount=money(converted),
        currency=target,
        formatted=format_currency(converted, target, provider.get_format(target)),
    )


@app.get(
    "/organizations/{organization_id}/expense-accounts",
    response_model=list[ExpenseAccountResponse],
)
def get_expense_accounts(
    organization_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[ExpenseAccountResponse]:
    with engine.begin() as conn:
        require_member(conn, organization_id, user_id)
        return [_account_response(item) for item in list_expense_accounts(conn, organization_id)]


@app.post(
    "/organizations/{organization_id}/expense-accounts",
    response_model=ExpenseAccountResponse,
)
def post_expense_account(
    organization_id: int,
    payload: ExpenseAccountPayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> ExpenseAccountResponse:
    with engine.begin() as conn:
        account = create_expense_account(
            conn, user_id, organization_id, payload.name, payload.currency
        )
    return _account_response(account)


@app.post("/expense-accounts/{account_id}/expenses", response_model=ExpenseResponse)
def post_expense(
    account_id: int,
    payload: ExpensePayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> ExpenseResponse:
    with engine.begin() as conn:
        expense = create_expense(
            conn,
            user_id,
            account_id,
            payload.category_id,
            payload.amount,
            payload.date,
            currency=payload.currency,
            rate_type=payload.rate_type,
            custom_rate=payload.custom_rate,
            title=payload.title,
            description=payload.description,
            team_member_id=payload.team_member_id,
        )
    return _expense_response(expense)


@app.get("/organizations/{organization_id}/expenses", response_model=list[ExpenseResponse])
def get_expenses(
    organization_id: int,
    account_ids: list[int] = Query(default=[]),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[ExpenseResponse]:
    with engine.begin() as conn:
        require_member(conn, organization_id, user_id)
        items = list_expenses(
            conn,
            organization_id,
            account_ids=account_ids or None,
            start_date=start_date,
            end_date=end_date,
        )
    return [_expense_response(item) for item in items]


@app.get(
    "/organizations/{organization_id}/expenses/summary",
    response_model=SummaryStatsResponse,
)
def get_expense_summary(
    organization_id: int,
    account_ids: list[int] = Query(default=[]),
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> SummaryStatsResponse:
    with engine.begin() as conn:
        stats = calculate_summary_stats(conn, user_id, organization_id, account_ids)
    return SummaryStatsResponse(
        last_30_days=money(stats.last_30_days),
        current_month=money(stats.current_month),
        total_count=stats.total_count,
        currency=stats.currency,
        last_30_days_breakdown=_account_totals_response(stats.last_30_days_breakdown),
        current_month_breakdown=_account_totals_response(stats.current_month_breakdown),
    )


@app.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def put_expense(
    expense_id: int,
    payload: ExpenseUpdatePayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> ExpenseResponse:
    with engine.begin() as conn:
        expense = update_expense(
            conn,
            user_id,
            expense_id,
            category_id=payload.category_id,
            amount=payload.amount,
            expense_date=payload.expense_date,
            currency=payload.currency,
            rate_type=payload.rate_type,
            custom_rate=payload.custom_rate,
            title=payload.title,
            description=payload.description,
            team_member_id=payload.team_member_id,
        )
    return _expense_response(expense)


@app.delete("/expenses/{expense_id}")
def remove_expense(
    expense_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        delete_expense(conn, user_id, expense_id)
    return {"status": "deleted"}


@app.post("/expense-accounts/{account_id}/subscriptions", response_model=SubscriptionResponse)
def post_subscription(
    account_id: int,
    payload: SubscriptionPayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        subscription = create_subscription(
            conn,
            user_id,
            account_id,
            payload.category_id,
            payload.title,
            payload.amount,
            payload.start_date,
            currency=payload.currency,
            rate_type=payload.rate_type,
            custom_rate=payload.custom_rate,
            renewal_frequency=payload.renewal_frequency,
            renewal_date=payload.renewal_date,
            custom_interval_days=payload.custom_interval_days,
            reminder_days=payload.reminder_days,
            status=payload.status,
            description=payload.description,
        )
    return _subscription_response(subscription)


@app.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
def post_cancel_subscription(
    subscription_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        return _subscription_response(cancel_subscription(conn, user_id, subscription_id))


@app.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionResponse)
def post_pause_subscription(
    subscription_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        return _subscription_response(pause_subscription(conn, user_id, subscription_id))


@app.post("/subscriptions/{subscription_id}/deactivate", response_model=SubscriptionResponse)
def post_deactivate_subscription(
    subscription_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        return _subscription_response(deactivate_subscription(conn, user_id, subscription_id))


@app.post("/subscriptions/{subscription_id}/resume", response_model=SubscriptionResponse)
def post_resume_subscription(
    subscription_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        return _subscription_response(resume_subscription(conn, user_id, subscription_id))


@app.put(
    "/subscriptions/{subscription_id}/reminder-settings", response_model=SubscriptionResponse
)
def put_reminder_settings(
    subscription_id: int,
    payload: ReminderSettingsPayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        subscription = update_reminder_settings(
            conn, user_id, subscription_id, payload.reminder_days
        )
    return _subscription_response(subscription)


@app.put("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def put_subscription(
    subscription_id: int,
    payload: SubscriptionUpdatePayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        subscription = update_subscription(
            conn,
            user_id,
            subscription_id,
            title=payload.title,
            description=payload.description,
            amount=payload.amount,
            currency=payload.currency,
            rate_type=payload.rate_type,
            custom_rate=payload.custom_rate,
            renewal_date=payload.renewal_date,
            renewal_frequency=payload.renewal_frequency,
            custom_interval_days=payload.custom_interval_days,
            reminder_days=payload.reminder_days,
            status=payload.status,
        )
    return _subscription_response(subscription)


@app.delete("/subscriptions/{subscription_id}")
def remove_subscription(
    subscription_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        delete_subscription(conn, user_id, subscription_id)
    return {"status": "deleted"}


@app.get(
    "/organizations/{organization_id}/subscriptions/upcoming",
    response_model=list[SubscriptionResponse],
)
def get_upcoming_subscription_renewals(
    organization_id: int,
    days: int = Query(30, ge=1, le=365),
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[SubscriptionResponse]:
    with engine.begin() as conn:
        items = get_upcoming_renewals(conn, user_id, organization_id, days=days)
    return [_subscription_response(item) for item in items]


@app.post("/organizations/{organization_id}/team-members", response_model=TeamMemberResponse)
def post_team_member(
    organization_id: int,
    payload: TeamMemberPayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> TeamMemberResponse:
    with engine.begin() as conn:
        member = create_team_member(
            conn,
            user_id,
            organization_id,
            payload.name,
            email=payload.email,
            account_ids=payload.account_ids,
        )
    return _team_member_response(member)


@app.post("/loans", response_model=LoanResponse)
def post_loan(
    payload: LoanPayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> LoanResponse:
    try:
        payload = LoanPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        loan = create_standalone_loan(
            conn,
            user_id,
            payload.team_member_id,
            payload.business_id,
            payload.amount,
            payload.loan_date,
            currency=payload.currency,
            rate_type=payload.rate_type,
            custom_rate=payload.custom_rate,
            notes=payload.notes,
        )
    return _loan_response(loan)


@app.get("/organizations/{organization_id}/loans", response_model=list[LoanResponse])
def get_loans(
    organization_id: int,
    status: str | None = Query(None),
    account_id: int | None = Query(None),
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[LoanResponse]:
    with engine.begin() as conn:
        require_member(conn, organization_id, user_id)
        items = list_loans(conn, organization_id, status=status, account_id=account_id)
    return [_loan_response(item) for item in items]


@app.get("/loans/{loan_id}", response_model=LoanHistoryResponse)
def get_loan_details(
    loan_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> LoanHistoryResponse:
    with engine.begin() as conn:
        history = get_loan_history(conn, user_id, loan_id)
    return LoanHistoryResponse(
        loan=_loan_response(history.loan),
        payments=[_payment_response(item) for item in history.payments],
        total_paid=money(history.total_paid),
    )


@app.post("/loans/{loan_id}/payments", response_model=LoanPaymentResponse)
def post_loan_payment(
    loan_id: int,
    payload: LoanPaymentPayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
) -> LoanPaymentResponse:
    with engine.begin() as conn:
        payment = record_loan_payment(
            conn,
            user_id,
            loan_id,
            payload.amount,
            payload.payment_date,
            currency=payload.currency,
            rate_type=payload.rate_type,
            custom_rate=payload.custom_rate,
            payment_type=payload.payment_type,
            notes=payload.notes,
        )
    with engine.connect() as conn:
        notify_payment_received(conn, mailer, payment, settings.app_base_url)
    return _payment_response(payment)


@app.post("/loans/{loan_id}/cancel", response_model=LoanResponse)
def post_cancel_loan(
    loan_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> LoanResponse:
    with engine.begin() as conn:
        return _loan_response(cancel_loan(conn, user_id, loan_id))


@app.post("/loans/{loan_id}/default", response_model=LoanResponse)
def post_default_loan(
    loan_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> LoanResponse:
    with engine.begin() as conn:
        return _loan_response(mark_loan_defaulted(conn, user_id, loan_id))


@app.get(
    "/expense-accounts/{account_id}/analytics/category-breakdown",
    response_model=list[CategoryBreakdownResponse],
)
def get_account_category_breakdown(
    account_id: int,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[CategoryBreakdownResponse]:
    with engine.begin() as conn:
        items = get_category_breakdown(conn, user_id, account_id, start_date, end_date)
    return [
        CategoryBreakdownResponse(
            category_id=item.category_id,
            category_name=item.category_name,
            currency=item.currency,
            total_amount=money(item.total_amount),
            count=item.count,
        )
        for item in items
    ]


@app.get(
    "/expense-accounts/{account_id}/analytics/trends", response_model=list[TrendPointResponse]
)
def get_account_trends(
    account_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    group_by: str = Query("month"),
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[TrendPointResponse]:
    with engine.begin() as conn:
        points = get_trend_analysis(conn, user_id, account_id, start_date, end_date, group_by)
    return [
        TrendPointResponse(period=point.period, currency=point.currency, total=money(point.total))
        for point in points
    ]


@app.get(
    "/expense-accounts/{account_id}/analytics/team-members",
    response_model=list[TeamMemberTotalResponse],
)
def get_account_team_member_summary(
    account_id: int,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[TeamMemberTotalResponse]:
    with engine.begin() as conn:
        items = get_team_member_expense_summary(conn, user_id, account_id, start_date, end_date)
    return [
        TeamMemberTotalResponse(
            team_member_id=item.team_member_id,
            team_member_name=item.team_member_name,
            currency=item.currency,
            total_amount=money(item.total_amount),
            count=item.count,
        )
        for item in items
    ]


@app.get(
    "/organizations/{organization_id}/analytics/accounts",
    response_model=list[AccountComparisonResponse],
)
def get_account_comparison(
    organization_id: int,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[AccountComparisonResponse]:
    with engine.begin() as conn:
        items = compare_accounts(conn, user_id, organization_id, start_date, end_date)
    return [
        AccountComparisonResponse(
            account_id=item.account_id,
            account_name=item.account_name,
            currency=item.currency,
            total_amount=money(item.total_amount),
            base_currency_amount=money(item.base_currency_amount),
            count=item.count,
        )
        for item in items
    ]


@app.post("/organizations/{organization_id}/reports/custom", response_model=ReportResponse)
def post_custom_report(
    organization_id: int,
    payload: CustomReportPayload,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> ReportResponse:
    with engine.begin() as conn:
        report = generate_custom_report(
            conn,
            user_id,
            organization_id,
            payload.report_period_start,
            payload.report_period_end,
            report_currency=payload.report_currency,
            account_ids=payload.account_ids,
            report_type=payload.report_type,
            report_name=payload.report_name,
            include_details=payload.include_details,
        )
    return _report_response(report)


@app.get("/organizations/{organization_id}/reports", response_model=list[ReportResponse])
def get_reports(
    organization_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> list[ReportResponse]:
    with engine.begin() as conn:
        return [_report_response(item) for item in list_reports(conn, user_id, organization_id)]


@app.get("/reports/{report_id}", response_model=ReportResponse)
def get_report_details(
    report_id: int,
    user_id: int = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
) -> ReportResponse:
    with engine.begin() as conn:
        return _report_response(get_report(conn, user_id, report_id))


@app.get("/cron/expense-reminders", dependencies=[Depends(require_cron_secret)])
def cron_expense_reminders(
    engine: Engine = Depends(get_engine),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
) -> dict:
    result = process_subscription_reminders(engine, mailer, app_base_url=settings.app_base_url)
    return {"success": True, "reminders_sent": result["reminders_sent"]}


@app.get("/cron/generate-monthly-reports", dependencies=[Depends(require_cron_secret)])
def cron_generate_monthly_reports(
    engine: Engine = Depends(get_engine),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
) -> dict:
    result = generate_monthly_reports(engine, mailer, app_base_url=settings.app_base_url)
    return {"success": True, "reports_generated": result["reports_generated"]}
