from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from expense_ledger.settings import Settings

MONEY = Numeric(20, 8)
RATE = Numeric(20, 10)
STORAGE_QUANTUM = Decimal("0.00000001")
RATE_QUANTUM = Decimal("0.0000000001")

metadata = MetaData()

organizations = Table(
    "organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(255), nullable=False, unique=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

members = Table(
    "members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("email", String(255)),
    Column("role", String(20), nullable=False, server_default="member"),
    UniqueConstraint("organization_id", "user_id", name="uq_members_org_user"),
)

expense_accounts = Table(
    "expense_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

team_members = Table(
    "team_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("business_id", Integer, ForeignKey("expense_accounts.id")),
    Column("name", String(255), nullable=False),
    Column("email", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

team_member_accounts = Table(
    "team_member_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("team_member_id", Integer, ForeignKey("team_members.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("expense_accounts.id"), nullable=False),
    UniqueConstraint("team_member_id", "account_id", name="uq_team_member_accounts"),
)

expense_categories = Table(
    "expense_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("name", String(255), nullable=False),
    UniqueConstraint("organization_id", "name", name="uq_expense_categories_org_name"),
)

currency_rates = Table(
    "currency_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("from_currency", String(3), nullable=False),
    Column("to_currency", String(3), nullable=False),
    Column("rate", RATE, nullable=False),
    Column("symbol", String(10)),
    Column("symbol_position", String(5), nullable=False, server_default="left"),
    Column("separator", String(3), nullable=False, server_default=","),
    Column("decimal_separator", String(3), nullable=False, server_default="."),
    Column("updated_by", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("organization_id", "to_currency", name="uq_currency_rates_org_currency"),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("expense_account_id", Integer, ForeignKey("expense_accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("expense_categories.id")),
    Column("title", String(255), nullable=False),
    Column("description", String(500)),
    Column("amount", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("rate_type", String(10), nullable=False, server_default="default"),
    Column("conversion_rate", RATE),
    Column("base_currency_amount", MONEY, nullable=False),
    Column("start_date", Date, nullable=False),
    Column("renewal_date", Date, nullable=False),
    Column("renewal_frequency", String(10), nullable=False),
    Column("custom_interval_days", Integer),
    Column("reminder_days", Integer, nullable=False, server_default="7"),
    Column("next_reminder_date", Date, nullable=False),
    Column("last_reminder_date", Date),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_by", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("expense_account_id", Integer, ForeignKey("expense_accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("expense_categories.id"), nullable=False),
    Column("team_member_id", Integer, ForeignKey("team_members.id")),
    Column("subscription_id", Integer, ForeignKey("subscriptions.id")),
    Column("title", String(255)),
    Column("description", String(500)),
    Column("amount", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("rate_type", String(10), nullable=False, server_default="default"),
    Column("conversion_rate", RATE),
    Column("base_currency_amount", MONEY, nullable=False),
    Column("date", Date, nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_by", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expense_reminders = Table(
    "expense_reminders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subscription_id", Integer, ForeignKey("subscriptions.id"), nullable=False),
    Column("reminder_type", String(20), nullable=False),
    Column("renewal_date", Date, nullable=False),
    Column("scheduled_date", Date, nullable=False),
    Column("status", String(20), nullable=False),
    Column("recipients", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "subscription_id", "reminder_type", "renewal_date", name="uq_expense_reminders_cycle"
    ),
)

loans = Table(
    "loans",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("expense_account_id", Integer, ForeignKey("expense_accounts.id"), nullable=False),
    Column("team_member_id", Integer, ForeignKey("team_members.id"), nullable=False),
    Column("amount", MONEY, nullable=False),
    Column("principal_amount", MONEY, nullable=False),
    Column("current_balance", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("rate_type", String(10), nullable=False, server_default="default"),
    Column("conversion_rate", RATE),
    Column("base_currency_amount", MONEY, nullable=False),
    Column("loan_date", Date, nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("notes", String(500)),
    Column("created_by", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

loan_payments = Table(
    "loan_payments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("loan_id", Integer, ForeignKey("loans.id"), nullable=False),
    Column("amount", MONEY, nullable=False),
    Column("original_amount", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("conversion_rate", RATE),
    Column("payment_date", Date, nullable=False),
    Column("payment_type", String(10), nullable=False, server_default="principal"),
    Column("notes", String(500)),
    Column("recorded_by", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expense_reports = Table(
    "expense_reports",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("report_name", String(255), nullable=False),
    Column("report_type", String(30), nullable=False),
    Column("report_period_start", Date, nullable=False),
    Column("report_period_end", Date, nullable=False),
    Column("report_currency", String(3), nullable=False),
    Column("selected_account_ids", JSON),
    Column("total_expenses", MONEY, nullable=False),
    Column("category_breakdown", JSON, nullable=False),
    Column("report_data", JSON, nullable=False),
    Column("is_scheduled", Boolean, nullable=False, server_default="0"),
    Column("email_sent_at", DateTime),
    Column("created_by", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

rate_limit_counters = Table(
    "rate_limit_counters",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("count", Integer, nullable=False),
    Column("reset_at", Float, nullable=False),
)


def create_engine_from_settings(settings: Settings) -> Engine:
    return build_engine(settings.database_url, echo=settings.sqlalchemy_echo)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, echo=echo, **kwargs)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


def to_storage(amount: Decimal) -> Decimal:
    """Quantize a money value to the column scale before it is written."""
    return amount.quantize(STORAGE_QUANTUM, rounding=ROUND_HALF_UP)


def rate_to_storage(rate: Decimal | None) -> Decimal | None:
    if rate is None:
        return None
    return rate.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)
