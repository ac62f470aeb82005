"""Standalone team member loans.

Principal and balance live in the owning account's native currency, so every
payment is converted (payment currency -> base -> account currency) before it
touches the balance. Balance changes are compare-and-set updates guarded in
the WHERE clause, which lets the database serialise concurrent payments on
the same loan row.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from expense_ledger.accounts import get_expense_account, get_team_member, is_team_member_associated
from expense_ledger.currency_conversion import ZERO, coerce_decimal, format_currency, round_money
from expense_ledger.db import expense_accounts, loan_payments, loans, to_storage
from expense_ledger.entries import resolve_money_entry
from expense_ledger.errors import BadRequest, InsufficientBalance, NotFound
from expense_ledger.log import get_logger
from expense_ledger.mailer import LOAN_PAYMENT_RECEIVED, Mailer
from expense_ledger.membership import require_manager, require_member
from expense_ledger.rate_table import load_rate_provider

LOGGER = get_logger(__name__)

LOAN_STATUSES = {"active", "paid", "defaulted", "cancelled"}
PAYMENT_TYPES = {"principal", "interest", "both"}


@dataclass(frozen=True)
class Loan:
    id: int
    expense_account_id: int
    team_member_id: int
    amount: Decimal
    principal_amount: Decimal
    current_balance: Decimal
    currency: str
    rate_type: str
    conversion_rate: Decimal | None
    base_currency_amount: Decimal
    loan_date: date
    status: str
    notes: str | None = None


@dataclass(frozen=True)
class LoanPayment:
    id: int
    loan_id: int
    amount: Decimal
    original_amount: Decimal
    currency: str
    conversion_rate: Decimal | None
    payment_date: date
    payment_type: str
    notes: str | None = None
    recorded_by: int | None = None


@dataclass(frozen=True)
class LoanHistory:
    loan: Loan
    payments: list[LoanPayment] = field(default_factory=list)

    @property
    def total_paid(self) -> Decimal:
        return sum((payment.amount for payment in self.payments), ZERO)


def create_standalone_loan(
    conn: Connection,
    actor_id: int,
    team_member_id: int,
    business_id: int,
    amount: Decimal | int | float | str,
    loan_date: date,
    currency: str | None = None,
    rate_type: str | None = "default",
    custom_rate: Decimal | int | float | str | None = None,
    notes: str | None = None,
    base_currency: str | None = None,
) -> Loan:
    account = get_expense_account(conn, business_id)
    require_manager(conn, account.organization_id, actor_id, "create loans")
    team_member = get_team_member(conn, team_member_id)
    if team_member.organization_id != account.organization_id or not is_team_member_associated(
        conn, team_member_id, business_id
    ):
        raise BadRequest("Team member is not associated with this expense account.")

    provider = load_rate_provider(conn, account.organization_id, base_currency)
    entry = resolve_money_entry(
        amount,
        currency or provider.base_currency,
        account.currency,
        provider,
        rate_type=rate_type,
        custom_rate=custom_rate,
    )
    principal = to_storage(entry.account_amount)
    if principal <= ZERO:
        raise BadRequest("Loan amount is too small to record.")

    row = conn.execute(
        insert(loans)
        .values(
            expense_account_id=business_id,
            team_member_id=team_member_id,
            principal_amount=principal,
            current_balance=principal,
            loan_date=loan_date,
            status="active",
            notes=notes,
            created_by=actor_id,
            **entry.storage_values(),
        )
        .returning(loans.c.id)
    ).first()
    LOGGER.info(
        "Loan %s created for team member %s: %s %s",
        row[0],
        team_member_id,
        round_money(principal),
        account.currency,
    )
    return get_loan(conn, row[0])


def record_loan_payment(
    conn: Connection,
    actor_id: int,
    loan_id: int,
    amount: Decimal | int | float | str,
    payment_date: date,
    currency: str | None = None,
    rate_type: str | None = "default",
    custom_rate: Decimal | int | float | str | None = None,
    payment_type: str = "principal",
    notes: str | None = None,
    base_currency: str | None = None,
) -> LoanPayment:
    """Append a payment and decrement the balance in one guarded update.

    A payment larger than the remaining balance is rejected outright. A loan
    whose balance reaches zero moves to ``paid`` in the same transaction.
    """
    loan = get_loan(conn, loan_id)
    account = get_expense_account(conn, loan.expense_account_id)
    require_manager(conn, account.organization_id, actor_id, "record loan payments")
    normalized_type = (payment_type or "principal").strip().lower()
    if normalized_type not in PAYMENT_TYPES:
        raise BadRequest("Payment type must be 'principal', 'interest', or 'both'.")
    if loan.status != "active":
        raise BadRequest(f"Cannot record a payment on a {loan.status} loan.")

    provider = load_rate_provider(conn, account.organization_id, base_currency)
    entry = resolve_money_entry(
        amount,
        currency or account.currency,
        account.currency,
        provider,
        rate_type=rate_type,
        custom_rate=custom_rate,
    )
    payment_amount = to_storage(entry.account_amount)
    _apply_payment(conn, loan, payment_amount)

    row = conn.execute(
        insert(loan_payments)
        .values(
            loan_id=loan_id,
            amount=payment_amount,
            original_amount=to_storage(entry.amount),
            currency=entry.currency,
            conversion_rate=entry.storage_values()["conversion_rate"],
            payment_date=payment_date,
            payment_type=normalized_type,
            notes=notes,
            recorded_by=actor_id,
        )
        .returning(loan_payments.c.id)
    ).first()
    LOGGER.info(
        "Payment %s of %s %s recorded on loan %s",
        row[0],
        round_money(payment_amount),
        account.currency,
        loan_id,
    )
    return get_payment(conn, row[0])


def _apply_payment(conn: Connection, loan: Loan, payment_amount: Decimal) -> Decimal:
    """Move ``loan`` from the balance it was read with to the balance after ``payment_amount``.

    The new balance and status are computed here in ``Decimal`` and written
    only if the row still holds the balance that was read. A caller working
    from a stale read gets ``InsufficientBalance`` instead of overwriting a
    concurrent payment.
    """
    if payment_amount > loan.current_balance:
        raise InsufficientBalance()
    new_balance = to_storage(loan.current_balance - payment_amount)
    paid_off = new_balance <= ZERO
    result = conn.execute(
        update(loans)
        .where(
            loans.c.id == loan.id,
            loans.c.status == "active",
            loans.c.current_balance == to_storage(loan.current_balance),
        )
        .values(
            current_balance=new_balance,
            status="paid" if paid_off else "active",
            updated_at=func.now(),
        )
    )
    if result.rowcount != 1:
        current = get_loan(conn, loan.id)
        if current.status != "active":
            raise BadRequest(f"Cannot record a payment on a {current.status} loan.")
        raise InsufficientBalance()
    if paid_off:
        LOGGER.info("Loan %s fully repaid", loan.id)
    return new_balance


def cancel_loan(conn: Connection, actor_id: int, loan_id: int) -> Loan:
    """Cancel an active loan; its payment history is kept."""
    return _close_loan(conn, actor_id, loan_id, "cancelled", "cancel loans")


def mark_loan_defaulted(conn: Connection, actor_id: int, loan_id: int) -> Loan:
    return _close_loan(conn, actor_id, loan_id, "defaulted", "mark loans as defaulted")


def _close_loan(conn: Connection, actor_id: int, loan_id: int, status: str, action: str) -> Loan:
    loan = get_loan(conn, loan_id)
    account = get_expense_account(conn, loan.expense_account_id)
    require_manager(conn, account.organization_id, actor_id, action)
    result = conn.execute(
        update(loans)
        .where(loans.c.id == loan_id, loans.c.status == "active")
        .values(status=status, updated_at=func.now())
    )
    if result.rowcount != 1:
        current = get_loan(conn, loan_id)
        raise BadRequest(f"Loan is already {current.status}.")
    LOGGER.info("Loan %s marked %s by user %s", loan_id, status, actor_id)
    return get_loan(conn, loan_id)


def get_loan(conn: Connection, loan_id: int) -> Loan:
    row = conn.execute(select(loans).where(loans.c.id == loan_id)).mappings().first()
    if not row:
        raise NotFound("Loan not found.")
    return _row_to_loan(row)


def get_payment(conn: Connection, payment_id: int) -> LoanPayment:
    row = conn.execute(
        select(loan_payments).where(loan_payments.c.id == payment_id)
    ).mappings().first()
    if not row:
        raise NotFound("Loan payment not found.")
    return _row_to_payment(row)


def get_loan_history(conn: Connection, actor_id: int, loan_id: int) -> LoanHistory:
    loan = get_loan(conn, loan_id)
    account = get_expense_account(conn, loan.expense_account_id)
    require_member(conn, account.organization_id, actor_id)
    rows = conn.execute(
        select(loan_payments)
        .where(loan_payments.c.loan_id == loan_id)
        .order_by(loan_payments.c.payment_date.asc(), loan_payments.c.id.asc())
    ).mappings().all()
    return LoanHistory(loan=loan, payments=[_row_to_payment(row) for row in rows])


def list_loans(
    conn: Connection,
    organization_id: int,
    status: str | None = None,
    account_id: int | None = None,
) -> list[Loan]:
    conditions = [expense_accounts.c.organization_id == organization_id]
    if status is not None:
        if status not in LOAN_STATUSES:
            raise BadRequest("Invalid loan status.")
        conditions.append(loans.c.status == status)
    if account_id is not None:
        conditions.append(loans.c.expense_account_id == account_id)
    rows = conn.execute(
        select(loans)
        .select_from(loans.join(expense_accounts, loans.c.expense_account_id == expense_accounts.c.id))
        .where(*conditions)
        .order_by(loans.c.loan_date.desc(), loans.c.id.desc())
    ).mappings().all()
    return [_row_to_loan(row) for row in rows]


def notify_payment_received(
    conn: Connection, mailer: Mailer, payment: LoanPayment, app_base_url: str = ""
) -> bool:
    """Email the borrowing team member; delivery problems never undo the payment."""
    loan = get_loan(conn, payment.loan_id)
    team_member = get_team_member(conn, loan.team_member_id)
    if not team_member.email:
        return False
    account = get_expense_account(conn, loan.expense_account_id)
    try:
        return mailer.send_email(
            team_member.email,
            LOAN_PAYMENT_RECEIVED,
            {
                "url": f"{app_base_url}/loans/{loan.id}",
                "teamMemberName": team_member.name,
                "businessName": account.name,
                "amount": format_currency(payment.amount, account.currency),
                "remainingBalance": format_currency(loan.current_balance, account.currency),
                "paymentDate": payment.payment_date.isoformat(),
            },
        )
    except Exception:
        LOGGER.exception("Failed to send payment notification for loan %s", loan.id)
        return False


def _row_to_loan(row) -> Loan:
    return Loan(
        id=row["id"],
        expense_account_id=row["expense_account_id"],
        team_member_id=row["team_member_id"],
        amount=coerce_decimal(row["amount"]),
        principal_amount=coerce_decimal(row["principal_amount"]),
        current_balance=coerce_decimal(row["current_balance"]),
        currency=row["currency"],
        rate_type=row["rate_type"],
        conversion_rate=(
            coerce_decimal(row["conversion_rate"]) if row["conversion_rate"] is not None else None
        ),
        base_currency_amount=coerce_decimal(row["base_currency_amount"]),
        loan_date=row["loan_date"],
        status=row["status"],
        notes=row["notes"],
    )


def _row_to_payment(row) -> LoanPayment:
    return LoanPayment(
        id=row["id"],
        loan_id=row["loan_id"],
        amount=coerce_decimal(row["amount"]),
        original_amount=coerce_decimal(row["original_amount"]),
        currency=row["currency"],
        conversion_rate=(
            coerce_decimal(row["conversion_rate"]) if row["conversion_rate"] is not None else None
        ),
        payment_date=row["payment_date"],
        payment_type=row["payment_type"],
        notes=row["notes"],
        recorded_by=row["recorded_by"],
    )
