from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from expense_ledger.log import get_logger

LOGGER = get_logger(__name__)

SUBSCRIPTION_RENEWAL_REMINDER = "subscriptionRenewalReminder"
MONTHLY_EXPENSE_REPORT = "monthlyExpenseReport"
LOAN_PAYMENT_RECEIVED = "loanPaymentReceived"


class Mailer(Protocol):
    def send_email(self, to: str, template_id: str, context: dict[str, Any]) -> bool:
        ...


class LoggingMailer:
    """Mailer used when no delivery service is wired in; it only logs the dispatch."""

    def send_email(self, to: str, template_id: str, context: dict[str, Any]) -> bool:
        LOGGER.info("Email %s queued for %s", template_id, to)
        return True


@dataclass(frozen=True)
class SentEmail:
    to: str
    template_id: str
    context: dict[str, Any]


@dataclass
class RecordingMailer:
    """Collects every message instead of sending it."""

    sent: list[SentEmail] = field(default_factory=list)
    fail_for: set[str] = field(default_factory=set)

    def send_email(self, to: str, template_id: str, context: dict[str, Any]) -> bool:
        if to in self.fail_for:
            raise RuntimeError(f"Delivery to {to} failed")
        self.sent.append(SentEmail(to=to, template_id=template_id, context=dict(context)))
        return True
