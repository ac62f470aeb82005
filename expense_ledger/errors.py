from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger validation failures surfaced to callers."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class BadRequest(LedgerError):
    status_code = 400


class RateNotFound(BadRequest):
    """Raised when a conversion hop has no table entry and no custom override."""

    def __init__(self, currency: str, detail: str | None = None) -> None:
        super().__init__(
            detail
            or (
                f"Conversion rate not found for {currency}. Please set up the currency "
                "rate in workspace settings or use a custom rate."
            )
        )
        self.currency = currency


class InsufficientBalance(BadRequest):
    def __init__(self, detail: str = "Payment amount exceeds current loan balance.") -> None:
        super().__init__(detail)


class Forbidden(LedgerError):
    status_code = 403


class NotFound(LedgerError):
    status_code = 404


class Conflict(LedgerError):
    status_code = 409


class TooManyRequests(LedgerError):
    status_code = 429

    def __init__(self, detail: str = "Too many requests. Please try again later.") -> None:
        super().__init__(detail)
