from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Mapping, Protocol

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from expense_ledger.db import rate_limit_counters
from expense_ledger.errors import TooManyRequests
from expense_ledger.log import get_logger

LOGGER = get_logger(__name__)

UNKNOWN_CLIENT_KEY = "unknown-ip"
UNKNOWN_CLIENT_MAX_REQUESTS = 5
PRUNE_THRESHOLD = 1000


class CounterStore(Protocol):
    def hit(self, key: str, window_seconds: int, now: float) -> int:
        """Count one request for ``key`` and return the total inside the current window."""
        ...


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryCounterStore:
    """Fixed-window counters for a single process."""

    def __init__(self) -> None:
        self._windows: dict[str, _Window] = {}
        self._lock = Lock()

    def hit(self, key: str, window_seconds: int, now: float) -> int:
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = _Window(count=0, reset_at=now + window_seconds)
                self._windows[key] = window
            window.count += 1
            if len(self._windows) > PRUNE_THRESHOLD:
                self._prune(now)
            return window.count

    def _prune(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]


class SqlCounterStore:
    """Fixed-window counters shared by every process using the same database."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def hit(self, key: str, window_seconds: int, now: float) -> int:
        with self._engine.begin() as conn:
            count = self._bump(conn, key, window_seconds, now)
        if count is not None:
            return count
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(rate_limit_counters).values(
                        key=key, count=1, reset_at=now + window_seconds
                    )
                )
            return 1
        except IntegrityError:
            # another process created the window first
            with self._engine.begin() as conn:
                count = self._bump(conn, key, window_seconds, now)
            return count or 1

    @staticmethod
    def _bump(conn: Connection, key: str, window_seconds: int, now: float) -> int | None:
        reset = conn.execute(
            update(rate_limit_counters)
            .where(rate_limit_counters.c.key == key, rate_limit_counters.c.reset_at < now)
            .values(count=1, reset_at=now + window_seconds)
        )
        if reset.rowcount:
            return 1
        bumped = conn.execute(
            update(rate_limit_counters)
            .where(rate_limit_counters.c.key == key)
            .values(count=rate_limit_counters.c.count + 1)
        )
        if not bumped.rowcount:
            return None
        return conn.execute(
            select(rate_limit_counters.c.count).where(rate_limit_counters.c.key == key)
        ).scalar_one()


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        max_requests: int = 10,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    def check(self, client_ip: str | None) -> int:
        """Count a request from ``client_ip``; raises ``TooManyRequests`` past the limit.

        Requests without an identifiable client share one stricter bucket.
        """
        if client_ip:
            key, limit = client_ip, self.max_requests
        else:
            key, limit = UNKNOWN_CLIENT_KEY, min(self.max_requests, UNKNOWN_CLIENT_MAX_REQUESTS)
        count = self.store.hit(key, self.window_seconds, self._clock())
        if count > limit:
            LOGGER.warning("Rate limit exceeded for %s (%s requests)", key, count)
            raise TooManyRequests()
        return count


def client_ip_from_headers(headers: Mapping[str, str], fallback: str | None = None) -> str | None:
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return fallback
