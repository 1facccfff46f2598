"""
Quota state shared by every request made with one API key.

QuotaState tracks two independent exhaustion flags:

- Server allowance: latched when the service reports an allowance-exceeded
  error code. Enforced by the server; the client only mirrors it.
- Local budget: a client-side request counter, decremented on every
  successful request and re-synchronised from `requestsLeft` hints.

Each flag carries a resume timestamp (the next midnight UTC after it was
set). Until that instant passes, the flag stays set; `refresh()` clears it
afterwards.

All methods are thread-safe. They share one re-entrant lock, exposed through
`locked()` so the governor can run a whole admission or observation as a
single atomic sequence.

Example:
    >>> state = QuotaState(daily_request_quota=2)
    >>> state.record_successful_request(now)
    >>> state.record_successful_request(now)
    >>> state.local_budget_exhausted
    True
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from randrpc._clock import ClockSource, SystemClock, as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaSnapshot:
    """
    Immutable, consistent copy of a QuotaState at one instant.

    Attributes:
        allowance_exhausted: Whether the server allowance is latched.
        allowance_resume_at: When the allowance flag clears, or None.
        local_budget_exhausted: Whether the local budget is latched.
        local_budget_resume_at: When the local budget flag clears, or None.
        requests_left: Local request budget, or None when untracked.
        bits_left: Last bits-left hint reported by the server, or None.
    """

    allowance_exhausted: bool
    allowance_resume_at: datetime | None
    local_budget_exhausted: bool
    local_budget_resume_at: datetime | None
    requests_left: int | None
    bits_left: int | None


class QuotaState:
    """
    Mutable quota record for a single client credential.

    Args:
        daily_request_quota: Initial value of the local request budget, and
            the value it is restored to at each midnight UTC reset. None means
            the budget is untracked until the server sends a `requestsLeft`
            hint.
        clock: Used only to compute resume timestamps. Defaults to SystemClock.
    """

    def __init__(
        self,
        daily_request_quota: int | None = None,
        clock: ClockSource | None = None,
    ):
        assert daily_request_quota is None or daily_request_quota >= 0, \
            "daily_request_quota must be >= 0 or None."

        self.daily_request_quota = daily_request_quota
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()

        self._allowance_exhausted = False
        self._allowance_resume_at: datetime | None = None
        self._local_budget_exhausted = False
        self._local_budget_resume_at: datetime | None = None
        self._requests_left: int | None = daily_request_quota
        self._bits_left: int | None = None

    @contextmanager
    def locked(self) -> Iterator[QuotaState]:
        """Hold the state lock for a multi-step read-modify-write sequence."""
        with self._lock:
            yield self

    # -------------------------------------------------------------------------
    # Read accessors
    # -------------------------------------------------------------------------

    @property
    def allowance_exhausted(self) -> bool:
        with self._lock:
            return self._allowance_exhausted

    @property
    def allowance_resume_at(self) -> datetime | None:
        with self._lock:
            return self._allowance_resume_at

    @property
    def local_budget_exhausted(self) -> bool:
        with self._lock:
            return self._local_budget_exhausted

    @property
    def local_budget_resume_at(self) -> datetime | None:
        with self._lock:
            return self._local_budget_resume_at

    @property
    def requests_left(self) -> int | None:
        with self._lock:
            return self._requests_left

    @property
    def bits_left(self) -> int | None:
        with self._lock:
            return self._bits_left

    def snapshot(self) -> QuotaSnapshot:
        with self._lock:
            return QuotaSnapshot(
                allowance_exhausted=self._allowance_exhausted,
                allowance_resume_at=self._allowance_resume_at,
                local_budget_exhausted=self._local_budget_exhausted,
                local_budget_resume_at=self._local_budget_resume_at,
                requests_left=self._requests_left,
                bits_left=self._bits_left,
            )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def mark_allowance_exceeded(self, now: datetime) -> datetime:
        """
        Latch the server allowance flag until the next midnight UTC after `now`.

        Calling it again only moves the resume timestamp forward.

        Returns:
            The resume timestamp now in effect.
        """
        with self._lock:
            resume_at = self._clock.next_midnight_utc_after(now)
            if self._allowance_resume_at is None or resume_at > self._allowance_resume_at:
                self._allowance_resume_at = resume_at
            if not self._allowance_exhausted:
                logger.warning(
                    f"⚠️ Server allowance exceeded. Requests are blocked until {self._allowance_resume_at.isoformat()}."
                )
            self._allowance_exhausted = True
            return self._allowance_resume_at

    def mark_local_budget_exceeded(self, now: datetime) -> datetime:
        """
        Latch the local budget flag until the next midnight UTC after `now`.

        Calling it again only moves the resume timestamp forward.

        Returns:
            The resume timestamp now in effect.
        """
        with self._lock:
            resume_at = self._clock.next_midnight_utc_after(now)
            if self._local_budget_resume_at is None or resume_at > self._local_budget_resume_at:
                self._local_budget_resume_at = resume_at
            if not self._local_budget_exhausted:
                logger.warning(
                    f"⚠️ Local request budget exhausted. Requests are blocked until {self._local_budget_resume_at.isoformat()}."
                )
            self._local_budget_exhausted = True
            return self._local_budget_resume_at

    def refresh(self, now: datetime) -> None:
        """
        Clear every latched flag whose resume timestamp has passed.

        When the local budget clears, the counter is restored to the daily
        quota. A tracked counter sitting at zero is latched here, so a budget
        that starts (or is restored) at zero never admits a request.
        """
        now = as_utc(now)
        with self._lock:
            if self._allowance_exhausted and self._allowance_resume_at is not None \
                    and now >= self._allowance_resume_at:
                logger.info("Server allowance back-off is over. Resuming requests.")
                self._allowance_exhausted = False
                self._allowance_resume_at = None

            if self._local_budget_exhausted and self._local_budget_resume_at is not None \
                    and now >= self._local_budget_resume_at:
                logger.info(
                    f"Local request budget reset to {self.daily_request_quota}. Resuming requests."
                )
                self._local_budget_exhausted = False
                self._local_budget_resume_at = None
                self._requests_left = self.daily_request_quota

            if self._requests_left == 0 and not self._local_budget_exhausted:
                self.mark_local_budget_exceeded(now)

    def record_successful_request(self, now: datetime) -> None:
        """
        Count one successful request against the local budget.

        The counter never goes below zero. Reaching zero latches the local
        budget flag. Untracked budgets are left untouched.
        """
        with self._lock:
            if self._requests_left is None:
                return
            self._requests_left = max(0, self._requests_left - 1)
            if self._requests_left == 0:
                self.mark_local_budget_exceeded(now)

    def apply_usage_hint(
        self,
        now: datetime,
        requests_left: int | None,
        bits_left: int | None = None,
    ) -> None:
        """
        Re-synchronise the local budget from server-reported remaining counts.

        The server's `requestsLeft` already accounts for the request that
        carried it, so it replaces the counter rather than being decremented.
        A hint never clears a latched flag before its resume timestamp.

        Args:
            now: Current instant, used if the hint latches the budget.
            requests_left: Server-reported remaining requests, or None.
            bits_left: Server-reported remaining bits, or None.
        """
        with self._lock:
            if bits_left is not None:
                self._bits_left = max(0, bits_left)
            if requests_left is None:
                return
            self._requests_left = max(0, requests_left)
            logger.debug(
                f"Usage hint applied: requests_left={self._requests_left}, bits_left={self._bits_left}"
            )
            if self._requests_left == 0:
                self.mark_local_budget_exceeded(now)

    def __repr__(self) -> str:
        return f"QuotaState({self.snapshot()!r})"
