"""
Back-off governor: decides whether a request may be sent, and classifies
what came back.

The governor is the only component that mutates QuotaState. It is used in
two steps around every request:

1. `admit(now)` before dispatching. Returns `Admitted` or a failure
   (AllowanceExceeded, InsufficientLocalBudget). No I/O, no sleeping.
2. `observe(outcome, now)` after the transport returns. Returns None for a
   plain success, or a ServiceError when the response carried an error
   object. Transport exceptions are re-raised unchanged.

Failures are returned, never raised, so every call site has to handle them
explicitly. The client facade is what turns them into exceptions.

Example:
    >>> governor = BackoffGovernor(QuotaState(daily_request_quota=1000))
    >>> admission = governor.admit(clock.now())
    >>> if isinstance(admission, RandomOrgFailure):
    ...     raise admission
    >>> body = http_client.post(url, data=payload).json()
    >>> failure = governor.observe(RpcOutcome.from_response(body), clock.now())
    >>> if failure is not None:
    ...     raise failure
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from randrpc._errors import (
    AllowanceExceeded,
    InsufficientLocalBudget,
    RandomOrgFailure,
    ServiceError,
)
from randrpc._policy import DEFAULT_ERROR_CODE_POLICY, ErrorCodePolicy
from randrpc._quota import QuotaState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admitted:
    """
    Successful admission: the caller may dispatch the request.

    Attributes:
        requests_left: Local request budget at admission time, or None when
            the budget is untracked.
    """

    requests_left: int | None = None


@dataclass(frozen=True)
class RpcOutcome:
    """
    What the transport collaborator produced for one request.

    Exactly one of three shapes:

    - plain success: `result` set, `error` and `transport_error` None;
    - service error: `error` holds the JSON-RPC error object;
    - transport failure: `transport_error` holds the collaborator's exception.

    Use `from_response()` and `from_exception()` rather than the constructor.
    """

    result: Any = None
    error: Any = None
    transport_error: BaseException | None = None

    @classmethod
    def from_response(cls, body: dict[str, Any]) -> RpcOutcome:
        """Build an outcome from a parsed JSON-RPC response body."""
        assert isinstance(body, dict), "JSON-RPC response body must be a JSON object."
        error = body.get("error")
        if error is not None:
            return cls(error=error)
        return cls(result=body.get("result"))

    @classmethod
    def from_exception(cls, exc: BaseException) -> RpcOutcome:
        assert exc is not None, "Transport exception cannot be None."
        return cls(transport_error=exc)

    @property
    def is_transport_failure(self) -> bool:
        return self.transport_error is not None

    @property
    def has_service_error(self) -> bool:
        return self.error is not None

    @property
    def error_code(self) -> int | None:
        """Service error code exactly as reported, or None when absent or not an integer."""
        if not isinstance(self.error, dict):
            return None
        code = self.error.get("code")
        if isinstance(code, bool) or not isinstance(code, int):
            return None
        return code

    @property
    def error_message(self) -> str:
        if isinstance(self.error, dict):
            message = self.error.get("message")
            return "" if message is None else str(message)
        return "" if self.error is None else str(self.error)


# Result of `BackoffGovernor.admit()`.
Admission = Admitted | AllowanceExceeded | InsufficientLocalBudget


class BackoffGovernor:
    """
    Gatekeeper for every request made with one API key.

    Holds the QuotaState lock for the whole of `admit()` and `observe()`, so
    concurrent callers see consistent exhaustion flags and never decrement
    the budget past zero.

    Args:
        state: Quota state for the credential. A new untracked one by default.
        policy: Error-code table deciding which service codes latch the
            allowance flag.
        logger_prefix: Prefix for log messages (e.g., "RandomOrgClient(1a2b…)").
    """

    def __init__(
        self,
        state: QuotaState | None = None,
        policy: ErrorCodePolicy = DEFAULT_ERROR_CODE_POLICY,
        logger_prefix: str = "",
    ):
        assert policy is not None, "policy cannot be None."

        self._state = state if state is not None else QuotaState()
        self.policy = policy
        self.logger_prefix = logger_prefix

    @property
    def state(self) -> QuotaState:
        return self._state

    def _prefix(self) -> str:
        return f"{self.logger_prefix} | " if self.logger_prefix else ""

    def admit(self, now: datetime) -> Admission:
        """
        Decide whether a request may be dispatched at `now`.

        Stale exhaustion is cleared first (`QuotaState.refresh`). The server
        allowance is checked before the local budget, so at most one failure
        is produced.

        Returns:
            Admitted, AllowanceExceeded or InsufficientLocalBudget.
        """
        with self._state.locked() as state:
            state.refresh(now)

            if state.allowance_exhausted:
                resume_at = state.allowance_resume_at
                assert resume_at is not None
                logger.warning(f"{self._prefix()}Request rejected: server allowance exhausted.")
                return AllowanceExceeded(f"allowance exceeded; resume at {resume_at.isoformat()}")

            if state.local_budget_exhausted:
                resume_at = state.local_budget_resume_at
                assert resume_at is not None
                logger.warning(f"{self._prefix()}Request rejected: local request budget exhausted.")
                return InsufficientLocalBudget(
                    f"insufficient local request budget; resume at {resume_at.isoformat()}"
                )

            logger.debug(f"{self._prefix()}Request admitted (requests_left={state.requests_left}).")
            return Admitted(requests_left=state.requests_left)

    def observe(self, outcome: RpcOutcome, now: datetime) -> RandomOrgFailure | None:
        """
        Update the quota state from a finished request.

        Args:
            outcome: What the transport collaborator produced.
            now: Current instant, used for any resume timestamp.

        Returns:
            ServiceError if the response carried an error object, else None.

        Raises:
            BaseException: The transport collaborator's own exception,
                unchanged, when `outcome` is a transport failure.
        """
        assert outcome is not None, "outcome cannot be None."

        if outcome.transport_error is not None:
            raise outcome.transport_error

        with self._state.locked() as state:
            if outcome.has_service_error:
                code = outcome.error_code
                failure = ServiceError(outcome.error_message, code)
                label = self.policy.label_for(failure.code) or "unknown error code"
                if code is not None and self.policy.latches_allowance(code):
                    state.mark_allowance_exceeded(now)
                logger.warning(
                    f"{self._prefix()}Service error {failure.code} ({label}): {failure.message}"
                )
                return failure

            requests_left, bits_left = _usage_hints(outcome.result)
            if requests_left is not None:
                state.apply_usage_hint(now, requests_left, bits_left)
            else:
                state.record_successful_request(now)
                if bits_left is not None:
                    state.apply_usage_hint(now, None, bits_left)
            return None


def _usage_hints(result: Any) -> tuple[int | None, int | None]:
    """Extract integer `requestsLeft` / `bitsLeft` from a result object, if any."""
    if not isinstance(result, dict):
        return None, None

    def _int_or_none(value: Any) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    return _int_or_none(result.get("requestsLeft")), _int_or_none(result.get("bitsLeft"))
