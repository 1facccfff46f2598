"""Tests for BackoffGovernor admission and observation."""

import threading
from datetime import UTC, datetime, timedelta

import pytest
import requests

from randrpc import (
    AllowanceExceeded,
    Admitted,
    BackoffGovernor,
    ErrorCodePolicy,
    ErrorCodeRule,
    InsufficientLocalBudget,
    QuotaState,
    RpcOutcome,
    ServiceError,
)

NOON = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
MIDNIGHT = datetime(2024, 3, 2, tzinfo=UTC)


def success(result=None):
    return RpcOutcome.from_response({"jsonrpc": "2.0", "result": result or {}, "id": 1})


def service_error(code, message):
    return RpcOutcome.from_response({"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": 1})


# =============================================================================
# RpcOutcome
# =============================================================================


class TestRpcOutcome:
    """Tests for the three outcome shapes."""

    def test_plain_success(self):
        outcome = success({"random": {"data": [1]}})

        assert not outcome.has_service_error
        assert not outcome.is_transport_failure
        assert outcome.result == {"random": {"data": [1]}}

    def test_service_error(self):
        outcome = service_error(300, "invalid param")

        assert outcome.has_service_error
        assert outcome.error_code == 300
        assert outcome.error_message == "invalid param"

    def test_transport_failure(self):
        exc = requests.ConnectionError("refused")
        outcome = RpcOutcome.from_exception(exc)

        assert outcome.is_transport_failure
        assert outcome.transport_error is exc

    def test_null_error_is_success(self):
        outcome = RpcOutcome.from_response({"result": {}, "error": None})

        assert not outcome.has_service_error

    def test_non_integer_code_is_absent(self):
        outcome = RpcOutcome.from_response({"error": {"code": "402", "message": "x"}})

        assert outcome.error_code is None

    def test_missing_message_is_empty(self):
        outcome = RpcOutcome.from_response({"error": {"code": 1}})

        assert outcome.error_message == ""


# =============================================================================
# admit()
# =============================================================================


class TestAdmit:
    """Tests for BackoffGovernor.admit()."""

    def test_admits_with_fresh_state(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=5))

        assert governor.admit(NOON) == Admitted(requests_left=5)

    def test_admits_untracked_budget(self):
        assert BackoffGovernor().admit(NOON) == Admitted(requests_left=None)

    @pytest.mark.parametrize("now", [
        NOON,
        NOON + timedelta(hours=6),
        MIDNIGHT - timedelta(microseconds=1),
    ])
    def test_rejects_before_allowance_resume(self, now):
        governor = BackoffGovernor(QuotaState())
        governor.state.mark_allowance_exceeded(NOON)

        admission = governor.admit(now)

        assert admission == AllowanceExceeded(f"allowance exceeded; resume at {MIDNIGHT.isoformat()}")

    @pytest.mark.parametrize("now", [MIDNIGHT, MIDNIGHT + timedelta(seconds=1), MIDNIGHT + timedelta(days=3)])
    def test_admits_from_allowance_resume_on(self, now):
        governor = BackoffGovernor(QuotaState())
        governor.state.mark_allowance_exceeded(NOON)

        assert isinstance(governor.admit(now), Admitted)
        assert not governor.state.allowance_exhausted

    def test_allowance_checked_before_local_budget(self):
        governor = BackoffGovernor(QuotaState())
        governor.state.mark_allowance_exceeded(NOON)
        governor.state.mark_local_budget_exceeded(NOON)

        assert isinstance(governor.admit(NOON), AllowanceExceeded)

    def test_rejects_when_local_budget_exhausted(self):
        governor = BackoffGovernor(QuotaState())
        governor.state.mark_local_budget_exceeded(NOON)

        admission = governor.admit(NOON)

        assert isinstance(admission, InsufficientLocalBudget)
        assert MIDNIGHT.isoformat() in admission.message

    def test_admit_does_not_change_budget(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=3))

        for _ in range(10):
            governor.admit(NOON)

        assert governor.state.requests_left == 3


# =============================================================================
# observe()
# =============================================================================


class TestObserve:
    """Tests for BackoffGovernor.observe()."""

    def test_plain_success_returns_none_and_counts_request(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=3))

        assert governor.observe(success(), NOON) is None
        assert governor.state.requests_left == 2

    def test_success_with_requests_left_hint_replaces_counter(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=1000))

        governor.observe(success({"requestsLeft": 17, "bitsLeft": 4000}), NOON)

        assert governor.state.requests_left == 17
        assert governor.state.bits_left == 4000

    def test_success_with_bits_only_hint_still_counts_request(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=3))

        governor.observe(success({"bitsLeft": 4000}), NOON)

        assert governor.state.requests_left == 2
        assert governor.state.bits_left == 4000

    def test_unrecognized_error_code_does_not_latch(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=3))

        failure = governor.observe(service_error(300, "invalid param"), NOON)

        assert failure == ServiceError("invalid param", 300)
        assert not governor.state.allowance_exhausted
        assert not governor.state.local_budget_exhausted
        assert governor.state.requests_left == 3

    def test_error_without_code_uses_sentinel(self):
        governor = BackoffGovernor()

        failure = governor.observe(RpcOutcome.from_response({"error": {"message": "odd"}}), NOON)

        assert failure == ServiceError("odd", -1)

    def test_allowance_code_latches_allowance(self):
        policy = ErrorCodePolicy({402: ErrorCodeRule("allowance", latches_allowance=True)})
        governor = BackoffGovernor(QuotaState(), policy=policy)

        failure = governor.observe(service_error(402, "allowance exceeded"), NOON)

        assert failure == ServiceError("allowance exceeded", 402)
        assert governor.state.allowance_exhausted
        assert governor.state.allowance_resume_at == MIDNIGHT

    def test_transport_failure_is_reraised_unchanged(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=3))
        exc = requests.Timeout("timed out")

        with pytest.raises(requests.Timeout) as exc_info:
            governor.observe(RpcOutcome.from_exception(exc), NOON)

        assert exc_info.value is exc
        assert governor.state.requests_left == 3

    def test_custom_policy_code(self):
        policy = ErrorCodePolicy().with_allowance_codes([999])
        governor = BackoffGovernor(QuotaState(), policy=policy)

        governor.observe(service_error(402, "not latching under this policy"), NOON)
        assert not governor.state.allowance_exhausted

        governor.observe(service_error(999, "latching"), NOON)
        assert governor.state.allowance_exhausted


# =============================================================================
# Scenarios
# =============================================================================


class TestScenarios:
    """End-to-end admission/observation sequences."""

    def test_budget_of_two_rejects_third_request(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=2))

        for _ in range(2):
            assert isinstance(governor.admit(NOON), Admitted)
            assert governor.observe(success(), NOON) is None

        admission = governor.admit(NOON)

        assert isinstance(admission, InsufficientLocalBudget)
        assert MIDNIGHT.isoformat() in admission.message

    @pytest.mark.parametrize("budget", [1, 3, 10])
    def test_n_successes_reject_request_n_plus_one(self, budget):
        governor = BackoffGovernor(QuotaState(daily_request_quota=budget))

        for _ in range(budget):
            assert isinstance(governor.admit(NOON), Admitted)
            governor.observe(success(), NOON)

        assert isinstance(governor.admit(NOON), InsufficientLocalBudget)

    def test_budget_resets_at_midnight(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=1))
        governor.admit(NOON)
        governor.observe(success(), NOON)

        assert isinstance(governor.admit(MIDNIGHT - timedelta(seconds=1)), InsufficientLocalBudget)
        assert governor.admit(MIDNIGHT) == Admitted(requests_left=1)

    def test_402_latches_allowance_for_rest_of_day(self):
        policy = ErrorCodePolicy({402: ErrorCodeRule("allowance", latches_allowance=True)})
        governor = BackoffGovernor(QuotaState(), policy=policy)

        failure = governor.observe(service_error(402, "allowance exceeded"), NOON)

        assert failure == ServiceError("allowance exceeded", 402)
        assert isinstance(governor.admit(NOON + timedelta(hours=1)), AllowanceExceeded)
        assert isinstance(governor.admit(MIDNIGHT), Admitted)

    def test_unrecognized_error_keeps_admitting(self):
        governor = BackoffGovernor(QuotaState())

        failure = governor.observe(service_error(300, "invalid param"), NOON)

        assert failure.code == 300
        assert isinstance(governor.admit(NOON), Admitted)

    def test_concurrent_observations_never_overdraw_budget(self):
        governor = BackoffGovernor(QuotaState(daily_request_quota=25))
        barrier = threading.Barrier(8)
        rejections = []

        def worker():
            barrier.wait()
            for _ in range(10):
                governor.observe(success(), NOON)
                admission = governor.admit(NOON)
                if not isinstance(admission, Admitted):
                    rejections.append(admission)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = governor.state.snapshot()
        assert snapshot.requests_left == 0
        assert snapshot.local_budget_exhausted
        assert snapshot.local_budget_resume_at == MIDNIGHT
        assert all(isinstance(r, InsufficientLocalBudget) for r in rejections)
