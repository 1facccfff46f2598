"""
Error-code policy table for service-reported errors.

The service publishes a versioned table of numeric error codes. The governor
does not branch on codes itself: it asks an ErrorCodePolicy whether a code
also latches the allowance-exhausted flag, and which label describes it.
Extending the table when the service adds codes is a data change only.

Example:
    >>> from randrpc._policy import DEFAULT_ERROR_CODE_POLICY, ErrorCodeRule
    >>> DEFAULT_ERROR_CODE_POLICY.latches_allowance(402)
    True
    >>> policy = DEFAULT_ERROR_CODE_POLICY.with_rules({
    ...     405: ErrorCodeRule("Daily request allowance exceeded (v5)", latches_allowance=True),
    ... })
    >>> policy.latches_allowance(405)
    True
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType


@dataclass(frozen=True)
class ErrorCodeRule:
    """
    What a service error code means to the governor.

    Attributes:
        label: Short human-readable description of the code.
        latches_allowance: Whether receiving this code marks the server
            allowance as exhausted until the next midnight UTC.
    """

    label: str
    latches_allowance: bool = False


class ErrorCodePolicy(Mapping[int, ErrorCodeRule]):
    """
    Immutable mapping of service error codes to ErrorCodeRule.

    Codes without a rule are still reported as ServiceError; they just never
    latch any exhaustion flag.
    """

    def __init__(self, rules: Mapping[int, ErrorCodeRule] | None = None):
        self._rules: Mapping[int, ErrorCodeRule] = MappingProxyType(dict(rules or {}))

    def __getitem__(self, code: int) -> ErrorCodeRule:
        return self._rules[code]

    def __iter__(self) -> Iterator[int]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"ErrorCodePolicy({dict(self._rules)!r})"

    def rule_for(self, code: int) -> ErrorCodeRule | None:
        return self._rules.get(code)

    def latches_allowance(self, code: int) -> bool:
        rule = self._rules.get(code)
        return rule is not None and rule.latches_allowance

    def label_for(self, code: int) -> str | None:
        rule = self._rules.get(code)
        return rule.label if rule else None

    def with_rules(self, rules: Mapping[int, ErrorCodeRule]) -> ErrorCodePolicy:
        """Return a new policy with `rules` added or replacing existing entries."""
        return ErrorCodePolicy({**self._rules, **rules})

    def with_allowance_codes(self, codes: Iterable[int]) -> ErrorCodePolicy:
        """
        Return a new policy where exactly `codes` latch the allowance.

        Labels are kept for known codes; unknown codes get a generic label.
        """
        latching = set(codes)
        merged: dict[int, ErrorCodeRule] = {
            code: ErrorCodeRule(rule.label, latches_allowance=code in latching)
            for code, rule in self._rules.items()
        }
        for code in latching - merged.keys():
            merged[code] = ErrorCodeRule("Allowance exceeded", latches_allowance=True)
        return ErrorCodePolicy(merged)


# Published RANDOM.ORG error codes plus the standard JSON-RPC 2.0 codes.
# See https://api.random.org/json-rpc/4/error-codes
DEFAULT_ERROR_CODE_POLICY = ErrorCodePolicy({
    # JSON-RPC 2.0
    -32700: ErrorCodeRule("Parse error"),
    -32600: ErrorCodeRule("Invalid request"),
    -32601: ErrorCodeRule("Method not found"),
    -32602: ErrorCodeRule("Invalid params"),
    -32603: ErrorCodeRule("Internal error"),
    # Service availability
    100: ErrorCodeRule("Service unavailable for maintenance"),
    101: ErrorCodeRule("Service temporarily restricted"),
    # Parameters
    200: ErrorCodeRule("Parameter is malformed"),
    201: ErrorCodeRule("Parameter has illegal characters"),
    202: ErrorCodeRule("Parameter is out of range"),
    203: ErrorCodeRule("Parameter length is out of range"),
    204: ErrorCodeRule("Parameter is not a valid member"),
    # Request constraints
    300: ErrorCodeRule("Range constraint violated"),
    301: ErrorCodeRule("Not enough values without replacement"),
    302: ErrorCodeRule("Account or ticket constraint violated"),
    303: ErrorCodeRule("Unsupported parameter combination"),
    304: ErrorCodeRule("Request size constraint violated"),
    # API key
    400: ErrorCodeRule("API key does not exist"),
    401: ErrorCodeRule("API key is not running"),
    402: ErrorCodeRule("Daily request allowance exceeded", latches_allowance=True),
    403: ErrorCodeRule("Daily bit allowance exceeded"),
    # Server
    500: ErrorCodeRule("Internal server error"),
    32000: ErrorCodeRule("Service error"),
})
