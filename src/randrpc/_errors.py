"""
Failure taxonomy for the randrpc SDK.

This module defines the closed set of failures the quota governor can produce:

- AllowanceExceeded: The API key's server-side daily allowance is exhausted.
- InsufficientLocalBudget: The client-tracked request budget reached zero.
- ServiceError: The service reported an application-level error.

All three extend RandomOrgFailure. The governor returns them as values
(see BackoffGovernor.admit() and BackoffGovernor.observe()); the client
facade raises them. They are plain data: construction never fails and
equality is by value.

Example:
    >>> from randrpc._errors import ServiceError
    >>> error = ServiceError("Parameter 'n' is out of range", code=202)
    >>> error.code
    202
    >>> ServiceError("boom").code
    -1
"""

from __future__ import annotations

from typing import Any

# Sentinel used when the service did not report a numeric error code.
NO_ERROR_CODE = -1


class RandomOrgFailure(Exception):
    """
    Base class for every failure produced by the quota governor.

    Subclasses are value objects: two failures are equal when they have the
    same class and the same fields. This makes them easy to assert on in tests
    and safe to use as dict keys or in sets.

    Attributes:
        message: Human-readable description, surfaced to end users.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def _fields(self) -> tuple[Any, ...]:
        return (self.message,)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RandomOrgFailure) or type(other) is not type(self):
            return NotImplemented
        return self._fields() == other._fields()

    def __hash__(self) -> int:
        return hash((type(self), self._fields()))

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r})"


class AllowanceExceeded(RandomOrgFailure):
    """
    The API key's server allowance for the current UTC day is exhausted.

    No request is sent until the next midnight UTC; the resume timestamp is
    part of the message.
    """

    pass


class InsufficientLocalBudget(RandomOrgFailure):
    """
    The client's own request budget reached zero before the server reset.

    Raised locally, before the service is contacted, to avoid a wasted round
    trip. Like AllowanceExceeded it clears at the next midnight UTC.
    """

    pass


class ServiceError(RandomOrgFailure):
    """
    Application-level error reported by the remote JSON-RPC service.

    The code mirrors the service's published error-code table. When the
    service did not send one, the code is the NO_ERROR_CODE sentinel (-1),
    never None.

    Attributes:
        message: The error message reported by the service.
        code: The service error code, or -1 when absent.

    Example:
        >>> try:
        ...     client.generate_integers(n=5, min=1, max=6)
        ... except ServiceError as e:
        ...     if e.code == 401:
        ...         print("API key is not running")
    """

    def __init__(self, message: str, code: int | None = NO_ERROR_CODE):
        self.code = NO_ERROR_CODE if code is None else code
        super().__init__(message)

    def _fields(self) -> tuple[Any, ...]:
        return (self.message, self.code)

    def __repr__(self) -> str:
        return f"ServiceError(message={self.message!r}, code={self.code})"
