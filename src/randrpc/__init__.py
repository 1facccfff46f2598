"""
randrpc: quota-governed client for the RANDOM.ORG JSON-RPC API.

Every request goes through a BackoffGovernor that decides, before and after
the round trip, whether requests may proceed. The governor tracks two
independent quotas per API key: the server allowance (latched when the
service reports it exhausted) and a local request budget. Both reset at
midnight UTC.

Quick Start:
    >>> from randrpc import RandomOrgClient
    >>> client = RandomOrgClient.for_api_key("6b1e65b9-4186-45c2-8981-b77a9842c4f0")
    >>> client.generate_integers(n=5, min=1, max=6)
    [3, 1, 6, 6, 2]

Governor only:
    >>> from randrpc import BackoffGovernor, QuotaState, RpcOutcome, SystemClock
    >>> clock = SystemClock()
    >>> governor = BackoffGovernor(QuotaState(daily_request_quota=1000))
    >>> admission = governor.admit(clock.now())
    >>> failure = governor.observe(RpcOutcome.from_response(body), clock.now())

Global Configuration:
    >>> from randrpc import RANDRPC
    >>> RANDRPC.configure(
    ...     client={"api_key": "6b1e65b9-...", "retry_max_retries": 2},
    ...     quota={"daily_request_quota": 1000, "allowance_codes": (402,)},
    ... )

Failures:
    - RandomOrgFailure: Base class of the governor's failures.
    - AllowanceExceeded: Server allowance exhausted until next midnight UTC.
    - InsufficientLocalBudget: Local request budget exhausted until next midnight UTC.
    - ServiceError: Service-reported error (`code` is -1 when absent).

Governance:
    - BackoffGovernor: admit()/observe() around every request.
    - QuotaState / QuotaSnapshot: Per-credential exhaustion flags and budget.
    - ErrorCodePolicy / ErrorCodeRule: Service error-code table.
    - ClockSource / SystemClock / ManualClock: UTC time sources.

Transport:
    - HttpClient / RequestsHttpClient: JSON POST transport.
    - BadHTTPResponseError: Non-200 HTTP response.
    - SendTimeoutError: Request could not be sent within blocking_timeout.
    - Retrying / RetryableError / MaxRetriesExceededError: Transport retries.

Client:
    - RandomOrgClient: JSON-RPC client (serialized request queue by default).
    - RandomOrgCache: Background-prefetched result sets (create_*_cache()).
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("randrpc")

from randrpc._cache import RandomOrgCache
from randrpc._clock import (
    ClockSource,
    ManualClock,
    SystemClock,
    next_midnight_utc_after,
)
from randrpc._config import (
    RANDRPC,
    ClientConfig,
    ConfigEnvVarError,
    ConfigValidationError,
    QuotaConfig,
    RandRpcConfig,
)
from randrpc._errors import (
    NO_ERROR_CODE,
    AllowanceExceeded,
    InsufficientLocalBudget,
    RandomOrgFailure,
    ServiceError,
)
from randrpc._governor import (
    Admission,
    Admitted,
    BackoffGovernor,
    RpcOutcome,
)
from randrpc._http import (
    BadHTTPResponseError,
    HttpClient,
    RequestsHttpClient,
)
from randrpc._policy import (
    DEFAULT_ERROR_CODE_POLICY,
    ErrorCodePolicy,
    ErrorCodeRule,
)
from randrpc._quota import (
    QuotaSnapshot,
    QuotaState,
)
from randrpc._retry import (
    MaxRetriesExceededError,
    RetryableError,
    Retrying,
)
from randrpc.client import (
    RandomOrgClient,
    SendTimeoutError,
)

__all__ = [
    "__version__",
    # Configuration
    "RANDRPC",
    "RandRpcConfig",
    "ClientConfig",
    "QuotaConfig",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # Failures
    "RandomOrgFailure",
    "AllowanceExceeded",
    "InsufficientLocalBudget",
    "ServiceError",
    "NO_ERROR_CODE",
    # Governance
    "BackoffGovernor",
    "Admission",
    "Admitted",
    "RpcOutcome",
    "QuotaState",
    "QuotaSnapshot",
    "ErrorCodePolicy",
    "ErrorCodeRule",
    "DEFAULT_ERROR_CODE_POLICY",
    "ClockSource",
    "SystemClock",
    "ManualClock",
    "next_midnight_utc_after",
    # Transport
    "HttpClient",
    "RequestsHttpClient",
    "BadHTTPResponseError",
    "SendTimeoutError",
    "Retrying",
    "RetryableError",
    "MaxRetriesExceededError",
    # Client
    "RandomOrgClient",
    "RandomOrgCache",
]
