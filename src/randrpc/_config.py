"""
Global configuration for the randrpc SDK.

Users can optionally call RANDRPC.configure() at application startup to
customize defaults. If not called, sensible defaults are used.

Hierarchy of precedence (highest to lowest):
1. Arguments passed to RandomOrgClient
2. Values set via RANDRPC.configure()
3. Environment variables (RANDRPC_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from randrpc import RANDRPC
    >>> RANDRPC.config.client.request_timeout
    120
    >>> RANDRPC.configure(
    ...     client={"api_key": "6b1e65b9-..."},
    ...     quota={"daily_request_quota": 1000},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Self

# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


# Env var spellings for "no limit" on optional numeric fields
NO_LIMIT_VALUES = ("none", "null", "forever")


def parse_int_list(raw_value: str) -> tuple[int, ...]:
    """Parse a comma separated list of integers, e.g. "402, 405"."""
    return tuple(int(part) for part in raw_value.split(",") if part.strip())


def parse_optional_seconds(raw_value: str) -> float | None:
    """
    Parse a duration in seconds where "none" or any negative value means no limit.

    Example:
        >>> parse_optional_seconds("30")
        30.0
        >>> parse_optional_seconds("-1") is None
        True
    """
    if raw_value.strip().lower() in NO_LIMIT_VALUES:
        return None
    seconds = float(raw_value)
    return None if seconds < 0 else seconds


def parse_optional_int(raw_value: str) -> int | None:
    """Parse an integer where "none" means untracked."""
    if raw_value.strip().lower() in NO_LIMIT_VALUES:
        return None
    return int(raw_value)


class EnvVars:
    """
    Reads environment variables with type conversion.

    Example:
        >>> EnvVars.get("RANDRPC_CLIENT_REQUEST_TIMEOUT", type_hint=int)
        60
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles string annotations (from __future__ import annotations),
        including optional ones such as "int | None".
        """
        type_str = str(type_hint).replace(" | None", "")

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration sections.

    Provides `.with_overrides()` for partial updates (rejecting unknown field
    names) and `.with_env_vars()` for env var overrides declared in field
    metadata.
    """

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Args:
            overrides: Dict of field names to new values.
            allow_none_fields: Field names that accept None as a real value.
                       By default, None values are filtered out.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        allow_none = allow_none_fields or set()
        filtered = {k: v for k, v in overrides.items() if v is not None or k in allow_none}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if not env_var or not os.environ.get(env_var):
                continue
            # A set variable may still convert to None (e.g. "none" for no limit)
            overrides[f.name] = EnvVars.get(
                var_name=env_var,
                type_hint=f.type,
                converter=f.metadata.get("converter"),
            )
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class ClientConfig(OverridableConfig):
    """
    Configuration for RandomOrgClient.

    Attributes:
        api_key: API key issued by the service.
            Env var: RANDRPC_CLIENT_API_KEY

        base_url: JSON-RPC endpoint.
            Env var: RANDRPC_CLIENT_BASE_URL

        request_timeout: HTTP request timeout in seconds.
            Env var: RANDRPC_CLIENT_REQUEST_TIMEOUT

        blocking_timeout: Maximum seconds a request may wait before being
            sent (server advisory delay, or its turn in the serialized queue)
            before giving up with SendTimeoutError. None waits forever.
            Env var: RANDRPC_CLIENT_BLOCKING_TIMEOUT ("none" or a negative
            value means no limit)

        retry_max_retries: Retries for transport failures (timeouts,
            connection errors, 5xx). Service errors are never retried.
            Env var: RANDRPC_CLIENT_RETRY_MAX_RETRIES

        retry_initial_delay: Initial retry delay in seconds (doubles per attempt).
            Env var: RANDRPC_CLIENT_RETRY_INITIAL_DELAY

        default_delay: Advisory delay in seconds used when a response does
            not carry `advisoryDelay`.
            Env var: RANDRPC_CLIENT_DEFAULT_DELAY

        serialized: Send requests one at a time from a single worker thread,
            in submission order. When False, callers send from their own
            thread, still one at a time so the advisory delay holds.
            Env var: RANDRPC_CLIENT_SERIALIZED
    """

    api_key: str | None = field(default=None, metadata={"env": "RANDRPC_CLIENT_API_KEY"})
    base_url: str = field(default="https://api.random.org/json-rpc/4/invoke", metadata={"env": "RANDRPC_CLIENT_BASE_URL"})
    request_timeout: float = field(default=120.0, metadata={"env": "RANDRPC_CLIENT_REQUEST_TIMEOUT"})
    blocking_timeout: float | None = field(
        default=86400.0,
        metadata={"env": "RANDRPC_CLIENT_BLOCKING_TIMEOUT", "converter": parse_optional_seconds},
    )
    retry_max_retries: int = field(default=0, metadata={"env": "RANDRPC_CLIENT_RETRY_MAX_RETRIES"})
    retry_initial_delay: float = field(default=0.5, metadata={"env": "RANDRPC_CLIENT_RETRY_INITIAL_DELAY"})
    default_delay: float = field(default=1.0, metadata={"env": "RANDRPC_CLIENT_DEFAULT_DELAY"})
    serialized: bool = field(default=True, metadata={"env": "RANDRPC_CLIENT_SERIALIZED"})

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """blocking_timeout accepts None (wait forever)."""
        return super().with_overrides(
            overrides,
            allow_none_fields={"blocking_timeout"} | (allow_none_fields or set()),
        )

    def validate(self) -> Self:
        """Validate client configuration fields."""
        if self.api_key is not None and self.api_key == "":
            raise ConfigValidationError(
                "api_key", self.api_key,
                "Must not be empty string.", section="client"
            )
        if not (self.base_url.startswith("http://") or self.base_url.startswith("https://")):
            raise ConfigValidationError(
                "base_url", self.base_url,
                "Must start with 'http://' or 'https://'.", section="client"
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="client"
            )
        if self.blocking_timeout is not None and self.blocking_timeout < 0:
            raise ConfigValidationError(
                "blocking_timeout", self.blocking_timeout,
                "Must be >= 0 or None.", section="client"
            )
        if self.retry_max_retries < 0:
            raise ConfigValidationError(
                "retry_max_retries", self.retry_max_retries,
                "Must be >= 0.", section="client"
            )
        if self.retry_initial_delay <= 0:
            raise ConfigValidationError(
                "retry_initial_delay", self.retry_initial_delay,
                "Must be greater than 0.", section="client"
            )
        if self.default_delay < 0:
            raise ConfigValidationError(
                "default_delay", self.default_delay,
                "Must be >= 0.", section="client"
            )
        return self


@dataclass(frozen=True)
class QuotaConfig(OverridableConfig):
    """
    Configuration for the quota governor.

    Attributes:
        daily_request_quota: Initial local request budget, restored at every
            midnight UTC. None keeps the budget untracked until the server
            sends a `requestsLeft` hint.
            Env var: RANDRPC_QUOTA_DAILY_REQUEST_QUOTA ("none" for untracked)

        allowance_codes: Service error codes that latch the server allowance
            flag until the next midnight UTC.
            Env var: RANDRPC_QUOTA_ALLOWANCE_CODES (comma separated)
    """

    daily_request_quota: int | None = field(
        default=None,
        metadata={"env": "RANDRPC_QUOTA_DAILY_REQUEST_QUOTA", "converter": parse_optional_int},
    )
    allowance_codes: tuple[int, ...] = field(
        default=(402,),
        metadata={"env": "RANDRPC_QUOTA_ALLOWANCE_CODES", "converter": parse_int_list},
    )

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """daily_request_quota accepts None (untracked)."""
        return super().with_overrides(
            overrides,
            allow_none_fields={"daily_request_quota"} | (allow_none_fields or set()),
        )

    def validate(self) -> Self:
        """Validate quota configuration fields."""
        if self.daily_request_quota is not None and self.daily_request_quota < 0:
            raise ConfigValidationError(
                "daily_request_quota", self.daily_request_quota,
                "Must be >= 0 or None.", section="quota"
            )
        if not all(isinstance(code, int) for code in self.allowance_codes):
            raise ConfigValidationError(
                "allowance_codes", self.allowance_codes,
                "Must contain only integers.", section="quota"
            )
        return self


@dataclass(frozen=True)
class RandRpcConfig:
    """
    Global configuration for the randrpc SDK.

    Attributes:
        client: RandomOrgClient configuration.
        quota: Quota governor configuration.
    """

    client: ClientConfig = field(default_factory=ClientConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)

    def with_env_vars(self) -> RandRpcConfig:
        """Return a new config with RANDRPC_* environment variables applied."""
        return RandRpcConfig(
            client=self.client.with_env_vars(),
            quota=self.quota.with_env_vars(),
        )

    def with_section_overrides(
        self,
        *,
        client: dict[str, Any] | None = None,
        quota: dict[str, Any] | None = None,
    ) -> RandRpcConfig:
        """Return a new config with per-section overrides applied."""
        return RandRpcConfig(
            client=self.client.with_overrides(client or {}),
            quota=self.quota.with_overrides(quota or {}),
        )


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _RANDRPC:
    """
    Singleton for SDK configuration.

    Example:
        >>> from randrpc import RANDRPC
        >>> RANDRPC.configure(quota={"daily_request_quota": 1000})
        >>> RANDRPC.config.quota.daily_request_quota
        1000
    """

    def __init__(self) -> None:
        self._config: RandRpcConfig = RandRpcConfig().with_env_vars()

    def configure(
        self,
        *,
        client: dict[str, Any] | None = None,
        quota: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> RandRpcConfig:
        """
        Configure SDK settings.

        Args:
            client: RandomOrgClient config overrides.
            quota: Quota governor config overrides.
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, ignores env vars entirely.

        Returns:
            The configured RandRpcConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = RandRpcConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(client=client, quota=quota)
        return self.validate()

    @property
    def config(self) -> RandRpcConfig:
        return self._config

    def reset(self) -> RandRpcConfig:
        """Reset configuration to defaults + env vars. Useful between tests."""
        self._config = RandRpcConfig().with_env_vars()
        return self.validate()

    def validate(self) -> RandRpcConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self._config.client.validate()
        self._config.quota.validate()
        return self._config

    def __repr__(self) -> str:
        return f"RANDRPC(config={self._config!r})"


# Global singleton instance - always reflects current configuration
RANDRPC: _RANDRPC = _RANDRPC()
RANDRPC.validate()
