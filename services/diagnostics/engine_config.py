"""
Immutable engine configuration.

One EngineConfig value is threaded explicitly through the normalizer,
classifier, correlator and rule engine. Validation happens at construction so
that a bad threshold or glob pattern fails before any entry is processed.
"""

import fnmatch
import re
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional, Tuple

from .constants import (
    DEFAULT_API_PATH_PATTERNS,
    DEFAULT_AUTH_HEADER_NAMES,
    DEFAULT_CORRELATION_SLACK_MS,
    DEFAULT_EXPIRY_QUERY_PARAM,
    DEFAULT_MAX_LATENCY_MS,
    DEFAULT_MAX_SKIP_FRACTION,
    DEFAULT_MAX_WORKERS,
    DEFAULT_MIN_PAYLOAD_SIZE,
    DEFAULT_NAT_TRAVERSAL_HOST_PATTERNS,
    DEFAULT_PARALLEL_THRESHOLD,
    DEFAULT_SIGNALING_MARKERS,
    DEFAULT_SIGNALING_WINDOW_MS,
)
from .errors import ConfigurationError

# camelCase option names used by trace loaders -> field names
_OPTION_ALIASES: Dict[str, str] = {
    "maxLatency": "max_latency_ms",
    "max_latency": "max_latency_ms",
    "apiPathPatterns": "api_path_patterns",
    "minPayloadSize": "min_payload_size",
    "correlationSlackMs": "correlation_slack_ms",
    "signalingWindowMs": "signaling_window_ms",
    "authHeaderNames": "auth_header_names",
    "expiryQueryParam": "expiry_query_param",
    "maxSkipFraction": "max_skip_fraction",
    "signalingMarkers": "signaling_markers",
    "natTraversalHostPatterns": "nat_traversal_host_patterns",
    "parallelThreshold": "parallel_threshold",
    "maxWorkers": "max_workers",
}

_TUPLE_FIELDS = {
    "api_path_patterns",
    "auth_header_names",
    "signaling_markers",
    "nat_traversal_host_patterns",
}


@dataclass(frozen=True)
class EngineConfig:
    max_latency_ms: float = DEFAULT_MAX_LATENCY_MS
    api_path_patterns: Tuple[str, ...] = DEFAULT_API_PATH_PATTERNS
    min_payload_size: int = DEFAULT_MIN_PAYLOAD_SIZE
    correlation_slack_ms: float = DEFAULT_CORRELATION_SLACK_MS
    signaling_window_ms: float = DEFAULT_SIGNALING_WINDOW_MS
    auth_header_names: Tuple[str, ...] = DEFAULT_AUTH_HEADER_NAMES
    expiry_query_param: str = DEFAULT_EXPIRY_QUERY_PARAM
    max_skip_fraction: float = DEFAULT_MAX_SKIP_FRACTION
    signaling_markers: Tuple[str, ...] = DEFAULT_SIGNALING_MARKERS
    nat_traversal_host_patterns: Tuple[str, ...] = DEFAULT_NAT_TRAVERSAL_HOST_PATTERNS
    parallel_threshold: int = DEFAULT_PARALLEL_THRESHOLD
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self):
        for name in _TUPLE_FIELDS:
            value = getattr(self, name)
            if isinstance(value, str) or not isinstance(value, (list, tuple)):
                raise ConfigurationError(f"'{name}' must be a list of strings, got: {value!r}")
            object.__setattr__(self, name, tuple(value))

        _require_number("max_latency_ms", self.max_latency_ms, minimum=0, exclusive=True)
        _require_number("min_payload_size", self.min_payload_size, minimum=0)
        _require_number("correlation_slack_ms", self.correlation_slack_ms, minimum=0, exclusive=True)
        _require_number("signaling_window_ms", self.signaling_window_ms, minimum=0)
        _require_number("max_skip_fraction", self.max_skip_fraction, minimum=0, maximum=1)
        _require_number("parallel_threshold", self.parallel_threshold, minimum=1, integral=True)
        _require_number("max_workers", self.max_workers, minimum=1, integral=True)

        for pattern in self.api_path_patterns:
            _validate_glob("api_path_patterns", pattern, path_pattern=True)
        for pattern in self.nat_traversal_host_patterns:
            _validate_glob("nat_traversal_host_patterns", pattern, path_pattern=False)

        _require_strings("auth_header_names", self.auth_header_names, allow_empty=False)
        _require_strings("signaling_markers", self.signaling_markers, allow_empty=True)

        if not isinstance(self.expiry_query_param, str) or not self.expiry_query_param.strip():
            raise ConfigurationError("'expiry_query_param' must be a non-empty string.")

    @classmethod
    def from_mapping(cls, options: Optional[Mapping[str, Any]] = None) -> "EngineConfig":
        """
        Build a config from a loader/YAML mapping.

        Accepts camelCase option names (``maxLatency``) and field names
        (``max_latency_ms``). ``None`` values fall back to defaults; unknown
        keys are rejected.
        """
        if options is None:
            return cls()
        if not isinstance(options, Mapping):
            raise ConfigurationError(f"Engine options must be a mapping, got: {type(options).__name__}")

        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise ConfigurationError(f"Unknown engine option: '{key}'")
            if name in kwargs:
                raise ConfigurationError(f"Engine option '{name}' given more than once")
            if value is None:
                continue
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = list(value) if isinstance(value, tuple) else value
        return result


# ============================================================
# Validation helpers
# ============================================================

def _require_number(
    name: str,
    value: Any,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
    exclusive: bool = False,
    integral: bool = False,
) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"'{name}' must be a number, got: {value!r}")
    if integral and int(value) != value:
        raise ConfigurationError(f"'{name}' must be a whole number, got: {value!r}")
    if minimum is not None:
        if exclusive and value <= minimum:
            raise ConfigurationError(f"'{name}' must be greater than {minimum}, got: {value}")
        if not exclusive and value < minimum:
            raise ConfigurationError(f"'{name}' must be at least {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"'{name}' must be at most {maximum}, got: {value}")


def _require_strings(name: str, values: Tuple[Any, ...], allow_empty: bool) -> None:
    if not values and not allow_empty:
        raise ConfigurationError(f"'{name}' must contain at least one value.")
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"'{name}' entries must be non-empty strings, got: {value!r}")


def _validate_glob(name: str, pattern: Any, path_pattern: bool) -> None:
    """Reject non-string, empty or structurally broken glob patterns."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigurationError(f"'{name}' entries must be non-empty strings, got: {pattern!r}")
    if path_pattern and not pattern.startswith(("/", "*")):
        raise ConfigurationError(
            f"'{name}' pattern '{pattern}' must start with '/' or '*' to match a URL path."
        )
    if pattern.count("[") != pattern.count("]"):
        raise ConfigurationError(f"'{name}' pattern '{pattern}' has an unbalanced character class.")
    try:
        re.compile(fnmatch.translate(pattern))
    except re.error as exc:
        raise ConfigurationError(f"'{name}' pattern '{pattern}' is not a valid glob: {exc}") from exc
