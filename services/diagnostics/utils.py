"""
Shared utilities for trace diagnostics.

Contains URL parsing, timestamp/number coercion, header flattening and glob
matching helpers.
"""

import fnmatch
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from .constants import NAT_TRAVERSAL_SCHEMES
from .models import ParsedUrl


# === URL Parsing ===

def parse_url(raw: str) -> ParsedUrl:
    """
    Parse a trace URL into scheme, host, port, path and query map.

    Hierarchical URLs (http, https, ws, wss) go through urlsplit. ICE server
    URIs (RFC 7064/7065) such as ``turn:turn.example.com:3478?transport=udp``
    are opaque, so host and port are taken from the path part instead.

    Raises:
        ValueError: If the URL is empty, has no scheme, or cannot be split.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("URL is empty")

    text = raw.strip()
    parts = urlsplit(text)
    scheme = parts.scheme.lower()
    if not scheme:
        raise ValueError(f"URL has no scheme: {text[:200]}")

    query = _parse_query(parts.query)

    if scheme in NAT_TRAVERSAL_SCHEMES and not parts.netloc:
        host, port = _split_host_port(parts.path)
        return ParsedUrl(raw=text, scheme=scheme, host=host, port=port, path="", query=query)

    # .port raises ValueError on a non-numeric port
    port = parts.port
    host = (parts.hostname or "").lower()
    if not host and scheme in ("http", "https", "ws", "wss"):
        raise ValueError(f"URL has no host: {text[:200]}")

    return ParsedUrl(
        raw=text,
        scheme=scheme,
        host=host,
        port=port,
        path=parts.path or "/",
        query=query,
    )


def _parse_query(query: str) -> MappingProxyType:
    parsed = parse_qs(query, keep_blank_values=True)
    return MappingProxyType({name: tuple(values) for name, values in parsed.items()})


def _split_host_port(authority: str) -> Tuple[str, Optional[int]]:
    """Split ``host[:port]`` (IPv6 literals in brackets) from an opaque URI."""
    authority = authority.strip().lstrip("/")
    if not authority:
        raise ValueError("ICE server URI has no host")

    if authority.startswith("["):
        end = authority.find("]")
        if end == -1:
            raise ValueError(f"Unterminated IPv6 literal: {authority}")
        host = authority[1:end]
        rest = authority[end + 1:]
        port_text = rest[1:] if rest.startswith(":") else ""
    elif ":" in authority:
        host, port_text = authority.rsplit(":", 1)
    else:
        host, port_text = authority, ""

    port = None
    if port_text:
        if not port_text.isdigit():
            raise ValueError(f"Invalid port in ICE server URI: {authority}")
        port = int(port_text)
    return host.lower(), port


# === Timestamps & Numbers ===

def to_epoch_ms(value: Any) -> float:
    """
    Coerce a trace timestamp to milliseconds.

    Numbers are taken as milliseconds already; strings are parsed as numbers
    first and then as ISO-8601 (HAR ``startedDateTime``, e.g.
    "2026-01-12T23:47:41.253Z").

    Raises:
        ValueError: If the value is missing, non-finite or unparsable.
    """
    if value is None or isinstance(value, bool):
        raise ValueError("timestamp is missing")

    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("timestamp is empty")
        try:
            result = float(text)
        except ValueError:
            parsed = _parse_iso_datetime(text)
            if parsed is None:
                raise ValueError(f"unparsable timestamp: {text}")
            result = parsed.timestamp() * 1000.0
    else:
        raise ValueError(f"unsupported timestamp type: {type(value).__name__}")

    if not math.isfinite(result):
        raise ValueError(f"non-finite timestamp: {value}")
    return result


def _parse_iso_datetime(text: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_optional_float(value: Any) -> Optional[float]:
    """Return a finite float, or None for missing values."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got: {value!r}")
    result = float(value)
    if not math.isfinite(result):
        raise ValueError(f"non-finite number: {value!r}")
    return result


def to_optional_size(value: Any) -> Optional[int]:
    """Payload sizes: negative values (HAR uses -1) mean unknown."""
    number = to_optional_float(value)
    if number is None or number < 0:
        return None
    return int(number)


def to_optional_status(value: Any) -> Optional[int]:
    """HTTP status, with absent, 0 and negative values meaning no response."""
    number = to_optional_float(value)
    if number is None:
        return None
    status = int(number)
    return status if status > 0 else None


def format_epoch_ms(epoch_ms: float) -> str:
    """
    UTC ISO-8601 text for an epoch-millisecond instant.

    Instants outside the datetime range are rendered as raw epoch milliseconds.
    """
    try:
        return datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return f"{epoch_ms:.0f} ms since epoch"


# === Headers ===

def headers_to_dict(headers: Any) -> Dict[str, str]:
    """
    Flatten request/response headers into a dict.

    Accepts a mapping or a HAR headers array [{name, value}]. Last occurrence
    wins on duplicate names.

    Raises:
        ValueError: If the shape is neither.
    """
    if headers is None:
        return {}
    if isinstance(headers, Mapping):
        return {str(k): "" if v is None else str(v) for k, v in headers.items()}
    if isinstance(headers, list):
        result: Dict[str, str] = {}
        for item in headers:
            if not isinstance(item, dict):
                raise ValueError(f"header item must be an object, got: {type(item).__name__}")
            name = item.get("name")
            if name is None:
                continue
            value = item.get("value")
            result[str(name)] = "" if value is None else str(value)
        return result
    raise ValueError(f"headers must be a mapping or list, got: {type(headers).__name__}")


# === Glob Matching ===

def matches_any(value: str, patterns: Iterable[str], case_sensitive: bool = True) -> bool:
    """fnmatch-style match of value against any of the patterns."""
    if not value:
        return False
    for pattern in patterns:
        if case_sensitive:
            if fnmatch.fnmatchcase(value, pattern):
                return True
        elif fnmatch.fnmatchcase(value.lower(), pattern.lower()):
            return True
    return False


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    """Split a list into consecutive chunks of at most ``size`` items."""
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]
