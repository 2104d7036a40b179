"""
Constants and patterns for trace diagnostics.

Shared across all diagnostic modules.
"""

import re
from typing import Dict, FrozenSet, Tuple

# === Domain Labels ===

LABEL_SIGNALING = "signaling"
LABEL_NAT_TRAVERSAL = "nat-traversal"
LABEL_API = "api"
LABEL_CORS_PREFLIGHT = "cors-preflight"

ALL_LABELS: FrozenSet[str] = frozenset({
    LABEL_SIGNALING,
    LABEL_NAT_TRAVERSAL,
    LABEL_API,
    LABEL_CORS_PREFLIGHT,
})

# Labels on the negotiation side of an overlaps link; the other side is api
NEGOTIATION_LABELS: FrozenSet[str] = frozenset({LABEL_SIGNALING, LABEL_NAT_TRAVERSAL})


# === Severities ===

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

# Higher rank sorts first in the aggregated report
SEVERITY_RANK: Dict[str, int] = {
    SEVERITY_CRITICAL: 2,
    SEVERITY_WARNING: 1,
    SEVERITY_INFO: 0,
}


# === Link Kinds ===

LINK_PRECEDES = "precedes"
LINK_OVERLAPS = "overlaps"
LINK_RETRIES = "retries"

LINK_KINDS: FrozenSet[str] = frozenset({LINK_PRECEDES, LINK_OVERLAPS, LINK_RETRIES})


# === URL Schemes ===

NAT_TRAVERSAL_SCHEMES: FrozenSet[str] = frozenset({"stun", "stuns", "turn", "turns"})
WEBSOCKET_SCHEMES: FrozenSet[str] = frozenset({"ws", "wss"})

# Query values that embed an ICE server URI, e.g. ?ice=turn:turn.example.com:3478
ICE_URI_VALUE_RE = re.compile(r"^(stuns?|turns?):", re.IGNORECASE)


# === Engine Defaults ===

DEFAULT_MAX_LATENCY_MS = 1000
DEFAULT_API_PATH_PATTERNS: Tuple[str, ...] = ("/api/*", "/graphql")
DEFAULT_MIN_PAYLOAD_SIZE = 0
DEFAULT_CORRELATION_SLACK_MS = 2000
DEFAULT_SIGNALING_WINDOW_MS = 5000
DEFAULT_AUTH_HEADER_NAMES: Tuple[str, ...] = ("Authorization", "X-API-Key")
DEFAULT_EXPIRY_QUERY_PARAM = "X-Amz-Expires"
DEFAULT_MAX_SKIP_FRACTION = 0.5
DEFAULT_SIGNALING_MARKERS: Tuple[str, ...] = (
    "webrtc", "sdp", "sip", "websocket", "signaling", "signalling",
)
DEFAULT_NAT_TRAVERSAL_HOST_PATTERNS: Tuple[str, ...] = (
    "stun.*", "turn.*", "*.stun.*", "*.turn.*",
)
DEFAULT_PARALLEL_THRESHOLD = 5000
DEFAULT_MAX_WORKERS = 4


# === Signed URL ===

# Companion of X-Amz-Expires: the signing instant in ISO-8601 basic format
AMZ_DATE_PARAM = "X-Amz-Date"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


# === Header Names ===

ACCESS_CONTROL_ALLOW_ORIGIN = "access-control-allow-origin"

# Raw-record keys accepted by the normalizer: canonical name -> aliases
RAW_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "startTime": ("startTime", "start_time", "startedDateTime"),
    "duration": ("duration", "duration_ms", "time"),
    "method": ("method",),
    "url": ("url",),
    "requestHeaders": ("requestHeaders", "request_headers", "headers"),
    "responseStatus": ("responseStatus", "response_status", "status"),
    "responseHeaders": ("responseHeaders", "response_headers"),
    "requestBodySize": ("requestBodySize", "request_body_size"),
    "responseBodySize": ("responseBodySize", "response_body_size"),
    "protocol": ("protocol", "httpVersion", "http_version"),
}
