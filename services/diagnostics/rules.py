"""
Built-in diagnostic rules.

Each rule is a Rule value wrapping a pure evaluation function over a RuleView.
Registration order (BUILTIN_RULES) is the order findings are produced before
the aggregator sorts them.
"""

import math
from datetime import datetime, timezone
from typing import List, Optional

from .constants import (
    AMZ_DATE_FORMAT,
    AMZ_DATE_PARAM,
    LABEL_API,
    LABEL_CORS_PREFLIGHT,
    LABEL_NAT_TRAVERSAL,
    LABEL_SIGNALING,
    LINK_OVERLAPS,
    LINK_RETRIES,
    NEGOTIATION_LABELS,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
)
from .models import Entry, Finding, Rule, RuleView
from .utils import format_epoch_ms

NO_NAT_TRAVERSAL = "no-nat-traversal"
HIGH_LATENCY = "high-latency"
EMPTY_REQUEST_BODY = "empty-request-body"
UNAUTHENTICATED_401 = "unauthenticated-401"
EXPIRED_SIGNED_URL = "expired-signed-url"
FAILED_REQUEST_RETRIED = "failed-request-retried"
API_FAILURE_DURING_NEGOTIATION = "api-failure-during-negotiation"


def _describe_request(entry: Entry) -> str:
    method = entry.method or entry.url.scheme.upper()
    return f"{method} {entry.url.normalized}"


def _format_ms(value: float) -> str:
    """Shortest exact text for a millisecond value, without a trailing '.0'."""
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


# ============================================================
# Rule evaluators
# ============================================================

def _no_nat_traversal(view: RuleView) -> List[Finding]:
    if view.with_label(LABEL_NAT_TRAVERSAL):
        return []
    signaling = view.with_label(LABEL_SIGNALING)
    if not signaling:
        return []
    return [Finding.create(
        NO_NAT_TRAVERSAL,
        SEVERITY_WARNING,
        "No STUN/TURN servers detected — NAT traversal may fail.",
        (e.id for e in signaling),
    )]


def _high_latency(view: RuleView) -> List[Finding]:
    threshold = view.config.max_latency_ms
    findings = []
    for entry in view.with_label(LABEL_API):
        if entry.duration_ms > threshold:
            findings.append(Finding.create(
                HIGH_LATENCY,
                SEVERITY_WARNING,
                "{request} took {duration} ms, exceeding the {threshold} ms latency threshold",
                [entry.id],
                request=_describe_request(entry),
                duration=_format_ms(entry.duration_ms),
                threshold=_format_ms(threshold),
                duration_ms=entry.duration_ms,
                threshold_ms=threshold,
            ))
    return findings


def _empty_request_body(view: RuleView) -> List[Finding]:
    minimum = view.config.min_payload_size
    findings = []
    for entry in view.entries:
        if entry.method not in ("POST", "PUT"):
            continue
        size = entry.request_body_size
        if size is None or size > minimum:
            continue
        findings.append(Finding.create(
            EMPTY_REQUEST_BODY,
            SEVERITY_INFO,
            "{request} sent a {size}-byte request body (minimum payload size {minimum} bytes)",
            [entry.id],
            request=_describe_request(entry),
            size=size,
            minimum=minimum,
        ))
    return findings


def _unauthenticated_401(view: RuleView) -> List[Finding]:
    auth_headers = view.config.auth_header_names
    findings = []
    for entry in view.entries:
        if entry.response_status != 401:
            continue
        if any(name in entry.request_headers for name in auth_headers):
            continue
        findings.append(Finding.create(
            UNAUTHENTICATED_401,
            SEVERITY_CRITICAL,
            "{request} returned 401 and the request carried none of: {headers}",
            [entry.id],
            request=_describe_request(entry),
            headers=", ".join(auth_headers),
        ))
    return findings


def signed_url_expiry_ms(entry: Entry, param: str) -> Optional[float]:
    """
    Expiry instant (epoch ms) encoded in a signed URL, or None.

    With an ``X-Amz-Date`` signing instant the parameter is a lifetime in
    seconds relative to it; otherwise it is absolute Unix-epoch seconds.
    """
    raw = entry.url.query_value(param)
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    if not math.isfinite(seconds):
        return None

    signed_at = entry.url.query_value(AMZ_DATE_PARAM)
    if signed_at:
        try:
            signed = datetime.strptime(signed_at, AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            return None
        return (signed.timestamp() + seconds) * 1000.0
    return seconds * 1000.0


def _expired_signed_url(view: RuleView) -> List[Finding]:
    param = view.config.expiry_query_param
    findings = []
    for entry in view.entries:
        expiry_ms = signed_url_expiry_ms(entry, param)
        if expiry_ms is None or expiry_ms >= entry.start_ms:
            continue
        findings.append(Finding.create(
            EXPIRED_SIGNED_URL,
            SEVERITY_CRITICAL,
            "Signed URL {url} expired at {expired_at}, before the request started at {requested_at}",
            [entry.id],
            url=entry.url.normalized,
            expired_at=format_epoch_ms(expiry_ms),
            requested_at=format_epoch_ms(entry.start_ms),
        ))
    return findings


def _failed_request_retried(view: RuleView) -> List[Finding]:
    findings = []
    for link in view.links_of_kind(LINK_RETRIES):
        failed = view.entry(link.source_id)
        retry = view.entry(link.target_id)
        if failed is None or retry is None:
            continue
        status = "no response" if failed.response_status is None else str(failed.response_status)
        findings.append(Finding.create(
            FAILED_REQUEST_RETRIED,
            SEVERITY_WARNING,
            "{request} failed ({status}) and was retried {delay_ms:.0f} ms later",
            [failed.id, retry.id],
            request=_describe_request(failed),
            status=status,
            delay_ms=retry.start_ms - failed.start_ms,
        ))
    return findings


def _api_failure_during_negotiation(view: RuleView) -> List[Finding]:
    findings = []
    for link in view.links_of_kind(LINK_OVERLAPS):
        pair = (view.entry(link.source_id), view.entry(link.target_id))
        if None in pair:
            continue
        for api_entry, peer in (pair, pair[::-1]):
            if LABEL_API not in view.labels_of(api_entry.id):
                continue
            peer_labels = view.labels_of(peer.id) & NEGOTIATION_LABELS
            status = api_entry.response_status
            if not peer_labels or status is None or status < 400:
                continue
            findings.append(Finding.create(
                API_FAILURE_DURING_NEGOTIATION,
                SEVERITY_WARNING,
                "{request} failed with {status} while {peer_kind} traffic to {peer_host} was in flight",
                [api_entry.id, peer.id],
                request=_describe_request(api_entry),
                status=status,
                peer_kind="/".join(sorted(peer_labels)),
                peer_host=peer.url.host or peer.url.raw,
            ))
            break
    return findings


# ============================================================
# Registry
# ============================================================

BUILTIN_RULES = (
    Rule(
        rule_id=NO_NAT_TRAVERSAL,
        evaluate=_no_nat_traversal,
        default_severity=SEVERITY_WARNING,
        applicable_domains=frozenset({LABEL_SIGNALING, LABEL_NAT_TRAVERSAL}),
        description="Signaling traffic with no STUN/TURN exchange anywhere in the trace.",
    ),
    Rule(
        rule_id=HIGH_LATENCY,
        evaluate=_high_latency,
        default_severity=SEVERITY_WARNING,
        applicable_domains=frozenset({LABEL_API}),
        description="API request slower than max_latency_ms.",
    ),
    Rule(
        rule_id=EMPTY_REQUEST_BODY,
        evaluate=_empty_request_body,
        default_severity=SEVERITY_INFO,
        description="POST/PUT whose request body is no larger than min_payload_size.",
    ),
    Rule(
        rule_id=UNAUTHENTICATED_401,
        evaluate=_unauthenticated_401,
        default_severity=SEVERITY_CRITICAL,
        excluded_domains=frozenset({LABEL_CORS_PREFLIGHT}),
        description="401 response to a request without any configured auth header.",
    ),
    Rule(
        rule_id=EXPIRED_SIGNED_URL,
        evaluate=_expired_signed_url,
        default_severity=SEVERITY_CRITICAL,
        description=(
            "Signed URL whose expiry precedes the request's own timestamp. The expiry "
            "parameter is absolute Unix-epoch seconds, or a lifetime in seconds from "
            "X-Amz-Date when that parameter is present."
        ),
    ),
    Rule(
        rule_id=FAILED_REQUEST_RETRIED,
        evaluate=_failed_request_retried,
        default_severity=SEVERITY_WARNING,
        description="Request that failed (no response or 5xx) and was sent again.",
    ),
    Rule(
        rule_id=API_FAILURE_DURING_NEGOTIATION,
        evaluate=_api_failure_during_negotiation,
        default_severity=SEVERITY_WARNING,
        applicable_domains=frozenset({LABEL_API, LABEL_SIGNALING, LABEL_NAT_TRAVERSAL}),
        description="API error overlapping signaling or NAT-traversal traffic.",
    ),
)
