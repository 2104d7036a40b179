import pytest

from services.diagnostics import EngineConfig, RuleEngine, normalize
from services.diagnostics.rules import (
    API_FAILURE_DURING_NEGOTIATION,
    EMPTY_REQUEST_BODY,
    EXPIRED_SIGNED_URL,
    FAILED_REQUEST_RETRIED,
    HIGH_LATENCY,
    NO_NAT_TRAVERSAL,
    UNAUTHENTICATED_401,
    signed_url_expiry_ms,
)
from services.diagnostics.utils import format_epoch_ms

from conftest import BASE_MS

# BASE_MS as an X-Amz-Date value
SIGNED_AT_BASE = "20231114T221320Z"


def _by_rule(report, rule_id):
    return [f for f in report.findings if f.rule_id == rule_id]


# ============================================================
# Acceptance scenarios
# ============================================================

def test_turn_entry_suppresses_no_nat_traversal_warning(make_entry, run_trace):
    signaling = make_entry(0, 4000, url="wss://rtc.example.com/ws", status=101)
    turn = make_entry(1500, 60, method="", url="turn:turn.example.com:3478?transport=udp", status=None)

    with_turn = run_trace([signaling, turn])
    without_turn = run_trace([signaling])

    assert _by_rule(with_turn, NO_NAT_TRAVERSAL) == []
    findings = _by_rule(without_turn, NO_NAT_TRAVERSAL)
    assert len(findings) == 1
    assert findings[0].severity == "warning"
    assert findings[0].message == "No STUN/TURN servers detected — NAT traversal may fail."
    assert findings[0].entry_ids == (0,)


def test_slow_api_call_yields_single_latency_warning(make_entry, run_trace):
    report = run_trace([make_entry(0, 1500, url="https://app.example.com/api/search")])

    assert len(report.findings) == 1
    finding = report.findings[0]
    assert finding.rule_id == HIGH_LATENCY
    assert finding.severity == "warning"
    assert "1500" in finding.message
    assert "1000" in finding.message


@pytest.mark.parametrize("size, expected", [(0, 1), (120, 0)])
def test_post_body_size_against_minimum_payload(make_entry, run_trace, size, expected):
    report = run_trace([
        make_entry(0, 80, method="POST", url="https://app.example.com/api/upload",
                   request_headers={"Authorization": "Bearer t"}, request_body_size=size),
    ])

    assert len(report.findings) == expected
    if expected:
        assert report.findings[0].rule_id == EMPTY_REQUEST_BODY
        assert report.findings[0].severity == "info"


def test_401_without_credentials_is_critical_until_api_key_is_sent(make_entry, run_trace):
    bare = make_entry(0, 40, url="https://app.example.com/api/me", status=401)
    keyed = make_entry(0, 40, url="https://app.example.com/api/me", status=401,
                       request_headers={"X-API-Key": "k-123"})

    report = run_trace([bare])
    suppressed = run_trace([keyed])

    assert [(f.rule_id, f.severity) for f in report.findings] == [(UNAUTHENTICATED_401, "critical")]
    assert suppressed.findings == ()


# ============================================================
# Individual rules
# ============================================================

def test_latency_exactly_at_threshold_is_not_flagged(make_entry, run_trace):
    report = run_trace([make_entry(0, 1000, url="https://app.example.com/api/search")])

    assert _by_rule(report, HIGH_LATENCY) == []


def test_latency_rule_only_considers_api_entries(make_entry, run_trace):
    report = run_trace([
        make_entry(0, 8000, url="https://rtc.example.com/offer",
                   request_headers={"Content-Type": "application/sdp"}),
        make_entry(100, 8000, url="https://cdn.example.com/bundle.js"),
    ])

    assert _by_rule(report, HIGH_LATENCY) == []


def test_latency_threshold_comes_from_config(make_entry, run_trace):
    report = run_trace(
        [make_entry(0, 300, url="https://app.example.com/api/search")],
        EngineConfig(max_latency_ms=250),
    )

    assert len(_by_rule(report, HIGH_LATENCY)) == 1
    assert "250" in report.findings[0].message


def test_empty_body_rule_applies_to_post_and_put_only(make_entry, run_trace):
    report = run_trace([
        make_entry(0, method="POST", url="https://app.example.com/api/a", request_body_size=40),
        make_entry(10, method="PUT", url="https://app.example.com/api/b", request_body_size=0),
        make_entry(20, method="GET", url="https://app.example.com/api/c", request_body_size=0),
        make_entry(30, method="POST", url="https://app.example.com/api/d", request_body_size=None),
        make_entry(40, method="PATCH", url="https://app.example.com/api/e", request_body_size=0),
    ], EngineConfig(min_payload_size=64))

    assert [f.entry_ids for f in _by_rule(report, EMPTY_REQUEST_BODY)] == [(0,), (1,)]


def test_401_on_cors_preflight_is_ignored(make_entry, run_trace):
    report = run_trace([
        make_entry(0, 20, method="OPTIONS", url="https://app.example.com/api/me", status=401,
                   response_headers={"Access-Control-Allow-Origin": "https://app.example.com"}),
    ])

    assert _by_rule(report, UNAUTHENTICATED_401) == []


def test_auth_header_match_is_case_insensitive(make_entry, run_trace):
    report = run_trace([
        make_entry(0, 20, url="https://app.example.com/api/me", status=401,
                   request_headers={"authorization": "Bearer expired"}),
    ])

    assert _by_rule(report, UNAUTHENTICATED_401) == []


def test_signed_url_expired_relative_to_signing_date(make_entry, run_trace):
    signed_at = "20231114T221000Z"  # 200 s before the request
    expired = run_trace([make_entry(
        0, url=f"https://app.example.com/api/files/1?X-Amz-Date={signed_at}&X-Amz-Expires=60",
    )])
    valid = run_trace([make_entry(
        0, url=f"https://app.example.com/api/files/1?X-Amz-Date={signed_at}&X-Amz-Expires=600",
    )])

    findings = _by_rule(expired, EXPIRED_SIGNED_URL)
    assert len(findings) == 1
    assert findings[0].severity == "critical"
    assert "2023-11-14T22:11:00+00:00" in findings[0].message
    assert _by_rule(valid, EXPIRED_SIGNED_URL) == []


def test_signed_url_absolute_expiry_with_custom_parameter(make_entry, run_trace):
    config = EngineConfig(expiry_query_param="expires")
    past = int(BASE_MS / 1000) - 1
    future = int(BASE_MS / 1000) + 3600

    report = run_trace([
        make_entry(0, url=f"https://app.example.com/api/media?expires={past}"),
        make_entry(10, url=f"https://app.example.com/api/media?expires={future}"),
        make_entry(20, url=f"https://app.example.com/api/media?X-Amz-Expires={past}"),
    ], config)

    assert [f.entry_ids for f in _by_rule(report, EXPIRED_SIGNED_URL)] == [(0,)]


def test_signed_url_expiry_depends_only_on_the_entry(make_entry):
    entry = normalize([make_entry(
        0, url=f"https://app.example.com/api/x?X-Amz-Date={SIGNED_AT_BASE}&X-Amz-Expires=30",
    )]).entries[0]

    assert signed_url_expiry_ms(entry, "X-Amz-Expires") == BASE_MS + 30000
    assert signed_url_expiry_ms(entry, "X-Amz-Expires") == signed_url_expiry_ms(entry, "x-amz-expires")
    assert signed_url_expiry_ms(entry, "Expires") is None


@pytest.mark.parametrize("query", [
    "X-Amz-Expires=soon",
    "X-Amz-Expires=60&X-Amz-Date=yesterday",
    "X-Amz-Expires=nan",
])
def test_unparsable_expiry_is_not_reported(make_entry, query):
    entry = normalize([make_entry(0, url=f"https://app.example.com/api/x?{query}")]).entries[0]

    assert signed_url_expiry_ms(entry, "X-Amz-Expires") is None


def test_out_of_range_expiry_does_not_hide_other_expired_urls(make_entry, run_trace):
    signed_at = "20231114T221000Z"
    report = run_trace([
        make_entry(0, url=f"https://app.example.com/api/files/1?X-Amz-Date={signed_at}&X-Amz-Expires=60"),
        make_entry(10, url="https://app.example.com/api/files/2?X-Amz-Expires=-1e12"),
    ])

    findings = _by_rule(report, EXPIRED_SIGNED_URL)
    assert [f.entry_ids for f in findings] == [(0,), (1,)]
    assert "ms since epoch" in findings[1].message


def test_format_epoch_ms_outside_datetime_range():
    assert format_epoch_ms(BASE_MS) == "2023-11-14T22:13:20+00:00"
    assert format_epoch_ms(-1e15) == "-1000000000000000 ms since epoch"


def test_latency_message_shows_fractional_excess(make_entry, run_trace):
    report = run_trace([make_entry(0, 1000.4, url="https://app.example.com/api/search")])

    findings = _by_rule(report, HIGH_LATENCY)
    assert len(findings) == 1
    assert "took 1000.4 ms, exceeding the 1000 ms latency threshold" in findings[0].message


def test_failed_request_retried(make_entry, run_trace):
    report = run_trace([
        make_entry(0, 200, method="POST", url="https://app.example.com/api/upload",
                   status=503, request_body_size=512),
        make_entry(900, 200, method="POST", url="https://app.example.com/api/upload",
                   status=201, request_body_size=512),
    ])

    findings = _by_rule(report, FAILED_REQUEST_RETRIED)
    assert len(findings) == 1
    assert findings[0].entry_ids == (0, 1)
    assert "(503)" in findings[0].message
    assert "900 ms" in findings[0].message


def test_api_failure_while_negotiating(make_entry, run_trace):
    report = run_trace([
        make_entry(0, 3000, url="wss://rtc.example.com/ws", status=101),
        make_entry(500, 80, method="POST", url="https://app.example.com/api/rooms/7/join",
                   status=500, request_body_size=20),
        make_entry(700, 80, url="https://app.example.com/api/rooms/7", status=200),
    ])

    findings = _by_rule(report, API_FAILURE_DURING_NEGOTIATION)
    assert len(findings) == 1
    assert findings[0].entry_ids == (0, 1)
    assert "rtc.example.com" in findings[0].message


def test_api_failure_outside_negotiation_is_not_linked(make_entry, run_trace):
    report = run_trace([
        make_entry(0, 100, url="wss://rtc.example.com/ws", status=101),
        make_entry(9000, 80, url="https://app.example.com/api/rooms/7", status=500),
    ])

    assert _by_rule(report, API_FAILURE_DURING_NEGOTIATION) == []


def test_healthy_session_has_no_findings(webrtc_session, run_trace):
    report = run_trace(webrtc_session)

    assert report.findings == ()
    assert report.summary["entries_by_label"]["nat-traversal"] == 1


def test_signed_url_rule_describes_both_expiry_forms():
    described = {r["rule_id"]: r for r in RuleEngine().describe_rules()}

    description = described[EXPIRED_SIGNED_URL]["description"]
    assert "Unix-epoch seconds" in description
    assert "X-Amz-Date" in description
