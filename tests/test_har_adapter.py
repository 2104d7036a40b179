import json

import pytest

from services import har_adapter
from services.diagnostics import analyze


def _har_entry(started, url, method="GET", status=200, time=50.0, request_headers=None,
               response_headers=None, body_size=-1, post_text=None):
    request = {
        "method": method,
        "url": url,
        "httpVersion": "HTTP/1.1",
        "headers": [{"name": k, "value": v} for k, v in (request_headers or {}).items()],
        "bodySize": body_size,
    }
    if post_text is not None:
        request["postData"] = {"mimeType": "application/json", "text": post_text}
    return {
        "startedDateTime": started,
        "time": time,
        "request": request,
        "response": {
            "status": status,
            "httpVersion": "HTTP/1.1",
            "headers": [{"name": k, "value": v} for k, v in (response_headers or {}).items()],
            "content": {"size": 120, "mimeType": "application/json"},
            "bodySize": -1,
        },
    }


@pytest.fixture
def har_document():
    return {
        "log": {
            "version": "1.2",
            "creator": {"name": "WebInspector", "version": "537.36"},
            "pages": [],
            "entries": [
                _har_entry("2026-01-12T23:47:41.000Z", "https://app.example.com/api/me", status=401),
                _har_entry("2026-01-12T23:47:41.100Z", "https://app.example.com/api/me", method="OPTIONS",
                           status=204, response_headers={"Access-Control-Allow-Origin": "*"}),
                _har_entry("2026-01-12T23:47:41.200Z", "wss://signal.example.com/socket", status=101,
                           request_headers={":authority": "signal.example.com", "Upgrade": "websocket"}),
                _har_entry("2026-01-12T23:47:41.300Z", "https://browser-intake-datadoghq.com/api/v2/rum"),
                _har_entry("2026-01-12T23:47:41.400Z", "https://app.example.com/api/upload", method="POST",
                           status=0, post_text='{"a": 1}'),
            ],
        }
    }


@pytest.fixture
def har_file(tmp_path, har_document):
    path = tmp_path / "session.har"
    path.write_text(json.dumps(har_document), encoding="utf-8")
    return path


def test_entries_convert_to_raw_records(har_document):
    records = har_adapter.har_to_raw_entries(har_document, {"exclude_domains": ["datadoghq.com"]})

    assert len(records) == 4
    first = records[0]
    assert first["startTime"] == "2026-01-12T23:47:41.000Z"
    assert first["duration"] == 50.0
    assert first["responseStatus"] == 401
    assert first["protocol"] == "HTTP/1.1"
    assert first["requestBodySize"] is None
    assert first["responseBodySize"] == 120


def test_preflight_failed_and_websocket_entries_are_kept(har_document):
    records = har_adapter.har_to_raw_entries(har_document, {})

    methods = [r["method"] for r in records]
    assert "OPTIONS" in methods
    assert any(r["url"].startswith("wss://") for r in records)
    assert records[-1]["responseStatus"] == 0


def test_pseudo_headers_are_dropped_and_names_lowercased(har_document):
    records = har_adapter.har_to_raw_entries(har_document, {"exclude_pseudo_headers": True})

    assert records[2]["requestHeaders"] == {"upgrade": "websocket"}


def test_request_body_size_falls_back_to_post_data(har_document):
    records = har_adapter.har_to_raw_entries(har_document, {})

    assert records[-1]["requestBodySize"] == len('{"a": 1}')


def test_exclude_domains_match_subdomains_and_ice_uris(har_document):
    har_document["log"]["entries"].append(
        _har_entry("2026-01-12T23:47:41.500Z", "stun:stun.tracker.example.org:3478", method=""),
    )

    records = har_adapter.har_to_raw_entries(
        har_document, {"exclude_domains": ["datadoghq.com", "tracker.example.org"]},
    )

    urls = [r["url"] for r in records]
    assert not any("datadoghq" in u for u in urls)
    assert not any(u.startswith("stun:") for u in urls)


def test_converted_har_runs_through_engine(har_document):
    report = analyze(har_adapter.har_to_raw_entries(har_document, {}))

    rule_ids = [f.rule_id for f in report.findings]
    assert rule_ids[0] == "unauthenticated-401"
    assert "no-nat-traversal" in rule_ids
    # the preflight 401 exclusion leaves exactly one 401 finding
    assert rule_ids.count("unauthenticated-401") == 1


def test_load_har_file_rejects_bad_structure(tmp_path):
    path = tmp_path / "broken.har"
    path.write_text(json.dumps({"entries": []}), encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid HAR structure"):
        har_adapter.load_har_file(str(path))


def test_load_har_file_rejects_invalid_json(tmp_path):
    path = tmp_path / "broken.har"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid JSON"):
        har_adapter.load_har_file(str(path))


def test_load_har_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        har_adapter.load_har_file(str(tmp_path / "absent.har"))


def test_validate_har_file_summary(har_file):
    summary = har_adapter.validate_har_file(str(har_file), {"exclude_domains": ["datadoghq.com"]})

    assert summary["valid"] is True
    assert summary["version"] == "1.2"
    assert summary["creator"] == "WebInspector"
    assert summary["entry_count"] == 5
    assert summary["excluded_count"] == 1
    assert summary["websocket_count"] == 1
    assert summary["nat_traversal_count"] == 0
    assert summary["errors"] == []


def test_validate_har_file_reports_problems(tmp_path, har_document):
    har_document["log"]["version"] = "0.9"
    har_document["log"]["entries"].append({"request": {}})
    path = tmp_path / "odd.har"
    path.write_text(json.dumps(har_document), encoding="utf-8")

    summary = har_adapter.validate_har_file(str(path), {})

    assert summary["valid"] is False
    assert any("0.9" in e for e in summary["errors"])
    assert any("1 entries" in e for e in summary["errors"])


def test_non_string_header_names_are_ignored(har_document):
    har_document["log"]["entries"][0]["request"]["headers"] = [
        {"name": 42, "value": "x"},
        {"name": None, "value": "y"},
        {"name": "Accept", "value": "application/json"},
    ]

    records = har_adapter.har_to_raw_entries(har_document, {})

    assert len(records) == 5
    assert records[0]["requestHeaders"] == {"accept": "application/json"}
