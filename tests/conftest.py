"""Shared fixtures: raw trace records and a one-call pipeline runner."""

import pytest

from services.diagnostics import EngineConfig, analyze

# 2023-11-14T22:13:20Z, an arbitrary fixed capture start
BASE_MS = 1_700_000_000_000.0


def _raw_entry(
    start=0.0,
    duration=100.0,
    method="GET",
    url="https://app.example.com/api/items",
    status=200,
    request_headers=None,
    response_headers=None,
    request_body_size=None,
    **extra,
):
    record = {
        "startTime": BASE_MS + start,
        "duration": duration,
        "method": method,
        "url": url,
        "requestHeaders": dict(request_headers or {}),
        "responseStatus": status,
        "responseHeaders": dict(response_headers or {}),
        "requestBodySize": request_body_size,
    }
    record.update(extra)
    return record


@pytest.fixture
def make_entry():
    """Factory for raw entry records; ``start`` is relative to BASE_MS."""
    return _raw_entry


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def run_trace():
    """Run the full pipeline and return the DiagnosticReport."""
    def _run(raw_entries, config=None, **kwargs):
        return analyze(raw_entries, config or EngineConfig(), **kwargs)
    return _run


@pytest.fixture
def webrtc_session(make_entry):
    """
    A small call setup: page load, websocket signaling, TURN allocation and
    API traffic on the same origin.
    """
    return [
        make_entry(0, 120, url="https://app.example.com/", request_headers={"Accept": "text/html"}),
        make_entry(200, 3000, method="GET", url="wss://signal.example.com/socket", status=101),
        make_entry(400, 80, method="", url="turn:turn.example.com:3478?transport=udp", status=None),
        make_entry(
            600, 150, method="POST", url="https://app.example.com/api/session",
            request_headers={"Authorization": "Bearer abc"}, request_body_size=512,
        ),
        make_entry(
            900, 90, url="https://app.example.com/api/profile",
            request_headers={"Authorization": "Bearer abc"},
        ),
    ]
