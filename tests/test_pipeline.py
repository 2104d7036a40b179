import logging
import random

import pytest

from services.diagnostics import (
    AnalysisCancelledError,
    CancellationToken,
    ConfigurationError,
    EngineConfig,
    MalformedTraceError,
    Rule,
    RuleEngine,
    analyze,
)


def _busy_trace(make_entry, count=600, seed=11):
    rng = random.Random(seed)
    urls = [
        "wss://rtc.example.com/ws",
        "https://rtc.example.com/offer",
        "turn:turn.example.com:3478?transport=tcp",
        "https://app.example.com/api/rooms",
        "https://app.example.com/api/upload",
        "https://app.example.com/api/files?X-Amz-Date=20231114T221000Z&X-Amz-Expires=60",
        "https://app.example.com/graphql",
        "https://cdn.example.com/app.js",
    ]
    raw = []
    for _ in range(count):
        url = rng.choice(urls)
        raw.append(make_entry(
            rng.uniform(0, 120000),
            rng.uniform(0, 2500),
            method=rng.choice(["GET", "POST", "PUT"]),
            url=url,
            status=rng.choice([200, 200, 201, 401, 500, 503, None]),
            request_headers=rng.choice([{}, {"Authorization": "Bearer t"}]),
            request_body_size=rng.choice([None, 0, 64, 2048]),
        ))
    return raw


def test_parallel_pipeline_matches_sequential(make_entry):
    raw = _busy_trace(make_entry)

    sequential = analyze(raw, EngineConfig(parallel_threshold=10_000))
    parallel = analyze(raw, EngineConfig(parallel_threshold=100, max_workers=3))

    assert parallel.findings == sequential.findings
    assert parallel.summary == sequential.summary
    assert len(sequential.findings) > 0


def test_findings_are_ranked(make_entry):
    report = analyze(_busy_trace(make_entry, count=200, seed=3))

    ranks = [{"critical": 2, "warning": 1, "info": 0}[f.severity] for f in report.findings]
    assert ranks == sorted(ranks, reverse=True)
    assert len({f.dedup_key for f in report.findings}) == len(report.findings)


def test_cancelled_token_aborts_before_any_stage(make_entry):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(AnalysisCancelledError) as excinfo:
        analyze([make_entry(0)], cancel_token=token)

    assert excinfo.value.stage == "normalize"
    assert token.cancelled


def test_cancellation_observed_at_next_stage_boundary(make_entry):
    token = CancellationToken()

    def cancel_during_evaluation(view):
        token.cancel()
        return []

    with pytest.raises(AnalysisCancelledError) as excinfo:
        analyze(
            [make_entry(0, url="https://app.example.com/api/x")],
            rules=[Rule(rule_id="canceller", evaluate=cancel_during_evaluation)],
            cancel_token=token,
        )

    assert excinfo.value.stage == "aggregate"


def test_malformed_trace_propagates(make_entry):
    with pytest.raises(MalformedTraceError):
        analyze({"log": {"entries": []}})


def test_rules_and_engine_are_mutually_exclusive(make_entry):
    with pytest.raises(ConfigurationError):
        analyze([make_entry(0)], rules=[], engine=RuleEngine())


def test_stage_timings_are_logged_at_debug(make_entry, caplog):
    with caplog.at_level(logging.DEBUG, logger="services.diagnostics.pipeline"):
        analyze([make_entry(0, url="https://app.example.com/api/x")])

    for stage in ("normalize", "classify_structural", "correlate", "evaluate", "aggregate"):
        assert f"Stage {stage} took" in caplog.text
