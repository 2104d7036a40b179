import logging

import pytest

from services.diagnostics import (
    BUILTIN_RULES,
    ConfigurationError,
    EngineConfig,
    Finding,
    Rule,
    RuleEngine,
    classify,
    correlate,
    normalize,
)


@pytest.fixture
def snapshot(webrtc_session, make_entry):
    raw = webrtc_session + [
        make_entry(1200, 1800, url="https://app.example.com/api/slow"),
        make_entry(9000, 30, url="https://app.example.com/api/me", status=401),
    ]
    config = EngineConfig()
    entries = normalize(raw).entries
    labels = classify(entries, config)
    links = correlate(entries, labels, config)
    return entries, labels, links


def _rule(rule_id, evaluate, **kwargs):
    return Rule(rule_id=rule_id, evaluate=evaluate, **kwargs)


def test_builtin_registry_order():
    engine = RuleEngine()

    assert [r.rule_id for r in engine.rules] == [
        "no-nat-traversal",
        "high-latency",
        "empty-request-body",
        "unauthenticated-401",
        "expired-signed-url",
        "failed-request-retried",
        "api-failure-during-negotiation",
    ]


def test_duplicate_rule_id_is_rejected():
    with pytest.raises(ConfigurationError):
        RuleEngine(rules=[BUILTIN_RULES[0], BUILTIN_RULES[0]])


@pytest.mark.parametrize("kwargs", [
    {"default_severity": "fatal"},
    {"applicable_domains": frozenset({"video"})},
    {"excluded_domains": frozenset({"cdn"})},
])
def test_invalid_rule_metadata_is_rejected(kwargs):
    engine = RuleEngine(rules=[])

    with pytest.raises(ConfigurationError):
        engine.register(_rule("custom", lambda view: [], **kwargs))


def test_non_callable_evaluator_is_rejected():
    with pytest.raises(ConfigurationError):
        RuleEngine(rules=[_rule("custom", "not callable")])


def test_engine_requires_engine_config():
    with pytest.raises(ConfigurationError):
        RuleEngine({"maxLatency": 10})


def test_evaluate_is_idempotent(snapshot):
    engine = RuleEngine()

    first = engine.evaluate(*snapshot)
    second = engine.evaluate(*snapshot)

    assert first == second
    assert {f.rule_id for f in first} == {"high-latency", "unauthenticated-401"}


def test_failing_rule_is_isolated_and_logged(snapshot, caplog):
    def explode(view):
        raise RuntimeError("boom")

    engine = RuleEngine()
    engine.register(_rule("explodes", explode))
    baseline = RuleEngine().evaluate(*snapshot)

    with caplog.at_level(logging.WARNING, logger="services.diagnostics.engine"):
        findings = engine.evaluate(*snapshot)

    assert findings == baseline
    assert "explodes" in caplog.text
    assert "boom" in caplog.text


def test_rule_returning_non_findings_contributes_nothing(snapshot, caplog):
    def sloppy(view):
        return ["not a finding"]

    engine = RuleEngine(rules=[_rule("sloppy", sloppy)])

    with caplog.at_level(logging.WARNING, logger="services.diagnostics.engine"):
        assert engine.evaluate(*snapshot) == ()
    assert "sloppy" in caplog.text


def test_view_is_restricted_to_applicable_and_classified_entries(snapshot):
    seen = {}

    def record(view):
        seen["ids"] = [e.id for e in view.entries]
        seen["link_ids"] = {(link.source_id, link.target_id) for link in view.links}
        return []

    entries, labels, links = snapshot
    engine = RuleEngine(rules=[_rule("api-only", record, applicable_domains=frozenset({"api"}))])
    engine.evaluate(entries, labels, links)

    api_ids = [e.id for e in entries if "api" in labels[e.id]]
    assert seen["ids"] == api_ids
    for source_id, target_id in seen["link_ids"]:
        assert source_id in api_ids or target_id in api_ids


def test_unclassified_entries_are_invisible_to_rules(make_entry):
    seen = []
    entries = normalize([make_entry(0, url="https://cdn.example.com/app.js")]).entries
    engine = RuleEngine(rules=[_rule("everything", lambda view: seen.extend(view.entries) or [])])

    engine.evaluate(entries, {0: frozenset()}, ())

    assert seen == []


def test_custom_rule_uses_default_severity(snapshot):
    def count_api(view):
        rule = engine.rules[0]
        return [rule.finding("{count} API calls", [e.id for e in view.entries], count=len(view.entries))]

    engine = RuleEngine(rules=[_rule("api-count", count_api, default_severity="info",
                                     applicable_domains=frozenset({"api"}))])

    findings = engine.evaluate(*snapshot)

    assert len(findings) == 1
    assert findings[0].severity == "info"
    assert findings[0].message == f"{len(findings[0].entry_ids)} API calls"


def test_findings_follow_registration_order(snapshot):
    def make(rule_id):
        return _rule(rule_id, lambda view: [Finding.create(rule_id, "info", rule_id, [0])])

    engine = RuleEngine(rules=[make("b-rule"), make("a-rule"), make("c-rule")])

    assert [f.rule_id for f in engine.evaluate(*snapshot)] == ["b-rule", "a-rule", "c-rule"]


def test_parallel_evaluation_matches_sequential(snapshot):
    engine = RuleEngine(EngineConfig(max_workers=3))

    assert engine.evaluate(*snapshot, parallel=True) == engine.evaluate(*snapshot, parallel=False)


def test_describe_rules_lists_metadata():
    described = RuleEngine().describe_rules()

    assert described[3]["rule_id"] == "unauthenticated-401"
    assert described[3]["excluded_domains"] == ["cors-preflight"]
    assert described[1]["applicable_domains"] == ["api"]
    assert all(d["version"] == "1.0" for d in described)
