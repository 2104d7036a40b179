import pytest

from services.diagnostics import ConfigurationError, EngineConfig
from utils.config import load_config, load_engine_config


def test_defaults():
    config = EngineConfig()

    assert config.max_latency_ms == 1000
    assert config.api_path_patterns == ("/api/*", "/graphql")
    assert config.min_payload_size == 0
    assert config.correlation_slack_ms == 2000
    assert config.signaling_window_ms == 5000
    assert config.auth_header_names == ("Authorization", "X-API-Key")
    assert config.expiry_query_param == "X-Amz-Expires"
    assert config.max_skip_fraction == 0.5
    assert config.parallel_threshold == 5000
    assert config.max_workers == 4


def test_from_mapping_accepts_camel_and_snake_case():
    config = EngineConfig.from_mapping({
        "maxLatency": 250,
        "api_path_patterns": ["/v1/*"],
        "correlationSlackMs": 500,
        "authHeaderNames": ["Cookie"],
        "min_payload_size": None,
    })

    assert config.max_latency_ms == 250
    assert config.api_path_patterns == ("/v1/*",)
    assert config.correlation_slack_ms == 500
    assert config.auth_header_names == ("Cookie",)
    assert config.min_payload_size == 0


def test_config_is_immutable():
    config = EngineConfig()

    with pytest.raises(AttributeError):
        config.max_latency_ms = 5


@pytest.mark.parametrize("options", [
    {"correlationSlackMs": 0},
    {"correlationSlackMs": -10},
    {"maxLatency": 0},
    {"maxLatency": "fast"},
    {"maxSkipFraction": 1.5},
    {"minPayloadSize": -1},
    {"maxWorkers": 0},
    {"parallelThreshold": 2.5},
    {"apiPathPatterns": "/api/*"},
    {"apiPathPatterns": ["api/*"]},
    {"apiPathPatterns": ["/api/[a-z"]},
    {"natTraversalHostPatterns": [""]},
    {"authHeaderNames": []},
    {"expiryQueryParam": "  "},
    {"signalingMarkers": [None]},
    {"maxLatency": True},
])
def test_invalid_options_fail_at_construction(options):
    with pytest.raises(ConfigurationError):
        EngineConfig.from_mapping(options)


def test_unknown_and_duplicate_options_are_rejected():
    with pytest.raises(ConfigurationError, match="Unknown engine option"):
        EngineConfig.from_mapping({"maxLatencyMs": 10})
    with pytest.raises(ConfigurationError, match="more than once"):
        EngineConfig.from_mapping({"maxLatency": 10, "max_latency_ms": 20})


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        EngineConfig(max_workers=-1)


def test_to_dict_round_trips_through_from_mapping():
    config = EngineConfig(max_latency_ms=1500, signaling_markers=("janus",))

    assert EngineConfig.from_mapping(config.to_dict()) == config


def test_repository_config_yaml_matches_defaults():
    config = load_config()

    assert load_engine_config(config) == EngineConfig()
    assert "artifacts_path" in config["artifacts"]


def test_missing_trace_diagnostics_section_uses_defaults():
    assert load_engine_config({"artifacts": {}}) == EngineConfig()


def test_invalid_section_is_reported():
    with pytest.raises(ConfigurationError):
        load_engine_config({"trace_diagnostics": {"correlation_slack_ms": 0}})
