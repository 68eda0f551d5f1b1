"""Unit tests for relay configuration.

Tests configuration loading, validation, defaults and environment overrides.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from src.relay.config import (
    AdaptersConfig,
    AudioConfig,
    PipelineConfig,
    RelayConfig,
    SessionConfig,
    WebSocketConfig,
)

CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "relay.yaml"


def test_websocket_config_defaults() -> None:
    """Test WebSocket configuration defaults."""
    config = WebSocketConfig()
    assert config.host == "0.0.0.0"  # noqa: S104
    assert config.port == 8765
    assert config.max_connections == 500
    assert config.outbound_queue_size == 64


def test_websocket_config_port_validation() -> None:
    with pytest.raises(ValidationError):
        WebSocketConfig(port=80)
    with pytest.raises(ValidationError):
        WebSocketConfig(port=70000)


def test_session_config_defaults() -> None:
    config = SessionConfig()
    assert config.code_length == 6
    assert config.broadcaster_grace_s == 60.0
    assert config.max_subscribers_per_session == 100


def test_pipeline_config_defaults() -> None:
    config = PipelineConfig()
    assert config.max_in_flight == 2
    assert config.max_queued == 1
    assert config.reorder_timeout_s == 8.0
    assert (
        config.transcription_timeout_s + config.translation_timeout_s + config.synthesis_timeout_s
        <= config.reorder_timeout_s
    )


def test_pipeline_config_rejects_zero_in_flight() -> None:
    with pytest.raises(ValidationError):
        PipelineConfig(max_in_flight=0)


def test_pipeline_config_rejects_deadlines_longer_than_reorder_timeout() -> None:
    with pytest.raises(ValidationError, match="reorder_timeout_s"):
        PipelineConfig(reorder_timeout_s=0.3, transcription_timeout_s=2.0)


def test_pipeline_config_accepts_deadlines_equal_to_reorder_timeout() -> None:
    config = PipelineConfig(
        reorder_timeout_s=4.0,
        transcription_timeout_s=2.0,
        translation_timeout_s=1.0,
        synthesis_timeout_s=1.0,
    )
    assert config.reorder_timeout_s == 4.0


def test_pipeline_config_requires_a_queue_slot() -> None:
    with pytest.raises(ValidationError):
        PipelineConfig(max_queued=0)


def test_audio_config_normalizes_containers() -> None:
    config = AudioConfig(allowed_containers=["WEBM", "ogg"])
    assert config.allowed_containers == ["webm", "ogg"]


def test_audio_config_rejects_unknown_container() -> None:
    with pytest.raises(ValidationError, match="allowed_containers"):
        AudioConfig(allowed_containers=["flac"])


def test_adapters_config_rejects_unknown_backend() -> None:
    with pytest.raises(ValidationError, match="adapters.backend"):
        AdaptersConfig(backend="cloud")


def test_log_level_is_normalized() -> None:
    assert RelayConfig(log_level="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError, match="log_level"):
        RelayConfig(log_level="chatty")


def test_health_port_must_differ() -> None:
    with pytest.raises(ValidationError, match="health.port"):
        RelayConfig.model_validate({"websocket": {"port": 9000}, "health": {"port": 9000}})


def test_load_shipped_config() -> None:
    """The sample config in configs/ loads and matches the defaults."""
    config = RelayConfig.from_yaml(CONFIG_PATH)
    assert config.websocket.port == 8765
    assert config.health.port == 8766
    assert config.pipeline.max_in_flight == 2
    assert config.pipeline == PipelineConfig()
    assert config.adapters.backend == "mock"


def test_from_yaml_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        RelayConfig.from_yaml(tmp_path / "missing.yaml")


def test_from_yaml_with_defaults_missing_file(tmp_path: Path) -> None:
    config = RelayConfig.from_yaml_with_defaults(tmp_path / "missing.yaml")
    assert config == RelayConfig()


def test_from_yaml_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="mapping"):
        RelayConfig.from_yaml(path)


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test RELAY_* environment variables override file values."""
    path = tmp_path / "relay.yaml"
    path.write_text("websocket:\n  port: 9000\nlog_level: INFO\n")

    monkeypatch.setenv("RELAY_HOST", "127.0.0.1")
    monkeypatch.setenv("RELAY_PORT", "9100")
    monkeypatch.setenv("RELAY_LOG_LEVEL", "warning")
    monkeypatch.setenv("RELAY_MAX_IN_FLIGHT", "4")

    config = RelayConfig.from_yaml(path)
    assert config.websocket.host == "127.0.0.1"
    assert config.websocket.port == 9100
    assert config.log_level == "WARNING"
    assert config.pipeline.max_in_flight == 4
