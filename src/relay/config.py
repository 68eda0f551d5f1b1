"""Configuration schema for the translation relay.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

SUPPORTED_CONTAINERS = ["webm", "ogg", "wav", "mp4", "mp3"]


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8765, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=500, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=4 * 2**20,
        ge=2**16,
        description="Maximum inbound WebSocket message size in bytes",
    )
    outbound_queue_size: int = Field(
        default=64,
        ge=4,
        description="Pending outbound events per connection before the oldest is dropped",
    )


class HealthConfig(BaseModel):
    """HTTP health/metrics endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve /health and /metrics over HTTP")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=8766, ge=1024, le=65535, description="Bind port")


class SessionConfig(BaseModel):
    """Session lifecycle limits and timeouts."""

    code_length: int = Field(
        default=6, ge=4, le=12, description="Length of shareable session codes"
    )
    max_sessions: int = Field(default=100, ge=1, description="Maximum live (non-ended) sessions")
    max_subscribers_per_session: int = Field(
        default=100, ge=1, description="Maximum active subscribers per session"
    )
    broadcaster_grace_s: float = Field(
        default=60.0,
        ge=0.0,
        le=3600.0,
        description="Time a disconnected broadcaster has to reconnect before the session ends",
    )
    idle_timeout_s: float = Field(
        default=3600.0,
        ge=10.0,
        le=86400.0,
        description="End sessions with no activity for this long",
    )
    max_session_duration_s: float = Field(
        default=6 * 3600.0,
        ge=60.0,
        le=48 * 3600.0,
        description="Hard cap on session duration",
    )
    ended_retention_s: float = Field(
        default=300.0,
        ge=0.0,
        description="Keep ended sessions resolvable so late joiners see SessionEnded",
    )
    sweep_interval_s: float = Field(
        default=30.0, gt=0.0, description="Interval of the administrative timeout sweeper"
    )


class PipelineConfig(BaseModel):
    """Chunk pipeline concurrency, backpressure and deadlines."""

    max_in_flight: int = Field(
        default=2, ge=1, le=16, description="Chunks processed concurrently per session (K)"
    )
    max_queued: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Chunks waiting to start; the oldest is dropped when exceeded",
    )
    reorder_timeout_s: float = Field(
        default=8.0,
        gt=0.0,
        description="Maximum wait for a lower sequence before releasing later results",
    )
    transcription_timeout_s: float = Field(
        default=3.0, gt=0.0, description="Transcription deadline"
    )
    translation_timeout_s: float = Field(default=2.0, gt=0.0, description="Translation deadline")
    synthesis_timeout_s: float = Field(default=2.0, gt=0.0, description="Synthesis deadline")

    @model_validator(mode="after")
    def validate_deadlines(self) -> "PipelineConfig":
        """Require a chunk's full adapter chain to finish within the reorder timeout.

        Transcription runs first, then translation and synthesis per language,
        so the slowest chunk that still meets every deadline takes their sum.
        """
        chain_s = (
            self.transcription_timeout_s + self.translation_timeout_s + self.synthesis_timeout_s
        )
        if chain_s > self.reorder_timeout_s:
            raise ValueError(
                f"reorder_timeout_s ({self.reorder_timeout_s}) must be at least the sum of "
                f"transcription, translation and synthesis timeouts ({chain_s})"
            )
        return self


class AudioConfig(BaseModel):
    """Inbound audio chunk validation."""

    max_chunk_bytes: int = Field(
        default=2 * 2**20, ge=1024, description="Maximum decoded chunk size in bytes"
    )
    allowed_containers: list[str] = Field(
        default_factory=lambda: list(SUPPORTED_CONTAINERS),
        description="Accepted self-contained audio containers",
    )

    @field_validator("allowed_containers")
    @classmethod
    def validate_containers(cls, v: list[str]) -> list[str]:
        """Validate that every container is one the codec can recognise."""
        normalized = [c.lower() for c in v]
        unknown = [c for c in normalized if c not in SUPPORTED_CONTAINERS]
        if unknown:
            raise ValueError(
                f"allowed_containers must be a subset of {SUPPORTED_CONTAINERS}, got {unknown}"
            )
        if not normalized:
            raise ValueError("allowed_containers cannot be empty")
        return normalized


class CacheConfig(BaseModel):
    """Dual output cache sizing."""

    max_entries: int = Field(
        default=256, ge=1, le=100_000, description="LRU entries per cache tier"
    )


class QualityConfig(BaseModel):
    """Connection quality pinging."""

    enabled: bool = Field(default=True, description="Ping subscriber connections periodically")
    ping_interval_s: float = Field(default=5.0, gt=0.0, description="Ping interval")
    ping_timeout_s: float = Field(default=2.0, gt=0.0, description="Ping round-trip deadline")


class AdaptersConfig(BaseModel):
    """External collaborator backends."""

    backend: str = Field(default="mock", description="Adapter backend (mock)")
    mock_latency_ms: float = Field(
        default=0.0, ge=0.0, le=10_000.0, description="Artificial latency of mock adapters"
    )
    mock_transcript: str = Field(
        default="",
        description="Fixed transcript returned by the mock transcriber (empty: derived from audio)",
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate that the adapter backend is supported."""
        valid_backends = ["mock"]
        if v not in valid_backends:
            raise ValueError(f"adapters.backend must be one of {valid_backends}, got '{v}'")
        return v


class RelayConfig(BaseModel):
    """Root relay configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    adapters: AdaptersConfig = Field(default_factory=AdaptersConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @model_validator(mode="after")
    def validate_ports(self) -> "RelayConfig":
        """Reject a health port that collides with the WebSocket port."""
        if self.health.enabled and self.health.port == self.websocket.port:
            raise ValueError("health.port must differ from websocket.port")
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import os

        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        if host := os.getenv("RELAY_HOST"):
            data.setdefault("websocket", {})["host"] = host

        if port := os.getenv("RELAY_PORT"):
            data.setdefault("websocket", {})["port"] = int(port)

        if log_level := os.getenv("RELAY_LOG_LEVEL"):
            data["log_level"] = log_level

        if max_in_flight := os.getenv("RELAY_MAX_IN_FLIGHT"):
            data.setdefault("pipeline", {})["max_in_flight"] = int(max_in_flight)

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
