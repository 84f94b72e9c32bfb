"""
Streamwatch Agent Configuration
===============================

This module handles configuration loading for the streamwatch agent.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    STREAMWATCH_FFMPEG_PATH        -> capture.ffmpeg_path
    STREAMWATCH_FRAME_INTERVAL_MS  -> capture.frame_interval_ms
    STREAMWATCH_RECONNECT_ATTEMPTS -> capture.reconnect_attempts
    STREAMWATCH_POLL_INTERVAL      -> orchestrator.poll_interval_seconds
    STREAMWATCH_INFERENCE_BACKEND  -> inference.backend
    STREAMWATCH_MODEL_PATH         -> inference.model_path
    STREAMWATCH_TWITCH_CLIENT_ID   -> liveness.twitch_client_id
    STREAMWATCH_TWITCH_CLIENT_SECRET -> liveness.twitch_client_secret
    STREAMWATCH_DATABASE_PATH      -> store.database_path
    STREAMWATCH_PORT               -> server.port
    STREAMWATCH_LOG_LEVEL          -> logging.level
    PORT                           -> server.port (container platforms)

Example:
    from streamwatch_agent.config import settings

    print(settings.agent.name)
    print(settings.capture.frame_interval_ms)
    print(settings.orchestrator.poll_interval_seconds)
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from streamwatch_agent.stream.sources import DEFAULT_ALLOWED_HOSTS


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class AgentConfig(BaseModel):
    """Agent identification configuration."""

    name: str = Field(default="streamwatch-agent", description="Agent name")
    version: str = Field(default="v0.1.0", description="Agent version")


class CaptureConfig(BaseModel):
    """ffmpeg frame capture configuration."""

    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg executable")
    frame_interval_ms: int = Field(
        default=5000,
        ge=100,
        description="Milliseconds between frames when a detection config sets none",
    )
    reconnect_attempts: int = Field(
        default=5,
        ge=0,
        description="Reconnects allowed before the capture gives up",
    )
    reconnect_base_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="First reconnect delay; doubles per attempt",
    )
    reconnect_max_delay_ms: int = Field(
        default=30000,
        ge=0,
        description="Upper bound for the reconnect delay",
    )
    max_frame_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Frames above this size are dropped",
    )
    max_buffer_frames: int = Field(
        default=5,
        ge=1,
        description="Recent frames kept per capture",
    )
    connection_timeout_ms: int = Field(
        default=30000,
        gt=0,
        description="Time allowed for the first decoded frame",
    )
    frame_quality: int = Field(
        default=2,
        ge=2,
        le=31,
        description="JPEG qscale (2 = best, 31 = worst)",
    )
    kill_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="SIGTERM grace period before SIGKILL",
    )
    allowed_hosts: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_HOSTS),
        description="Stream host allow-list (exact or '.' suffix entries)",
    )


class PipelineConfig(BaseModel):
    """Detection pipeline configuration."""

    rules_ttl_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Rule cache lifetime",
    )
    default_cooldown_seconds: int = Field(
        default=30,
        ge=0,
        description="Cooldown when neither rule nor config sets one",
    )
    queue_size: int = Field(
        default=5,
        ge=1,
        description="Frames waiting for inference before the oldest is dropped",
    )


class OrchestratorConfig(BaseModel):
    """Multi-channel orchestrator configuration."""

    poll_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between stream liveness polls",
    )


class InferenceConfig(BaseModel):
    """Inference backend configuration."""

    backend: str = Field(
        default="yolo",
        description="Inference backend: 'yolo' or 'mock'",
    )
    model_path: str = Field(default="models/yolov8n.onnx", description="ONNX model path")
    input_size: int = Field(default=640, ge=32, description="Square model input size")
    confidence_threshold: float = Field(default=0.25, ge=0, le=1.0)
    iou_threshold: float = Field(default=0.45, ge=0, le=1.0)
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-frame inference timeout")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("yolo", "mock"):
            raise ValueError(f"Unknown inference backend: {v}")
        return v


class LivenessConfig(BaseModel):
    """Twitch stream status configuration."""

    twitch_client_id: Optional[str] = Field(default=None, description="Twitch app client ID")
    twitch_client_secret: Optional[str] = Field(default=None, description="Twitch app secret")
    cache_ttl_seconds: float = Field(default=30.0, ge=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    @property
    def enabled(self) -> bool:
        return bool(self.twitch_client_id and self.twitch_client_secret)


class StoreConfig(BaseModel):
    """Persistence configuration."""

    backend: str = Field(default="sqlite", description="Store backend: 'sqlite' or 'memory'")
    database_path: str = Field(default="data/streamwatch.db", description="SQLite file")


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8001, ge=1, le=65535, description="Bind port")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for the streamwatch agent.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    agent: AgentConfig = Field(default_factory=AgentConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    liveness: LivenessConfig = Field(default_factory=LivenessConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def capture_options(self) -> dict:
        """StreamCapture keyword arguments (frame interval comes per config)."""
        c = self.capture
        return {
            "reconnect_attempts": c.reconnect_attempts,
            "reconnect_base_delay_ms": c.reconnect_base_delay_ms,
            "reconnect_max_delay_ms": c.reconnect_max_delay_ms,
            "max_frame_size_bytes": c.max_frame_size_bytes,
            "max_buffer_frames": c.max_buffer_frames,
            "connection_timeout_ms": c.connection_timeout_ms,
            "frame_quality": c.frame_quality,
            "ffmpeg_path": c.ffmpeg_path,
            "kill_grace_seconds": c.kill_grace_seconds,
            "allowed_hosts": tuple(c.allowed_hosts),
        }


# =============================================================================
# Configuration Loading
# =============================================================================

CONFIG_SEARCH_PATHS = (
    Path("config.yaml"),
    Path("config.yml"),
    Path("/app/config.yaml"),
    Path(__file__).resolve().parents[2] / "config.yaml",
)

# env var -> (section, key, parser); first match wins for a shared key
ENV_OVERRIDES = (
    ("STREAMWATCH_FFMPEG_PATH", "capture", "ffmpeg_path", str),
    ("STREAMWATCH_FRAME_INTERVAL_MS", "capture", "frame_interval_ms", int),
    ("STREAMWATCH_RECONNECT_ATTEMPTS", "capture", "reconnect_attempts", int),
    ("STREAMWATCH_POLL_INTERVAL", "orchestrator", "poll_interval_seconds", float),
    ("STREAMWATCH_INFERENCE_BACKEND", "inference", "backend", str),
    ("STREAMWATCH_MODEL_PATH", "inference", "model_path", str),
    ("STREAMWATCH_TWITCH_CLIENT_ID", "liveness", "twitch_client_id", str),
    ("STREAMWATCH_TWITCH_CLIENT_SECRET", "liveness", "twitch_client_secret", str),
    ("STREAMWATCH_DATABASE_PATH", "store", "database_path", str),
    ("PORT", "server", "port", int),
    ("STREAMWATCH_PORT", "server", "port", int),
    ("STREAMWATCH_LOG_LEVEL", "logging", "level", str),
)


def find_config_file() -> Optional[Path]:
    """First existing file from CONFIG_SEARCH_PATHS, if any."""
    return next((path for path in CONFIG_SEARCH_PATHS if path.exists()), None)


def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Build Settings from defaults, a YAML file and the environment.

    Args:
        config_path: Path to config.yaml. If None, CONFIG_SEARCH_PATHS
            are tried in order.

    Raises:
        pydantic.ValidationError: If the merged values are invalid
    """
    path = Path(config_path) if config_path else find_config_file()

    config_data: dict = {}
    if path is not None and path.exists():
        logger.info(f"Loading config from: {path}")
        config_data = yaml.safe_load(path.read_text()) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data, os.environ)
    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict, environ) -> None:
    applied = set()
    for env_name, section, key, parse in ENV_OVERRIDES:
        raw = environ.get(env_name)
        if not raw or (section, key) in applied:
            continue
        config_data.setdefault(section, {})[key] = parse(raw)
        applied.add((section, key))


def setup_logging(settings: Settings) -> None:
    """Configure root logging from settings.logging."""
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        fmt = (
            '{"time": "%(asctime)s", "level": "%(levelname)s", '
            '"module": "%(name)s", "message": "%(message)s"}'
        )
    else:
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(level=level, format=fmt, datefmt="%Y-%m-%dT%H:%M:%S")


# =============================================================================
# Global Settings Instance
# =============================================================================

settings = load_config()
