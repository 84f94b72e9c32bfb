"""
Status Models
=============

Lifecycle states for captures and monitored channels, plus the
read-only status views exposed by the orchestrator.

Capture lifecycle (per attempt, monotonic):
    stopped → connecting → connected
                         ↘ reconnecting → connecting → ...
                         ↘ error

Channel lifecycle (orchestrator):
    disabled → pending (enabled, stream offline)
             → monitoring (stream live, pipeline running)
             → pending (stream went offline)
             → paused_error (stream errored, retried like pending)
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CaptureStatus(str, Enum):
    """
    Status of one StreamCapture.

    Attributes:
        STOPPED: No subprocess, not trying to connect
        CONNECTING: Subprocess spawned, waiting for the first decode
        CONNECTED: Frames are flowing
        RECONNECTING: Disconnected, a reconnect is scheduled
        ERROR: Reconnect budget exhausted, capture gave up
    """

    STOPPED = "stopped"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class MonitorState(str, Enum):
    """
    Monitoring state of one channel inside the orchestrator.

    Attributes:
        DISABLED: Not monitored (no registry record)
        PENDING: Enabled, waiting for the stream to go live
        MONITORING: Pipeline running
        PAUSED_ERROR: Pipeline stopped after a stream error, retried by the poll
    """

    DISABLED = "disabled"
    PENDING = "pending"
    MONITORING = "monitoring"
    PAUSED_ERROR = "paused_error"


class MonitoringStatus(BaseModel):
    """Status view for one channel."""

    channel_id: int
    state: MonitorState
    is_monitoring: bool = False
    is_pending: bool = False
    is_enabled: bool = False
    has_config: bool = False
    stream_url: Optional[str] = None
    pending_reason: Optional[str] = None
    last_error: Optional[str] = None
    pipeline: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Pipeline status when monitoring",
    )


class MonitorSummary(BaseModel):
    """One entry of the orchestrator-wide status listing."""

    channel_id: int
    channel_name: str
    state: MonitorState
    stream_url: Optional[str] = None
    last_error: Optional[str] = None
    pipeline: Optional[Dict[str, Any]] = None


class OrchestratorStatus(BaseModel):
    """Orchestrator-wide status view."""

    initialized: bool
    detector_loaded: bool
    active_monitor_count: int = Field(..., ge=0)
    pending_channel_count: int = Field(..., ge=0)
    monitors: List[MonitorSummary] = Field(default_factory=list)
    pending_channels: List[MonitorSummary] = Field(default_factory=list)
