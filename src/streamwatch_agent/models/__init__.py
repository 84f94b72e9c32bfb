"""
Data Models
===========

Pydantic models for the streamwatch agent.

This module re-exports all data models for convenient access.

Models:
    Channel:
        - Channel: Chat channel notifications go to
        - DetectionConfig: Per-channel detection settings
        - DetectionRule: Per-class notification policy
        - LivenessResult: Stream liveness answer

    Detection:
        - Detection, BoundingBox: One object in a frame
        - InferenceResult: Output of an inference call
        - DetectionEvent: Record of a sent notification

    Status:
        - CaptureStatus: StreamCapture lifecycle
        - MonitorState: Channel lifecycle in the orchestrator
        - MonitoringStatus, MonitorSummary, OrchestratorStatus: Status views
"""

from streamwatch_agent.models.channel import (
    Channel,
    DetectionConfig,
    DetectionRule,
    LivenessResult,
)
from streamwatch_agent.models.detection import (
    BoundingBox,
    Detection,
    DetectionEvent,
    InferenceResult,
)
from streamwatch_agent.models.status import (
    CaptureStatus,
    MonitoringStatus,
    MonitorState,
    MonitorSummary,
    OrchestratorStatus,
)

__all__ = [
    # Channel
    "Channel",
    "DetectionConfig",
    "DetectionRule",
    "LivenessResult",
    # Detection
    "BoundingBox",
    "Detection",
    "DetectionEvent",
    "InferenceResult",
    # Status
    "CaptureStatus",
    "MonitorState",
    "MonitoringStatus",
    "MonitorSummary",
    "OrchestratorStatus",
]
