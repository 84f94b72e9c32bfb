"""
Channel Models
==============

Records read from the channel and detection-config stores.

These mirror the persisted rows:
    channels                  -> Channel
    object_detection_configs  -> DetectionConfig
    object_detection_rules    -> DetectionRule
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class Channel(BaseModel):
    """A chat channel notifications are sent to."""

    id: int
    username: str = Field(..., min_length=1)


class DetectionConfig(BaseModel):
    """
    Per-channel detection settings.

    Attributes:
        id: Config ID
        channel_id: Owning channel
        stream_url: Source stream (must pass the allow-list at capture time)
        frame_interval_ms: Milliseconds between sampled frames (None: service default)
        cooldown_seconds: Default cooldown for rules without their own
        is_enabled: Whether the channel should be monitored
    """

    id: int
    channel_id: int
    stream_url: Optional[str] = None
    frame_interval_ms: Optional[int] = Field(default=None, ge=100)
    cooldown_seconds: int = Field(default=30, ge=0)
    is_enabled: bool = False


class DetectionRule(BaseModel):
    """
    Policy for one object class within one config.

    Attributes:
        id: Rule ID
        config_id: Owning config
        object_class: Normalized class name (lowercase, trimmed)
        min_confidence: Inclusive confidence floor
        cooldown_seconds: Per-rule cooldown override (None = config default)
        message_template: Template with {object}, {confidence},
            {confidence_pct} and {streamer} placeholders
        is_enabled: Disabled rules are never consulted
    """

    id: int
    config_id: int
    object_class: str = Field(..., min_length=1)
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    cooldown_seconds: Optional[int] = Field(default=None, ge=0)
    message_template: Optional[str] = Field(default=None, max_length=500)
    is_enabled: bool = True

    @field_validator("object_class")
    @classmethod
    def normalize_object_class(cls, v: str) -> str:
        """Store classes the way the pipeline looks them up."""
        normalized = v.strip().lower()
        if not normalized:
            raise ValueError("object_class must not be blank")
        return normalized


class LivenessResult(BaseModel):
    """
    Answer of a LivenessChecker.

    Attributes:
        is_live: Whether the stream is broadcasting
        stream_data: Provider metadata when live
        error: Set when the status could not be determined
    """

    is_live: bool
    stream_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
