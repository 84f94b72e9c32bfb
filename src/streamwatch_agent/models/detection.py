"""
Detection Models
================

Pydantic models for inference output and fired notifications.

Inference Contract (from any InferenceEngine):
    {
        "detections": [
            {"class": "cat", "confidence": 0.82,
             "bbox": {"x": 10, "y": 20, "width": 100, "height": 80}}
        ],
        "inference_time_ms": 41.5
    }

Design Rules:
    - Detections are returned in engine order (highest confidence first
      for the YOLO backend); the pipeline preserves that order
    - DetectionEvent is immutable once created
"""

import time
from typing import List, Optional

from pydantic import BaseModel, Field


class BoundingBox(BaseModel):
    """Axis-aligned box in source image pixels."""

    x: float = Field(..., ge=0.0)
    y: float = Field(..., ge=0.0)
    width: float = Field(..., ge=0.0)
    height: float = Field(..., ge=0.0)


class Detection(BaseModel):
    """
    A single object found in a frame.

    Attributes:
        object_class: Class label (serialized as "class")
        confidence: Score in [0, 1]
        bbox: Optional bounding box
    """

    object_class: str = Field(..., alias="class", min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    bbox: Optional[BoundingBox] = None

    class Config:
        """Pydantic model configuration."""

        populate_by_name = True


class InferenceResult(BaseModel):
    """Output of one InferenceEngine.detect call."""

    detections: List[Detection] = Field(default_factory=list)
    inference_time_ms: float = Field(default=0.0, ge=0.0)
    timestamp: float = Field(default_factory=time.time)


class DetectionEvent(BaseModel):
    """
    Record of a notification that was actually sent.

    Attributes:
        channel_id: Channel the notification went to
        channel_name: Chat username of that channel
        object_class: Normalized class that matched the rule
        confidence: Detection confidence
        rule_id: Matching rule
        message: Rendered message that was dispatched
        timestamp: UNIX time of the frame capture
    """

    channel_id: int
    channel_name: str
    object_class: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    rule_id: Optional[int] = None
    message: str
    timestamp: float

    class Config:
        """Pydantic model configuration."""

        frozen = True
