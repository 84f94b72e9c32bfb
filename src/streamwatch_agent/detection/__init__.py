"""
Detection Module
================

Frame inference, rule matching and notification for monitored channels.

Components:
    - InferenceEngine: Protocol for object-inference backends
    - MockInferenceEngine: Deterministic scripted engine for testing
    - YoloOnnxEngine: YOLOv8 ONNX backend via OpenCV DNN (production)
    - RuleCache: TTL-cached class -> rule lookup table
    - DetectionPipeline: capture → inference → rules → notifier

Design Philosophy:
    Inference is treated as a pluggable black box. The pipeline
    reasons over class labels and confidences, never over pixels.
"""

from streamwatch_agent.detection.engine import InferenceEngine, MockInferenceEngine
from streamwatch_agent.detection.yolo import YoloOnnxEngine, parse_yolo_output
from streamwatch_agent.detection.rules import RuleCache
from streamwatch_agent.detection.templates import (
    DEFAULT_MESSAGE_TEMPLATE,
    format_template,
    render_detection_message,
    sanitize_message,
)
from streamwatch_agent.detection.pipeline import DetectionPipeline, PipelineStats


__all__ = [
    "InferenceEngine",
    "MockInferenceEngine",
    "YoloOnnxEngine",
    "parse_yolo_output",
    "RuleCache",
    "DEFAULT_MESSAGE_TEMPLATE",
    "format_template",
    "render_detection_message",
    "sanitize_message",
    "DetectionPipeline",
    "PipelineStats",
]
