"""
YOLO Backend Tests
==================

Tests for YOLOv8 output decoding, NMS and the OpenCV engine wrapper.
"""

import asyncio

import cv2
import numpy as np
import pytest

from streamwatch_agent.detection.classes import (
    COCO_CLASSES,
    get_category_for_class,
    get_class_id,
    get_class_name,
    get_classes_by_category,
    normalize_class_name,
)
from streamwatch_agent.detection.yolo import (
    YoloOnnxEngine,
    parse_yolo_output,
    suppress_overlaps,
)
from streamwatch_agent.errors import InferenceError


CAT = get_class_id("cat")
PERSON = get_class_id("person")


def make_output(candidates):
    """Build a (1, 84, N) tensor from (cx, cy, w, h, class_id, score) tuples."""
    output = np.zeros((1, 4 + len(COCO_CLASSES), len(candidates)), dtype=np.float32)
    for i, (cx, cy, w, h, class_id, score) in enumerate(candidates):
        output[0, 0:4, i] = (cx, cy, w, h)
        output[0, 4 + class_id, i] = score
    return output


def encode_jpeg(width=320, height=240) -> bytes:
    ok, buf = cv2.imencode(".jpg", np.zeros((height, width, 3), dtype=np.uint8))
    assert ok
    return buf.tobytes()


class FakeNet:
    """cv2.dnn.Net stand-in returning a fixed output."""

    def __init__(self, output):
        self.output = output
        self.inputs = []

    def setInput(self, blob):
        self.inputs.append(blob)

    def forward(self):
        return self.output


class TestClasses:
    """Tests for COCO class helpers."""

    def test_lookup(self):
        assert len(COCO_CLASSES) == 80
        assert get_class_name(CAT) == "cat"
        assert get_class_id(" Cat ") == CAT
        assert get_class_name(999) is None
        assert normalize_class_name("  Teddy Bear ") == "teddy bear"

    def test_categories(self):
        assert "cat" in get_classes_by_category("animals")
        assert get_category_for_class("person") == "people"
        assert get_classes_by_category("nope") is None


class TestSuppressOverlaps:
    """Tests for per-class non-maximum suppression."""

    def test_overlapping_same_class_suppressed(self):
        boxes = np.array([[0, 0, 10, 10], [1, 1, 11, 11], [0, 0, 10, 10]], dtype=np.float32)
        scores = np.array([0.9, 0.8, 0.7], dtype=np.float32)
        class_ids = np.array([CAT, CAT, PERSON])

        keep = suppress_overlaps(boxes, scores, class_ids, iou_threshold=0.45)
        assert keep == [0, 2]

    def test_disjoint_boxes_kept_highest_first(self):
        boxes = np.array([[0, 0, 10, 10], [50, 50, 60, 60]], dtype=np.float32)
        scores = np.array([0.4, 0.95], dtype=np.float32)
        class_ids = np.array([CAT, CAT])

        assert suppress_overlaps(boxes, scores, class_ids, iou_threshold=0.45) == [1, 0]

    def test_empty(self):
        empty = np.zeros((0, 4), dtype=np.float32)
        assert suppress_overlaps(empty, np.zeros(0), np.zeros(0, dtype=int), 0.45) == []


class TestParseYoloOutput:
    """Tests for decoding the raw output tensor."""

    def test_decodes_and_rescales(self):
        output = make_output([
            (320, 320, 100, 100, CAT, 0.9),
            (322, 322, 100, 100, CAT, 0.8),
            (100, 100, 50, 50, PERSON, 0.1),
        ])
        detections = parse_yolo_output(output, image_size=(1280, 720))

        assert len(detections) == 1
        detection = detections[0]
        assert detection.object_class == "cat"
        assert detection.confidence == pytest.approx(0.9)
        assert detection.bbox.x == pytest.approx(540.0)
        assert detection.bbox.y == pytest.approx(303.75)
        assert detection.bbox.width == pytest.approx(200.0)
        assert detection.bbox.height == pytest.approx(112.5)

    def test_sorted_by_confidence(self):
        output = make_output([
            (100, 100, 40, 40, PERSON, 0.5),
            (500, 500, 40, 40, CAT, 0.95),
        ])
        detections = parse_yolo_output(output, image_size=(640, 640))
        assert [d.object_class for d in detections] == ["cat", "person"]

    def test_transposed_layout(self):
        output = make_output([(320, 320, 64, 64, CAT, 0.7)])[0].T
        detections = parse_yolo_output(output, image_size=(640, 640))
        assert [d.object_class for d in detections] == ["cat"]

    def test_boxes_are_clipped(self):
        output = make_output([(10, 10, 100, 100, CAT, 0.9)])
        bbox = parse_yolo_output(output, image_size=(640, 640))[0].bbox
        assert bbox.x == 0.0
        assert bbox.y == 0.0

    def test_nothing_above_threshold(self):
        output = make_output([(320, 320, 64, 64, CAT, 0.2)])
        assert parse_yolo_output(output, image_size=(640, 640)) == []

    def test_bad_shape(self):
        with pytest.raises(InferenceError):
            parse_yolo_output(np.zeros((1, 10, 5), dtype=np.float32), image_size=(640, 640))


class TestYoloOnnxEngine:
    """Tests for the engine wrapper (network replaced by a fake)."""

    def test_missing_model_file(self, tmp_path):
        engine = YoloOnnxEngine(model_path=str(tmp_path / "missing.onnx"))
        with pytest.raises(InferenceError, match="Model file not found"):
            asyncio.run(engine.initialize())
        assert not engine.is_initialized

    def test_detect_requires_initialize(self):
        with pytest.raises(InferenceError, match="not initialized"):
            asyncio.run(YoloOnnxEngine().detect(encode_jpeg()))

    def test_detect_with_fake_network(self):
        engine = YoloOnnxEngine()
        net = FakeNet(make_output([(320, 320, 64, 64, CAT, 0.85)]))
        engine._net = net

        result = asyncio.run(engine.detect(encode_jpeg(320, 240)))

        assert [d.object_class for d in result.detections] == ["cat"]
        assert result.detections[0].bbox.x == pytest.approx(144.0)
        assert result.inference_time_ms >= 0
        assert net.inputs[0].shape == (1, 3, 640, 640)

    def test_undecodable_image(self):
        engine = YoloOnnxEngine()
        engine._net = FakeNet(make_output([]))
        with pytest.raises(InferenceError):
            asyncio.run(engine.detect(b"\xff\xd8not really a jpeg\xff\xd9"))

    def test_empty_image(self):
        engine = YoloOnnxEngine()
        engine._net = FakeNet(make_output([]))
        with pytest.raises(InferenceError):
            asyncio.run(engine.detect(b""))

    def test_dispose(self):
        engine = YoloOnnxEngine()
        engine._net = FakeNet(make_output([]))
        engine.dispose()
        assert not engine.is_initialized
        assert engine.get_model_info()["num_classes"] == 80
