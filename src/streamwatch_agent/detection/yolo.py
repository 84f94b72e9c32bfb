"""
YOLO ONNX Engine
================

Production inference engine running a YOLOv8 ONNX export through
OpenCV's DNN module.

This engine:
    - Decodes JPEG bytes with cv2.imdecode
    - Resizes to the square model input (fill, no letterbox)
    - Runs the network off the event loop, serialized by a lock
    - Decodes the [1, 84, N] output and applies per-class NMS

Design Rules:
    - This is the ONLY place in the codebase that decodes images
    - Fail fast on a missing model file (initialize raises)
    - Per-frame failures raise InferenceError, never crash the caller
    - Output parsing is a pure function (parse_yolo_output)
"""

import asyncio
import logging
import os
import threading
import time
from typing import List, Optional, Tuple

import cv2
import numpy as np

from streamwatch_agent.detection.classes import COCO_CLASSES, get_class_name
from streamwatch_agent.errors import InferenceError
from streamwatch_agent.models.detection import BoundingBox, Detection, InferenceResult


logger = logging.getLogger(__name__)


DEFAULT_MODEL_PATH = "models/yolov8n.onnx"
DEFAULT_INPUT_SIZE = 640
DEFAULT_CONFIDENCE_THRESHOLD = 0.25
DEFAULT_IOU_THRESHOLD = 0.45
MAX_IMAGE_SIZE_BYTES = 10 * 1024 * 1024
DEFAULT_INFERENCE_TIMEOUT_SECONDS = 30.0

MODEL_DOWNLOAD_URL = (
    "https://github.com/ultralytics/assets/releases/download/v0.0.0/yolov8n.onnx"
)


# =============================================================================
# Post-processing
# =============================================================================

def suppress_overlaps(
    boxes: np.ndarray,
    scores: np.ndarray,
    class_ids: np.ndarray,
    iou_threshold: float,
) -> List[int]:
    """
    Per-class NMS through cv2.dnn.NMSBoxesBatched.

    Args:
        boxes: (N, 4) array of [x1, y1, x2, y2]
        scores: (N,) candidate scores
        class_ids: (N,) class index per candidate
        iou_threshold: Boxes of one class overlapping above this are merged

    Returns:
        Indices of kept boxes, highest score first
    """
    if len(boxes) == 0:
        return []

    xywh = [
        [float(x1), float(y1), float(x2 - x1), float(y2 - y1)]
        for x1, y1, x2, y2 in boxes
    ]
    kept = cv2.dnn.NMSBoxesBatched(
        xywh,
        [float(s) for s in scores],
        [int(c) for c in class_ids],
        0.0,
        iou_threshold,
    )
    indices = [int(i) for i in np.asarray(kept).reshape(-1)]
    return sorted(indices, key=lambda i: -float(scores[i]))


def parse_yolo_output(
    output: np.ndarray,
    image_size: Tuple[int, int],
    input_size: int = DEFAULT_INPUT_SIZE,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    iou_threshold: float = DEFAULT_IOU_THRESHOLD,
) -> List[Detection]:
    """
    Decode a YOLOv8 output tensor into detections.

    Each of the N candidate columns holds [cx, cy, w, h, score_0..score_79]
    in model input pixels.

    Args:
        output: Array shaped (1, 84, N), (84, N) or (N, 84)
        image_size: Original (width, height) for rescaling boxes
        input_size: Square model input size
        confidence_threshold: Minimum best-class score
        iou_threshold: NMS overlap threshold

    Returns:
        Detections sorted by confidence (highest first)
    """
    data = np.asarray(output, dtype=np.float32)
    data = data.reshape(data.shape[-2], data.shape[-1])
    num_attrs = 4 + len(COCO_CLASSES)
    if data.shape[0] != num_attrs and data.shape[1] == num_attrs:
        data = data.T
    if data.shape[0] != num_attrs:
        raise InferenceError(f"Unexpected model output shape: {output.shape}")

    class_scores = data[4:]
    class_ids = np.argmax(class_scores, axis=0)
    scores = class_scores[class_ids, np.arange(class_scores.shape[1])]

    mask = scores >= confidence_threshold
    if not np.any(mask):
        return []

    cx, cy, w, h = data[0][mask], data[1][mask], data[2][mask], data[3][mask]
    scores = scores[mask]
    class_ids = class_ids[mask]

    width, height = image_size
    scale_x = width / float(input_size)
    scale_y = height / float(input_size)

    boxes = np.stack(
        [
            np.clip((cx - w / 2) * scale_x, 0, width),
            np.clip((cy - h / 2) * scale_y, 0, height),
            np.clip((cx + w / 2) * scale_x, 0, width),
            np.clip((cy + h / 2) * scale_y, 0, height),
        ],
        axis=1,
    )

    detections: List[Detection] = []
    for idx in suppress_overlaps(boxes, scores, class_ids, iou_threshold):
        x1, y1, x2, y2 = (float(v) for v in boxes[idx])
        detections.append(
            Detection(
                object_class=get_class_name(int(class_ids[idx])),
                confidence=min(1.0, float(scores[idx])),
                bbox=BoundingBox(x=x1, y=y1, width=x2 - x1, height=y2 - y1),
            )
        )
    return detections


# =============================================================================
# Engine
# =============================================================================

class YoloOnnxEngine:
    """
    YOLOv8 inference through cv2.dnn.

    Attributes:
        model_path: Path to the ONNX file
        input_size: Square model input size
        confidence_threshold: Minimum candidate score
        iou_threshold: NMS overlap threshold
        inference_timeout: Seconds before a detect() call is abandoned
    """

    def __init__(
        self,
        model_path: str = DEFAULT_MODEL_PATH,
        input_size: int = DEFAULT_INPUT_SIZE,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        iou_threshold: float = DEFAULT_IOU_THRESHOLD,
        inference_timeout: float = DEFAULT_INFERENCE_TIMEOUT_SECONDS,
        max_image_size: int = MAX_IMAGE_SIZE_BYTES,
    ) -> None:
        self.model_path = model_path
        self.input_size = input_size
        self.confidence_threshold = confidence_threshold
        self.iou_threshold = iou_threshold
        self.inference_timeout = inference_timeout
        self.max_image_size = max_image_size

        self._net: Optional["cv2.dnn.Net"] = None
        self._lock = threading.Lock()

        logger.debug(
            f"YoloOnnxEngine created: model={model_path}, input={input_size}, "
            f"conf={confidence_threshold}, iou={iou_threshold}"
        )

    @property
    def is_initialized(self) -> bool:
        return self._net is not None

    async def initialize(self) -> None:
        """
        Load the ONNX model.

        Raises:
            InferenceError: If the model file is missing or unreadable
        """
        if self._net is not None:
            logger.warning("YoloOnnxEngine already initialized")
            return

        path = os.path.abspath(self.model_path)
        if not os.path.exists(path):
            logger.error(f"Model file not found: {path}")
            raise InferenceError(
                f"Model file not found: {path} (download from {MODEL_DOWNLOAD_URL})"
            )

        logger.info(f"Loading YOLO model: {path}")
        try:
            self._net = await asyncio.to_thread(cv2.dnn.readNetFromONNX, path)
        except cv2.error as e:
            raise InferenceError(f"Failed to load YOLO model: {e}") from e

        logger.info("YOLO model loaded successfully")

    async def detect(self, image: bytes) -> InferenceResult:
        """
        Run object detection on one JPEG image.

        Raises:
            InferenceError: Not initialized, invalid image, failure or timeout
        """
        if self._net is None:
            raise InferenceError("YoloOnnxEngine not initialized. Call initialize() first.")
        if not image:
            raise InferenceError("Image buffer is empty")
        if len(image) > self.max_image_size:
            raise InferenceError(
                f"Image exceeds maximum size of {self.max_image_size // (1024 * 1024)}MB"
            )

        started = time.perf_counter()
        try:
            detections = await asyncio.wait_for(
                asyncio.to_thread(self._detect_sync, image),
                timeout=self.inference_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Inference timed out after {self.inference_timeout}s")
            raise InferenceError("Object detection timed out") from None

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.debug(f"Detection complete: count={len(detections)}, time={elapsed_ms:.1f}ms")

        return InferenceResult(detections=detections, inference_time_ms=elapsed_ms)

    def _detect_sync(self, image: bytes) -> List[Detection]:
        bgr = self._decode(image)
        height, width = bgr.shape[:2]

        blob = cv2.dnn.blobFromImage(
            bgr,
            scalefactor=1.0 / 255.0,
            size=(self.input_size, self.input_size),
            swapRB=True,
            crop=False,
        )

        with self._lock:
            net = self._net
            if net is None:
                raise InferenceError("YoloOnnxEngine was disposed")
            try:
                net.setInput(blob)
                output = net.forward()
            except cv2.error as e:
                raise InferenceError(f"Object detection failed: {e}") from e

        return parse_yolo_output(
            output,
            image_size=(width, height),
            input_size=self.input_size,
            confidence_threshold=self.confidence_threshold,
            iou_threshold=self.iou_threshold,
        )

    @staticmethod
    def _decode(image: bytes) -> np.ndarray:
        """Decode JPEG bytes to a BGR array."""
        nparr = np.frombuffer(image, np.uint8)
        bgr = cv2.imdecode(nparr, cv2.IMREAD_COLOR)

        if bgr is None:
            raise InferenceError("Failed to decode image: cv2.imdecode returned None")
        if len(bgr.shape) != 3 or bgr.shape[2] != 3:
            raise InferenceError(f"Invalid image shape: {bgr.shape}")

        return bgr

    def get_model_info(self) -> dict:
        return {
            "initialized": self.is_initialized,
            "model_path": self.model_path,
            "input_size": self.input_size,
            "confidence_threshold": self.confidence_threshold,
            "iou_threshold": self.iou_threshold,
            "num_classes": len(COCO_CLASSES),
        }

    def dispose(self) -> None:
        with self._lock:
            if self._net is not None:
                self._net = None
                logger.info("YoloOnnxEngine disposed")
