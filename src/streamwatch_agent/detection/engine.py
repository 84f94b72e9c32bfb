"""
Inference Engine
================

Object-inference abstraction for the detection pipeline.

This module provides the InferenceEngine protocol and the
MockInferenceEngine implementation used for dry runs and tests.

Design Rules:
    - Takes raw JPEG bytes (decoding is the engine's business)
    - Returns an InferenceResult with detections in engine order
    - One engine instance is shared by every pipeline
    - Mock provides deterministic, scripted output
"""

import asyncio
import logging
import time
from typing import List, Optional, Protocol, Sequence

from streamwatch_agent.errors import InferenceError
from streamwatch_agent.models.detection import Detection, InferenceResult


logger = logging.getLogger(__name__)


class InferenceEngine(Protocol):
    """
    Protocol for inference backends.

    This interface is implemented by:
        - MockInferenceEngine (dry runs, testing)
        - YoloOnnxEngine (production, OpenCV DNN)
    """

    @property
    def is_initialized(self) -> bool:
        ...

    async def initialize(self) -> None:
        """Load model resources. Idempotent."""
        ...

    async def detect(self, image: bytes) -> InferenceResult:
        """
        Detect objects in one JPEG image.

        Args:
            image: Complete JPEG bytes

        Returns:
            InferenceResult with zero or more detections

        Raises:
            InferenceError: If the image cannot be processed
        """
        ...

    def dispose(self) -> None:
        """Release model resources."""
        ...


class MockInferenceEngine:
    """
    Deterministic mock inference engine.

    Replays a fixed script of detection lists, one entry per call,
    cycling when the script runs out. An empty script detects nothing.

    Attributes:
        script: Detection lists returned in order
        delay_seconds: Simulated inference latency
        call_count: Number of detect() calls so far

    Example:
        engine = MockInferenceEngine(script=[
            [Detection(object_class="cat", confidence=0.82)],
            [],
        ])
        await engine.initialize()
        result = await engine.detect(frame.data)
    """

    def __init__(
        self,
        script: Optional[Sequence[Sequence[Detection]]] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.script: List[List[Detection]] = [list(d) for d in (script or [])]
        self.delay_seconds = delay_seconds
        self.call_count: int = 0
        self._initialized = False

        logger.info(
            f"MockInferenceEngine initialized: script_length={len(self.script)}, "
            f"delay={delay_seconds}s"
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        self._initialized = True

    async def detect(self, image: bytes) -> InferenceResult:
        if not self._initialized:
            raise InferenceError("Inference engine not initialized")
        if not image:
            raise InferenceError("Image buffer is empty")

        started = time.perf_counter()
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        detections: List[Detection] = []
        if self.script:
            detections = list(self.script[self.call_count % len(self.script)])
        self.call_count += 1

        return InferenceResult(
            detections=detections,
            inference_time_ms=(time.perf_counter() - started) * 1000.0,
        )

    def dispose(self) -> None:
        self._initialized = False
