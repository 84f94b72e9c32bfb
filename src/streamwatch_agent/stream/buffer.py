"""
Frame Buffers
=============

Bounded frame containers used by the capture and detection layers.

This module provides two buffers with the same drop-oldest policy:
    - FrameRingBuffer: window of recent frames kept by a StreamCapture
    - FrameQueue: async hand-off between a capture and its pipeline worker

Design Rules:
    - Fixed maximum size (drops oldest on overflow)
    - Never grows, never blocks the producer
    - Exposes minimal metrics for observability
    - Does NOT process or modify frames
"""

import asyncio
import logging
from collections import deque
from typing import List, Optional

from streamwatch_agent.stream.frame import Frame


logger = logging.getLogger(__name__)


class FrameRingBuffer:
    """
    Fixed-capacity window of the most recent frames.

    Owned by exactly one StreamCapture. Pushing past capacity evicts
    the oldest frame (FIFO), so memory use is bounded by
    capacity * max_frame_size.

    Example:
        ring = FrameRingBuffer(capacity=5)
        ring.push(frame)
        latest = ring.latest()
    """

    def __init__(self, capacity: int = 5) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")

        self._capacity = capacity
        self._frames: deque = deque(maxlen=capacity)
        self._evicted_count: int = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evicted_count(self) -> int:
        """Number of frames evicted to make room."""
        return self._evicted_count

    def __len__(self) -> int:
        return len(self._frames)

    def push(self, frame: Frame) -> Optional[Frame]:
        """
        Append a frame, evicting the oldest one if full.

        Returns:
            The evicted frame, or None if nothing was evicted.
        """
        evicted = None
        if len(self._frames) == self._capacity:
            evicted = self._frames[0]
            self._evicted_count += 1
        self._frames.append(frame)
        return evicted

    def latest(self) -> Optional[Frame]:
        """Most recent frame, or None if empty."""
        return self._frames[-1] if self._frames else None

    def snapshot(self) -> List[Frame]:
        """Copy of the buffered frames, oldest first."""
        return list(self._frames)

    def clear(self) -> int:
        """Drop all frames. Returns the number dropped."""
        cleared = len(self._frames)
        self._frames.clear()
        return cleared


class FrameQueue:
    """
    Single-consumer hand-off from a StreamCapture to its pipeline worker.

    put_nowait() is synchronous so it can be called from capture
    callbacks. When maxsize frames are already waiting, the oldest one
    is discarded: a slow inference engine sees the newest frames and
    never backs up the decoder.

    Example:
        queue = FrameQueue(maxsize=5)
        capture.on_frame(queue.put_nowait)

        frame = await queue.get()
    """

    def __init__(self, maxsize: int = 5) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")

        self._maxsize = maxsize
        self._frames: deque = deque()
        self._ready = asyncio.Event()
        self._dropped_count: int = 0
        self._total_put: int = 0

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def size(self) -> int:
        return len(self._frames)

    @property
    def dropped_count(self) -> int:
        """Frames discarded because the worker fell behind."""
        return self._dropped_count

    def put_nowait(self, frame: Frame) -> bool:
        """
        Enqueue a frame.

        Returns:
            False if the oldest waiting frame had to be discarded.
        """
        self._total_put += 1
        overflow = len(self._frames) >= self._maxsize
        if overflow:
            stale = self._frames.popleft()
            self._dropped_count += 1
            logger.debug(
                f"Worker behind, discarding frame {stale.sequence} "
                f"(dropped so far: {self._dropped_count})"
            )

        self._frames.append(frame)
        self._ready.set()
        return not overflow

    async def get(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Oldest waiting frame; None if `timeout` seconds pass first."""
        while not self._frames:
            self._ready.clear()
            try:
                await asyncio.wait_for(self._ready.wait(), timeout)
            except asyncio.TimeoutError:
                return None
        return self._frames.popleft()

    def clear(self) -> int:
        """Discard waiting frames. Returns how many there were."""
        count = len(self._frames)
        self._frames.clear()
        self._ready.clear()
        return count

    def metrics(self) -> dict:
        return {
            "size": self.size,
            "maxsize": self._maxsize,
            "dropped_count": self._dropped_count,
            "total_put": self._total_put,
        }
