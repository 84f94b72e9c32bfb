"""
Stream Module
=============

Live stream capture and frame buffering components.

This module provides the ingestion layer for the streamwatch agent:
    - Frame: Typed frame data model (validated JPEG bytes)
    - FrameRingBuffer: Bounded window of recent frames per capture
    - FrameQueue: Async-safe bounded queue (drops oldest on overflow)
    - StreamCapture: ffmpeg-backed frame source with reconnection

Example:
    from streamwatch_agent.stream import FrameQueue, StreamCapture

    queue = FrameQueue(maxsize=5)
    capture = StreamCapture(
        "https://twitch.tv/somechannel",
        frame_interval_ms=5000,
    )
    capture.on_frame(queue.put_nowait)
    await capture.start()

    while True:
        frame = await queue.get()
        process(frame)
"""

from streamwatch_agent.stream.frame import Frame
from streamwatch_agent.stream.buffer import FrameQueue, FrameRingBuffer
from streamwatch_agent.stream.backoff import BackoffPolicy
from streamwatch_agent.stream.capture import (
    CaptureMetrics,
    StreamCapture,
    build_ffmpeg_command,
)
from streamwatch_agent.stream.sources import (
    DEFAULT_ALLOWED_HOSTS,
    is_allowed_stream_url,
    sanitize_url,
    validate_stream_url,
)


__all__ = [
    "Frame",
    "FrameQueue",
    "FrameRingBuffer",
    "BackoffPolicy",
    "CaptureMetrics",
    "StreamCapture",
    "build_ffmpeg_command",
    "DEFAULT_ALLOWED_HOSTS",
    "is_allowed_stream_url",
    "sanitize_url",
    "validate_stream_url",
]
