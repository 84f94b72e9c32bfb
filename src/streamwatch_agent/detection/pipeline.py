"""
Detection Pipeline
==================

Per-channel pipeline: stream capture → inference → rules → notification.

This module provides the DetectionPipeline class which:
    - Owns one StreamCapture for the channel's stream
    - Hands frames to a single worker through a drop-oldest FrameQueue
    - Runs inference and matches detections against the channel's rules
    - Applies per-class cooldowns and renders message templates
    - Dispatches notifications and persists DetectionEvents

Design Rules:
    - Frames are processed one at a time, in capture order
    - Per-frame failures (inference, rules, render, persistence) are logged,
      never propagated
    - Notifier failures are counted and do not set a cooldown
    - Only capture errors reach the pipeline's error observers
    - Nothing is sent once stop() has been requested
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from streamwatch_agent.detection.rules import DEFAULT_RULES_TTL_SECONDS, RuleCache
from streamwatch_agent.detection.templates import render_detection_message
from streamwatch_agent.models.channel import Channel, DetectionConfig, DetectionRule
from streamwatch_agent.models.detection import Detection, DetectionEvent
from streamwatch_agent.stream.buffer import FrameQueue
from streamwatch_agent.stream.capture import DEFAULT_FRAME_INTERVAL_MS, StreamCapture
from streamwatch_agent.stream.frame import Frame
from streamwatch_agent.stream.sources import sanitize_url


logger = logging.getLogger(__name__)


DEFAULT_COOLDOWN_SECONDS = 30
DEFAULT_QUEUE_SIZE = 5

DetectionCallback = Callable[[DetectionEvent], None]
ErrorCallback = Callable[[Exception], None]
CaptureFactory = Callable[..., StreamCapture]


def default_stream_url(channel: Channel) -> str:
    """Stream URL used when a config has none of its own."""
    return f"https://twitch.tv/{channel.username}"


class PipelineStats:
    """Counters for DetectionPipeline observability."""

    __slots__ = (
        "frames_processed",
        "detections_total",
        "messages_sent",
        "notify_errors",
        "processing_errors",
        "start_time",
        "last_detection",
    )

    def __init__(self) -> None:
        self.frames_processed: int = 0
        self.detections_total: int = 0
        self.messages_sent: int = 0
        self.notify_errors: int = 0
        self.processing_errors: int = 0
        self.start_time: Optional[float] = None
        self.last_detection: Optional[DetectionEvent] = None

    def to_dict(self) -> dict:
        """Export stats as dict."""
        return {
            "frames_processed": self.frames_processed,
            "detections_total": self.detections_total,
            "messages_sent": self.messages_sent,
            "notify_errors": self.notify_errors,
            "processing_errors": self.processing_errors,
            "start_time": self.start_time,
            "last_detection": (
                self.last_detection.model_dump() if self.last_detection else None
            ),
        }


class DetectionPipeline:
    """
    Runs object detection on one channel's stream.

    Attributes:
        config: Detection config of the channel
        channel: Channel notifications are sent to
        stats: Pipeline counters

    Example:
        pipeline = DetectionPipeline(config, channel, engine, notifier, store)
        pipeline.on_detection(lambda event: print(event.message))
        pipeline.on_error(lambda error: print(error))

        await pipeline.start()
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        config: DetectionConfig,
        channel: Channel,
        engine,
        notifier,
        store,
        *,
        capture_factory: Optional[CaptureFactory] = None,
        capture_options: Optional[Dict[str, Any]] = None,
        rules_ttl_seconds: float = DEFAULT_RULES_TTL_SECONDS,
        default_cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        default_frame_interval_ms: int = DEFAULT_FRAME_INTERVAL_MS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize detection pipeline.

        Args:
            config: Detection config of the channel
            channel: Channel notifications are sent to
            engine: Shared InferenceEngine
            notifier: Notifier used to send messages
            store: DetectionConfigStore for rules and detection logs
            capture_factory: Builds the frame source (default StreamCapture)
            capture_options: Extra keyword arguments for the capture
            rules_ttl_seconds: Rule cache lifetime
            default_cooldown_seconds: Cooldown when neither rule nor config set one
            default_frame_interval_ms: Frame interval when the config sets none
            queue_size: Frames waiting for inference before the oldest is dropped
            clock: Monotonic time source for cooldowns (injectable for tests)
        """
        if engine is None:
            raise ValueError("engine is required")
        if notifier is None:
            raise ValueError("notifier is required")

        self.config = config
        self.channel = channel
        self._engine = engine
        self._notifier = notifier
        self._store = store
        self._capture_factory: CaptureFactory = capture_factory or StreamCapture
        self._capture_options = dict(capture_options or {})
        self._default_cooldown = default_cooldown_seconds
        self._default_frame_interval_ms = default_frame_interval_ms
        self._clock = clock

        self._rules = RuleCache(store, config.id, ttl_seconds=rules_ttl_seconds, clock=clock)
        self._queue = FrameQueue(maxsize=queue_size)
        self._cooldowns: Dict[str, float] = {}

        self._capture: Optional[StreamCapture] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_requested = False

        self._detection_callbacks: List[DetectionCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

        self.stats = PipelineStats()

        logger.debug(
            f"DetectionPipeline created: config={config.id}, "
            f"channel={channel.id} ({channel.username})"
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stream_url(self) -> str:
        return self.config.stream_url or default_stream_url(self.channel)

    @property
    def frame_interval_ms(self) -> int:
        return self.config.frame_interval_ms or self._default_frame_interval_ms

    @property
    def capture(self) -> Optional[StreamCapture]:
        return self._capture

    def on_detection(self, callback: DetectionCallback) -> None:
        self._detection_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    async def start(self) -> None:
        """
        Start capturing and processing frames.

        Raises:
            InvalidStreamUrlError: Stream URL failed the allow-list
            CaptureError: The capture could not connect
        """
        if self._running:
            logger.warning(f"Detection pipeline already running: {self.channel.username}")
            return

        logger.info(
            f"Starting detection pipeline: channel={self.channel.username}, "
            f"config={self.config.id}"
        )

        self._stop_requested = False
        capture = self._capture_factory(
            self.stream_url,
            frame_interval_ms=self.frame_interval_ms,
            **self._capture_options,
        )
        capture.on_frame(self._enqueue_frame)
        capture.on_error(self._handle_capture_error)
        self._capture = capture

        self._worker_task = asyncio.create_task(
            self._run_worker(), name=f"pipeline_{self.channel.id}"
        )

        try:
            await capture.start()
        except asyncio.CancelledError:
            logger.info(f"Detection pipeline start cancelled: channel={self.channel.username}")
            await self._teardown()
            raise
        except Exception as e:
            logger.error(
                f"Failed to start detection pipeline: channel={self.channel.username}: {e}"
            )
            await self._teardown()
            raise

        self._running = True
        self.stats.start_time = time.time()

        logger.info(
            f"Detection pipeline started: channel={self.channel.username}, "
            f"stream={sanitize_url(self.stream_url)}"
        )

    async def stop(self) -> None:
        """
        Stop the capture and the worker. Idempotent.

        Frames already queued are discarded; a detection in flight is not sent.
        """
        if not self._running and self._capture is None and self._worker_task is None:
            logger.debug(f"Detection pipeline not running: {self.channel.username}")
            return

        logger.info(f"Stopping detection pipeline: {self.channel.username}")
        self._running = False

        await self._teardown()

        logger.info(
            f"Detection pipeline stopped: channel={self.channel.username}, "
            f"stats={self.stats.to_dict()}"
        )

    async def _teardown(self) -> None:
        self._stop_requested = True

        capture = self._capture
        self._capture = None
        if capture is not None:
            try:
                await capture.stop()
            except Exception as e:
                logger.error(f"Error stopping stream capture: {self.channel.username}: {e}")

        worker = self._worker_task
        self._worker_task = None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)

        self._queue.clear()
        self._cooldowns.clear()
        self._rules.invalidate()

    async def __aenter__(self) -> "DetectionPipeline":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        stats = self.stats.to_dict()
        stats["uptime"] = time.time() - self.stats.start_time if self.stats.start_time else 0.0
        stats["is_running"] = self._running
        stats["frames_dropped"] = self._queue.dropped_count
        return stats

    def get_status(self) -> dict:
        """Pipeline status for display."""
        capture_status = self._capture.get_status().value if self._capture else "not-initialized"
        return {
            "running": self._running,
            "capture_status": capture_status,
            "stats": self.get_stats(),
        }

    # -------------------------------------------------------------------------
    # Frame processing
    # -------------------------------------------------------------------------

    def _enqueue_frame(self, frame: Frame) -> None:
        if self._stop_requested:
            return
        self._queue.put_nowait(frame)

    async def _run_worker(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is not None:
                await self.process_frame(frame)

    async def process_frame(self, frame: Frame) -> None:
        """
        Run one frame through inference and the rule set.

        Never raises for per-frame failures.
        """
        self.stats.frames_processed += 1

        try:
            result = await self._engine.detect(frame.data)
            if not result.detections:
                return

            rules = await self._rules.get_rules()

            for detection in result.detections:
                if self._stop_requested:
                    return
                await self._handle_detection(detection, rules, frame.captured_at)

        except Exception as e:
            self.stats.processing_errors += 1
            logger.error(f"Frame processing error: channel={self.channel.username}: {e}")

    async def _handle_detection(
        self,
        detection: Detection,
        rules: Dict[str, DetectionRule],
        timestamp: float,
    ) -> None:
        object_class = detection.object_class.strip().lower()
        confidence = detection.confidence

        self.stats.detections_total += 1

        rule = rules.get(object_class)
        if rule is None:
            return

        if confidence < rule.min_confidence:
            logger.debug(
                f"Detection below confidence threshold: class={object_class}, "
                f"confidence={confidence:.3f}, min={rule.min_confidence}"
            )
            return

        cooldown = self._cooldown_for(rule)
        if self._is_on_cooldown(object_class, cooldown):
            logger.debug(f"Detection on cooldown: class={object_class}, cooldown={cooldown}s")
            return

        message = render_detection_message(
            rule.message_template,
            object_class=detection.object_class,
            confidence=confidence,
            streamer=self.channel.username,
        )

        if self._stop_requested:
            return

        try:
            await self._notifier.say(self.channel.username, message)
        except Exception as e:
            self.stats.notify_errors += 1
            logger.error(
                f"Failed to send detection message: channel={self.channel.username}: {e}"
            )
            return

        self._cooldowns[object_class] = self._clock()
        self.stats.messages_sent += 1

        event = DetectionEvent(
            channel_id=self.channel.id,
            channel_name=self.channel.username,
            object_class=object_class,
            confidence=confidence,
            rule_id=rule.id,
            message=message,
            timestamp=timestamp,
        )
        self.stats.last_detection = event

        logger.info(
            f"Detection message sent: channel={self.channel.username}, "
            f"class={object_class}, confidence={confidence:.3f}"
        )

        await self._log_detection(event)
        self._emit_detection(event)

    def _cooldown_for(self, rule: DetectionRule) -> int:
        if rule.cooldown_seconds is not None:
            return rule.cooldown_seconds
        if self.config.cooldown_seconds is not None:
            return self.config.cooldown_seconds
        return self._default_cooldown

    def _is_on_cooldown(self, object_class: str, cooldown_seconds: float) -> bool:
        last_fired = self._cooldowns.get(object_class)
        if last_fired is None:
            return False
        return (self._clock() - last_fired) < cooldown_seconds

    async def _log_detection(self, event: DetectionEvent) -> None:
        try:
            await self._store.log_detection(self.config.id, event.rule_id, event)
        except Exception as e:
            logger.error(
                f"Failed to log detection: class={event.object_class}, "
                f"confidence={event.confidence:.3f}: {e}"
            )

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def _emit_detection(self, event: DetectionEvent) -> None:
        for callback in list(self._detection_callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Detection callback error: {e}")

    def _handle_capture_error(self, error: Exception) -> None:
        if self._stop_requested:
            return
        logger.error(f"Stream capture error: channel={self.channel.username}: {error}")
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Pipeline error callback error: {e}")
