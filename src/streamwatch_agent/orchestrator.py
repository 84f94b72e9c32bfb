"""
Detection Orchestrator
======================

Supervises detection pipelines for many channels at once.

This module provides the DetectionOrchestrator class which:
    - Loads the shared inference engine once
    - Auto-starts every enabled config on initialize()
    - Parks channels whose stream is offline as pending
    - Polls liveness to promote pending channels and pause offline ones
    - Demotes channels whose stream errored to paused_error for retry

Channel lifecycle:
    disabled → pending (enabled, stream offline)
             → monitoring (stream live, pipeline running)
             → pending (stream went offline, pipeline stopped)
             → paused_error (stream errored, pipeline stopped)

Design Rules:
    - One registry (channel_id → PipelineRecord), at most one pipeline per channel
    - Every transition of a channel runs under that channel's lock
    - A failure on one channel never affects another
    - Configuration errors propagate to the caller; transient stream
      errors demote the channel instead
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from streamwatch_agent.detection.pipeline import DetectionPipeline
from streamwatch_agent.errors import ConfigurationError, TransientStreamError
from streamwatch_agent.models.channel import Channel, DetectionConfig
from streamwatch_agent.models.detection import DetectionEvent
from streamwatch_agent.models.status import (
    MonitoringStatus,
    MonitorState,
    MonitorSummary,
    OrchestratorStatus,
)
from streamwatch_agent.stream.sources import sanitize_url


logger = logging.getLogger(__name__)


DEFAULT_STATUS_POLL_INTERVAL_SECONDS = 60.0

PENDING_REASON_OFFLINE = "Stream offline - waiting for stream to go live"
PENDING_REASON_ERROR = "Stream error - retrying when the stream is live"

PipelineFactory = Callable[[DetectionConfig, Channel], DetectionPipeline]


@dataclass
class PipelineRecord:
    """
    Registry entry for one channel.

    Attributes:
        channel_id: Channel ID (registry key)
        channel_name: Channel username at the time of the transition
        state: Current monitoring state
        config: Config the state was derived from
        pipeline: Running pipeline (monitoring only)
        last_error: Last stream error, kept for display
        since: UNIX time of the last transition
    """

    channel_id: int
    channel_name: str
    state: MonitorState
    config: DetectionConfig
    pipeline: Optional[DetectionPipeline] = None
    last_error: Optional[str] = None
    since: float = field(default_factory=time.time)

    @property
    def pending_reason(self) -> Optional[str]:
        if self.state is MonitorState.PENDING:
            return PENDING_REASON_OFFLINE
        if self.state is MonitorState.PAUSED_ERROR:
            return PENDING_REASON_ERROR
        return None


class DetectionOrchestrator:
    """
    Single authority for which channels are monitored right now.

    Attributes:
        poll_interval_seconds: Seconds between liveness polls
        is_initialized: Whether initialize() completed

    Example:
        orchestrator = DetectionOrchestrator(
            engine=YoloOnnxEngine(),
            notifier=LoggingNotifier(),
            channel_store=store,
            config_store=store,
            liveness=TwitchLivenessChecker(client_id, client_secret),
        )
        await orchestrator.initialize()
        await orchestrator.start_monitoring(channel_id=1)
        ...
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        engine,
        notifier,
        channel_store,
        config_store,
        *,
        liveness=None,
        pipeline_factory: Optional[PipelineFactory] = None,
        pipeline_options: Optional[Dict[str, Any]] = None,
        poll_interval_seconds: float = DEFAULT_STATUS_POLL_INTERVAL_SECONDS,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            engine: Shared InferenceEngine
            notifier: Notifier handed to every pipeline
            channel_store: ChannelStore
            config_store: DetectionConfigStore
            liveness: Optional LivenessChecker; without one every
                enabled channel is started directly
            pipeline_factory: Builds a pipeline for (config, channel)
            pipeline_options: Extra DetectionPipeline keyword arguments
                for the default factory
            poll_interval_seconds: Liveness poll period
        """
        self._engine = engine
        self._notifier = notifier
        self._channel_store = channel_store
        self._config_store = config_store
        self._liveness = liveness
        self._pipeline_options = dict(pipeline_options or {})
        self._pipeline_factory: PipelineFactory = pipeline_factory or self._build_pipeline
        self.poll_interval_seconds = poll_interval_seconds

        self._records: Dict[int, PipelineRecord] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._poll_task: Optional[asyncio.Task] = None
        self._starting: Dict[int, asyncio.Task] = {}
        self._background_tasks: Set[asyncio.Task] = set()

        self.is_initialized = False
        self._is_shutting_down = False
        self.detections_seen = 0

        logger.debug("DetectionOrchestrator created")

    def _build_pipeline(self, config: DetectionConfig, channel: Channel) -> DetectionPipeline:
        return DetectionPipeline(
            config,
            channel,
            self._engine,
            self._notifier,
            self._config_store,
            **self._pipeline_options,
        )

    def _lock_for(self, channel_id: int) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[channel_id] = lock
        return lock

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Load the engine, auto-start enabled configs and begin polling.

        Raises:
            InferenceError: If the engine cannot be loaded
        """
        if self.is_initialized:
            logger.warning("DetectionOrchestrator already initialized")
            return

        logger.info("Initializing detection orchestrator")
        self._is_shutting_down = False

        if self._liveness is None:
            logger.warning("No liveness checker configured - stream status checking disabled")

        await self._engine.initialize()
        logger.info("Inference engine loaded")

        configs = await self._config_store.get_enabled_configs()
        logger.info(f"Found {len(configs)} enabled detection configs")

        for config in configs:
            try:
                await self.start_monitoring(config.channel_id)
            except Exception as e:
                logger.error(
                    f"Failed to auto-start monitoring for channel {config.channel_id}: {e}"
                )

        self._start_polling()
        self.is_initialized = True

        logger.info(
            f"Detection orchestrator initialized: "
            f"active={self._count(MonitorState.MONITORING)}, "
            f"pending={self._count(MonitorState.PENDING, MonitorState.PAUSED_ERROR)}"
        )

    async def shutdown(self) -> None:
        """
        Stop polling and every pipeline, then release the engine.

        Pipeline starts still in flight are cancelled and torn down
        before the engine is disposed. Individual stop failures are
        logged, never raised.
        """
        logger.info(
            f"Shutting down detection orchestrator: "
            f"active={self._count(MonitorState.MONITORING)}, "
            f"pending={self._count(MonitorState.PENDING, MonitorState.PAUSED_ERROR)}"
        )
        self._is_shutting_down = True

        await self._stop_polling()

        background = list(self._background_tasks)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        self._background_tasks.clear()

        for task in list(self._starting.values()):
            task.cancel()

        # Wait out transitions still holding a channel lock
        for lock in list(self._locks.values()):
            async with lock:
                pass

        records = list(self._records.values())
        await asyncio.gather(
            *(
                self._stop_pipeline(record.channel_id, record.pipeline)
                for record in records
                if record.pipeline is not None
            )
        )

        self._records.clear()
        self._locks.clear()

        try:
            self._engine.dispose()
        except Exception as e:
            logger.error(f"Error disposing inference engine: {e}")

        self.is_initialized = False
        logger.info("Detection orchestrator shutdown complete")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start_monitoring(self, channel_id: int) -> bool:
        """
        Start monitoring a channel, or park it as pending if offline.

        Returns:
            True once the channel is monitoring or pending

        Raises:
            ConfigurationError: Channel, config or stream URL missing/invalid
        """
        if self._is_shutting_down:
            logger.warning(f"Ignoring start for channel {channel_id}: shutting down")
            return False

        async with self._lock_for(channel_id):
            record = self._records.get(channel_id)
            if record is not None and record.state is MonitorState.MONITORING:
                logger.debug(f"Already monitoring channel {channel_id}")
                return True
            if record is not None and record.state is MonitorState.PENDING:
                logger.debug(f"Channel {channel_id} already pending")
                return True

            channel = await self._channel_store.find_by_id(channel_id)
            if channel is None:
                logger.error(f"Channel {channel_id} not found")
                raise ConfigurationError(f"Channel {channel_id} not found")

            config = await self._config_store.get_config(channel_id)
            if config is None:
                logger.error(f"No detection config found for channel {channel_id}")
                raise ConfigurationError(f"No detection config found for channel {channel_id}")

            if not config.stream_url:
                logger.error(f"No stream URL configured for channel {channel_id}")
                raise ConfigurationError(f"No stream URL configured for channel {channel_id}")

            is_live = await self._check_liveness(channel_id, config.stream_url)
            if is_live is False:
                logger.info(
                    f"Stream is offline, adding to pending: channel={channel.username}, "
                    f"stream={sanitize_url(config.stream_url)}"
                )
                self._records[channel_id] = PipelineRecord(
                    channel_id=channel_id,
                    channel_name=channel.username,
                    state=MonitorState.PENDING,
                    config=config,
                )
                await self._persist_enabled(config, True)
                return True

            return await self._start_pipeline(channel, config)

    async def stop_monitoring(self, channel_id: int) -> bool:
        """
        Stop monitoring a channel and persist it as disabled. Idempotent.

        Returns:
            True if a running pipeline was stopped
        """
        async with self._lock_for(channel_id):
            record = self._records.pop(channel_id, None)
            stopped = record is not None and record.pipeline is not None

            if record is not None and record.pipeline is not None:
                logger.info(f"Stopping monitoring for channel {channel_id}")
                await self._stop_pipeline(channel_id, record.pipeline)
            elif record is not None:
                logger.debug(f"Removed channel {channel_id} from {record.state.value}")

            try:
                config = await self._config_store.get_config(channel_id)
                if config is not None and config.is_enabled:
                    await self._config_store.update_config(config.id, is_enabled=False)
            except Exception as e:
                logger.error(f"Failed to persist disabled config for channel {channel_id}: {e}")

        if stopped:
            logger.info(f"Stopped monitoring for channel {channel_id}")
        return stopped

    async def poll_once(self) -> None:
        """Run one liveness pass over every registered channel."""
        channel_ids = list(self._records)
        if not channel_ids:
            return
        await asyncio.gather(*(self._poll_channel(cid) for cid in channel_ids))

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def detector_loaded(self) -> bool:
        return bool(getattr(self._engine, "is_initialized", False))

    def get_state(self, channel_id: int) -> MonitorState:
        record = self._records.get(channel_id)
        return record.state if record is not None else MonitorState.DISABLED

    async def get_monitoring_status(self, channel_id: int) -> MonitoringStatus:
        """Status of one channel, combining the registry with its stored config."""
        record = self._records.get(channel_id)
        config = await self._config_store.get_config(channel_id)

        if record is None:
            return MonitoringStatus(
                channel_id=channel_id,
                state=MonitorState.DISABLED,
                is_enabled=config.is_enabled if config else False,
                has_config=config is not None,
                stream_url=config.stream_url if config else None,
            )

        return MonitoringStatus(
            channel_id=channel_id,
            state=record.state,
            is_monitoring=record.state is MonitorState.MONITORING,
            is_pending=record.state in (MonitorState.PENDING, MonitorState.PAUSED_ERROR),
            is_enabled=config.is_enabled if config else True,
            has_config=config is not None,
            stream_url=config.stream_url if config else record.config.stream_url,
            pending_reason=record.pending_reason,
            last_error=record.last_error,
            pipeline=record.pipeline.get_status() if record.pipeline else None,
        )

    def get_all_active_monitors(self) -> List[MonitorSummary]:
        return [
            self._summarize(record)
            for record in self._records.values()
            if record.state is MonitorState.MONITORING
        ]

    def get_status(self) -> OrchestratorStatus:
        pending = [
            self._summarize(record)
            for record in self._records.values()
            if record.state in (MonitorState.PENDING, MonitorState.PAUSED_ERROR)
        ]
        monitors = self.get_all_active_monitors()
        return OrchestratorStatus(
            initialized=self.is_initialized,
            detector_loaded=self.detector_loaded,
            active_monitor_count=len(monitors),
            pending_channel_count=len(pending),
            monitors=monitors,
            pending_channels=pending,
        )

    @staticmethod
    def _summarize(record: PipelineRecord) -> MonitorSummary:
        return MonitorSummary(
            channel_id=record.channel_id,
            channel_name=record.channel_name,
            state=record.state,
            stream_url=record.config.stream_url,
            last_error=record.last_error,
            pipeline=record.pipeline.get_status() if record.pipeline else None,
        )

    def _count(self, *states: MonitorState) -> int:
        return sum(1 for r in self._records.values() if r.state in states)

    # -------------------------------------------------------------------------
    # Transitions (caller holds the channel lock)
    # -------------------------------------------------------------------------

    async def _start_pipeline(self, channel: Channel, config: DetectionConfig) -> bool:
        channel_id = channel.id

        try:
            rules = await self._config_store.get_enabled_rules(config.id)
            if not rules:
                logger.warning(f"No enabled detection rules for channel {channel_id}")
        except Exception as e:
            logger.warning(f"Could not load rules for channel {channel_id}: {e}")

        logger.info(
            f"Starting monitoring for channel {channel_id}: channel={channel.username}, "
            f"stream={sanitize_url(config.stream_url)}"
        )

        pipeline = self._pipeline_factory(config, channel)
        pipeline.on_detection(lambda event: self._handle_detection(channel_id, event))
        pipeline.on_error(
            lambda error, p=pipeline: self._handle_pipeline_error(channel_id, p, error)
        )

        start_task = asyncio.ensure_future(pipeline.start())
        self._starting[channel_id] = start_task
        try:
            await start_task
        except asyncio.CancelledError:
            if not (self._is_shutting_down and start_task.cancelled()):
                raise
            logger.info(f"Start aborted by shutdown: channel={channel_id}")
            await self._stop_pipeline(channel_id, pipeline)
            return False
        except TransientStreamError as e:
            logger.warning(
                f"Stream capture failed, adding to pending for retry: "
                f"channel={channel_id}: {e}"
            )
            self._records[channel_id] = PipelineRecord(
                channel_id=channel_id,
                channel_name=channel.username,
                state=MonitorState.PENDING,
                config=config,
                last_error=str(e),
            )
            await self._persist_enabled(config, True)
            return True
        except Exception as e:
            self._records.pop(channel_id, None)
            logger.error(f"Failed to start monitoring for channel {channel_id}: {e}")
            raise
        finally:
            self._starting.pop(channel_id, None)

        if self._is_shutting_down:
            await self._stop_pipeline(channel_id, pipeline)
            return False

        self._records[channel_id] = PipelineRecord(
            channel_id=channel_id,
            channel_name=channel.username,
            state=MonitorState.MONITORING,
            config=config,
            pipeline=pipeline,
        )
        await self._persist_enabled(config, True)

        logger.info(f"Started monitoring for channel {channel_id}: {channel.username}")
        return True

    async def _stop_pipeline(self, channel_id: int, pipeline: DetectionPipeline) -> None:
        try:
            await pipeline.stop()
        except Exception as e:
            logger.error(f"Error stopping pipeline for channel {channel_id}: {e}")

    async def _persist_enabled(self, config: DetectionConfig, enabled: bool) -> None:
        if config.is_enabled == enabled:
            return
        try:
            await self._config_store.update_config(config.id, is_enabled=enabled)
        except Exception as e:
            logger.error(f"Failed to persist is_enabled={enabled} for config {config.id}: {e}")

    async def _check_liveness(self, channel_id: int, stream_url: str) -> Optional[bool]:
        """True/False when known, None when there is no answer."""
        if self._liveness is None:
            return None
        try:
            result = await self._liveness.is_live(stream_url)
        except Exception as e:
            logger.warning(f"Error checking stream status for channel {channel_id}: {e}")
            return None
        if result.error:
            logger.warning(f"Could not check stream status for channel {channel_id}: {result.error}")
            return None
        return result.is_live

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _start_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        logger.info(f"Starting stream status polling every {self.poll_interval_seconds}s")
        self._poll_task = asyncio.create_task(self._poll_loop(), name="status_poll")

    async def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.debug("Stream status polling stopped")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_seconds)
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error during stream status poll: {e}")

    async def _poll_channel(self, channel_id: int) -> None:
        try:
            record = self._records.get(channel_id)
            if record is None:
                return

            is_live = await self._check_liveness(channel_id, record.config.stream_url)

            async with self._lock_for(channel_id):
                record = self._records.get(channel_id)
                if record is None or self._is_shutting_down:
                    return

                if record.state in (MonitorState.PENDING, MonitorState.PAUSED_ERROR):
                    if is_live is False:
                        return
                    if is_live is None and self._liveness is not None:
                        # Checker failed; leave the channel as it is
                        return
                    await self._promote(record)

                elif record.state is MonitorState.MONITORING and is_live is False:
                    logger.info(f"Stream went offline, pausing monitoring: channel={channel_id}")
                    await self._pause_offline(record)

        except Exception as e:
            logger.error(f"Error checking channel {channel_id}: {e}")

    async def _promote(self, record: PipelineRecord) -> None:
        channel_id = record.channel_id
        logger.info(f"Stream went live, starting monitoring: channel={record.channel_name}")

        channel = await self._channel_store.find_by_id(channel_id)
        config = await self._config_store.get_config(channel_id)
        if channel is None or config is None or not config.stream_url:
            logger.warning(f"Channel {channel_id} lost its config, removing from pending")
            self._records.pop(channel_id, None)
            return

        await self._start_pipeline(channel, config)

    async def _pause_offline(self, record: PipelineRecord) -> None:
        channel_id = record.channel_id
        if record.pipeline is not None:
            await self._stop_pipeline(channel_id, record.pipeline)

        config = await self._config_store.get_config(channel_id)
        if config is not None and config.is_enabled:
            self._records[channel_id] = PipelineRecord(
                channel_id=channel_id,
                channel_name=record.channel_name,
                state=MonitorState.PENDING,
                config=config,
            )
            logger.debug(f"Channel {channel_id} moved to pending (stream offline)")
        else:
            self._records.pop(channel_id, None)

    # -------------------------------------------------------------------------
    # Pipeline events
    # -------------------------------------------------------------------------

    def _handle_detection(self, channel_id: int, event: DetectionEvent) -> None:
        self.detections_seen += 1
        logger.debug(
            f"Detection in channel {channel_id}: class={event.object_class}, "
            f"confidence={event.confidence:.3f}"
        )

    def _handle_pipeline_error(
        self,
        channel_id: int,
        pipeline: DetectionPipeline,
        error: Exception,
    ) -> None:
        logger.error(f"Pipeline error for channel {channel_id}: {error}")

        if not isinstance(error, TransientStreamError) or self._is_shutting_down:
            return

        logger.info(f"Moving channel {channel_id} to paused_error due to stream error")
        task = asyncio.create_task(
            self._pause_on_error(channel_id, pipeline, error),
            name=f"pause_{channel_id}",
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _pause_on_error(
        self,
        channel_id: int,
        pipeline: DetectionPipeline,
        error: Exception,
    ) -> None:
        async with self._lock_for(channel_id):
            record = self._records.get(channel_id)
            if record is None or record.pipeline is not pipeline:
                return

            await self._stop_pipeline(channel_id, pipeline)
            self._records[channel_id] = PipelineRecord(
                channel_id=channel_id,
                channel_name=record.channel_name,
                state=MonitorState.PAUSED_ERROR,
                config=record.config,
                last_error=str(error),
            )
