"""
Detection Orchestrator Tests
============================

Tests for multi-channel supervision: auto-start, pending channels,
liveness polling, error demotion and shutdown.
"""

import asyncio

import pytest

from streamwatch_agent.errors import (
    CaptureTimeoutError,
    ConfigurationError,
    ReconnectExhaustedError,
)
from streamwatch_agent.models import Channel, DetectionConfig, DetectionEvent, MonitorState
from streamwatch_agent.orchestrator import (
    PENDING_REASON_ERROR,
    PENDING_REASON_OFFLINE,
    DetectionOrchestrator,
)
from streamwatch_agent.stores import MemoryStore

from conftest import FakeEngine, FakeLiveness, PipelineFactory, RecordingNotifier


def make_orchestrator(store, liveness=None, factory=None, engine=None):
    return DetectionOrchestrator(
        engine=engine or FakeEngine(),
        notifier=RecordingNotifier(),
        channel_store=store,
        config_store=store,
        liveness=liveness,
        pipeline_factory=factory or PipelineFactory(),
        poll_interval_seconds=3600,
    )


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestInitialize:
    """Tests for startup auto-start."""

    def test_starts_every_enabled_channel(self, multi_store):
        factory = PipelineFactory()
        engine = FakeEngine()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory, engine=engine)
            await orch.initialize()
            status = orch.get_status()
            await orch.shutdown()
            return status

        status = asyncio.run(run())
        assert status.initialized
        assert status.detector_loaded
        assert status.active_monitor_count == 3
        assert status.pending_channel_count == 0
        assert sorted(m.channel_name for m in status.monitors) == [
            "streamer1", "streamer2", "streamer3",
        ]
        assert all(p.started is False for p in factory.built)  # stopped by shutdown
        assert engine.disposed

    def test_one_bad_channel_does_not_block_others(self, multi_store):
        factory = PipelineFactory()
        factory.start_errors[2] = RuntimeError("engine exploded")

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.initialize()
            states = [orch.get_state(i) for i in (1, 2, 3)]
            await orch.shutdown()
            return states

        assert asyncio.run(run()) == [
            MonitorState.MONITORING,
            MonitorState.DISABLED,
            MonitorState.MONITORING,
        ]

    def test_offline_channels_are_pending(self, multi_store):
        liveness = FakeLiveness(default=True)
        liveness.set("https://twitch.tv/streamer2", False)
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, liveness=liveness, factory=factory)
            await orch.initialize()
            status = orch.get_status()
            await orch.shutdown()
            return status

        status = asyncio.run(run())
        assert status.active_monitor_count == 2
        assert [p.channel_id for p in status.pending_channels] == [2]
        assert len(factory.for_channel(2)) == 0


class TestStartMonitoring:
    """Tests for start_monitoring."""

    def test_unknown_channel(self):
        async def run():
            orch = make_orchestrator(MemoryStore())
            await orch.start_monitoring(42)

        with pytest.raises(ConfigurationError, match="not found"):
            asyncio.run(run())

    def test_missing_config(self):
        store = MemoryStore()
        store.add_channel(Channel(id=1, username="a"))

        async def run():
            await make_orchestrator(store).start_monitoring(1)

        with pytest.raises(ConfigurationError, match="No detection config"):
            asyncio.run(run())

    def test_missing_stream_url(self):
        store = MemoryStore()
        store.add_channel(Channel(id=1, username="a"))
        store.add_config(DetectionConfig(id=1, channel_id=1))

        async def run():
            await make_orchestrator(store).start_monitoring(1)

        with pytest.raises(ConfigurationError, match="No stream URL"):
            asyncio.run(run())

    def test_start_persists_enabled(self, channel):
        store = MemoryStore()
        store.add_channel(channel)
        store.add_config(
            DetectionConfig(id=10, channel_id=1, stream_url="https://twitch.tv/somestreamer")
        )

        async def run():
            orch = make_orchestrator(store)
            started = await orch.start_monitoring(1)
            state = orch.get_state(1)
            await orch.shutdown()
            return started, state

        started, state = asyncio.run(run())
        assert started
        assert state is MonitorState.MONITORING
        assert store.configs[10].is_enabled

    def test_second_start_is_a_no_op(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.start_monitoring(1)
            await orch.start_monitoring(1)
            await orch.shutdown()

        asyncio.run(run())
        assert len(factory.for_channel(1)) == 1

    def test_concurrent_starts_build_one_pipeline(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await asyncio.gather(*(orch.start_monitoring(1) for _ in range(5)))
            active = orch.get_all_active_monitors()
            await orch.shutdown()
            return active

        active = asyncio.run(run())
        assert len(active) == 1
        assert len(factory.for_channel(1)) == 1

    def test_transient_start_failure_becomes_pending(self, multi_store):
        factory = PipelineFactory()
        factory.start_errors[1] = CaptureTimeoutError()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            started = await orch.start_monitoring(1)
            status = await orch.get_monitoring_status(1)
            await orch.shutdown()
            return started, status

        started, status = asyncio.run(run())
        assert started
        assert status.state is MonitorState.PENDING
        assert status.is_pending
        assert status.last_error == "Connection timeout"
        assert multi_store.configs[11].is_enabled

    def test_other_start_failure_propagates(self, multi_store):
        factory = PipelineFactory()
        factory.start_errors[1] = RuntimeError("boom")

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            try:
                await orch.start_monitoring(1)
            finally:
                state = orch.get_state(1)
                await orch.shutdown()
            return state

        with pytest.raises(RuntimeError):
            asyncio.run(run())

    def test_unknown_liveness_starts_pipeline(self, multi_store):
        liveness = FakeLiveness(default=None)

        async def run():
            orch = make_orchestrator(multi_store, liveness=liveness)
            await orch.start_monitoring(1)
            state = orch.get_state(1)
            await orch.shutdown()
            return state

        assert asyncio.run(run()) is MonitorState.MONITORING

    def test_ignored_while_shutting_down(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.shutdown()
            return await orch.start_monitoring(1)

        assert asyncio.run(run()) is False
        assert factory.built == []


class TestStopMonitoring:
    """Tests for stop_monitoring."""

    def test_stop_is_idempotent(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.start_monitoring(1)
            first = await orch.stop_monitoring(1)
            second = await orch.stop_monitoring(1)
            state = orch.get_state(1)
            await orch.shutdown()
            return first, second, state

        first, second, state = asyncio.run(run())
        assert first is True
        assert second is False
        assert state is MonitorState.DISABLED
        assert factory.for_channel(1)[0].stop_calls == 1
        assert not multi_store.configs[11].is_enabled

    def test_stop_pending_channel(self, multi_store):
        liveness = FakeLiveness(default=False)

        async def run():
            orch = make_orchestrator(multi_store, liveness=liveness)
            await orch.start_monitoring(1)
            stopped = await orch.stop_monitoring(1)
            status = await orch.get_monitoring_status(1)
            await orch.shutdown()
            return stopped, status

        stopped, status = asyncio.run(run())
        assert stopped is False
        assert status.state is MonitorState.DISABLED
        assert not status.is_enabled

    def test_stop_survives_pipeline_error(self, multi_store):
        factory = PipelineFactory()
        factory.stop_errors[1] = RuntimeError("ffmpeg stuck")

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.start_monitoring(1)
            stopped = await orch.stop_monitoring(1)
            state = orch.get_state(1)
            await orch.shutdown()
            return stopped, state

        stopped, state = asyncio.run(run())
        assert stopped
        assert state is MonitorState.DISABLED


class TestPolling:
    """Tests for liveness polling."""

    def test_offline_then_live_starts_exactly_one_pipeline(self, multi_store):
        liveness = FakeLiveness(default=False)
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, liveness=liveness, factory=factory)
            await orch.start_monitoring(1)
            pending = await orch.get_monitoring_status(1)

            liveness.set("https://twitch.tv/streamer1", True)
            await orch.poll_once()
            await orch.poll_once()
            state = orch.get_state(1)
            await orch.shutdown()
            return pending, state

        pending, state = asyncio.run(run())
        assert pending.state is MonitorState.PENDING
        assert pending.pending_reason == PENDING_REASON_OFFLINE
        assert state is MonitorState.MONITORING
        assert len(factory.for_channel(1)) == 1

    def test_live_then_offline_pauses(self, multi_store):
        liveness = FakeLiveness(default=True)
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, liveness=liveness, factory=factory)
            await orch.start_monitoring(1)

            liveness.set("https://twitch.tv/streamer1", False)
            await orch.poll_once()
            state = orch.get_state(1)
            await orch.shutdown()
            return state

        assert asyncio.run(run()) is MonitorState.PENDING
        assert factory.for_channel(1)[0].stop_calls == 1

    def test_checker_error_leaves_channels_alone(self, multi_store):
        liveness = FakeLiveness(default=True)
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, liveness=liveness, factory=factory)
            await orch.start_monitoring(1)
            liveness.set("https://twitch.tv/streamer1", None)
            await orch.poll_once()
            state = orch.get_state(1)
            await orch.shutdown()
            return state

        assert asyncio.run(run()) is MonitorState.MONITORING
        assert factory.for_channel(1)[0].stop_calls == 1  # by shutdown only

    def test_poll_without_checker_retries_pending(self, multi_store):
        factory = PipelineFactory()
        factory.start_errors[1] = CaptureTimeoutError()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.start_monitoring(1)
            first = orch.get_state(1)

            factory.start_errors.pop(1)
            await orch.poll_once()
            second = orch.get_state(1)
            await orch.shutdown()
            return first, second

        first, second = asyncio.run(run())
        assert first is MonitorState.PENDING
        assert second is MonitorState.MONITORING
        assert len(factory.for_channel(1)) == 2

    def test_poll_drops_channel_whose_config_vanished(self, multi_store):
        liveness = FakeLiveness(default=False)

        async def run():
            orch = make_orchestrator(multi_store, liveness=liveness)
            await orch.start_monitoring(1)
            del multi_store.configs[11]
            liveness.default = True
            await orch.poll_once()
            state = orch.get_state(1)
            await orch.shutdown()
            return state

        assert asyncio.run(run()) is MonitorState.DISABLED


class TestPipelineErrors:
    """Tests for runtime stream errors reported by pipelines."""

    def test_transient_error_pauses_channel(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.start_monitoring(1)
            pipeline = factory.for_channel(1)[0]

            pipeline.fail(ReconnectExhaustedError())
            await settle()
            paused = await orch.get_monitoring_status(1)

            await orch.poll_once()
            resumed = orch.get_state(1)
            await orch.shutdown()
            return pipeline, paused, resumed

        pipeline, paused, resumed = asyncio.run(run())
        assert paused.state is MonitorState.PAUSED_ERROR
        assert paused.pending_reason == PENDING_REASON_ERROR
        assert paused.last_error == "Max reconnection attempts reached"
        assert pipeline.stop_calls == 1
        assert resumed is MonitorState.MONITORING
        assert len(factory.for_channel(1)) == 2

    def test_non_stream_error_keeps_monitoring(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.start_monitoring(1)
            factory.for_channel(1)[0].fail(RuntimeError("callback bug"))
            await settle()
            state = orch.get_state(1)
            await orch.shutdown()
            return state

        assert asyncio.run(run()) is MonitorState.MONITORING

    def test_error_from_stale_pipeline_is_ignored(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.start_monitoring(1)
            old = factory.for_channel(1)[0]
            await orch.stop_monitoring(1)
            await orch.start_monitoring(1)

            old.fail(ReconnectExhaustedError())
            await settle()
            state = orch.get_state(1)
            await orch.shutdown()
            return state

        assert asyncio.run(run()) is MonitorState.MONITORING

    def test_detections_are_counted(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.start_monitoring(1)
            event = DetectionEvent(
                channel_id=1,
                channel_name="streamer1",
                object_class="cat",
                confidence=0.9,
                message="cat!",
                timestamp=0.0,
            )
            factory.for_channel(1)[0].detection_callbacks[0](event)
            await orch.shutdown()
            return orch.detections_seen

        assert asyncio.run(run()) == 1


class TestShutdown:
    """Tests for shutdown."""

    def test_shutdown_survives_failing_stops(self, multi_store):
        factory = PipelineFactory()
        factory.stop_errors[2] = RuntimeError("ffmpeg stuck")
        engine = FakeEngine()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory, engine=engine)
            await orch.initialize()
            await orch.shutdown()
            return orch.get_status()

        status = asyncio.run(run())
        assert [p.stop_calls for p in factory.built] == [1, 1, 1]
        assert status.active_monitor_count == 0
        assert status.pending_channel_count == 0
        assert not status.initialized
        assert engine.disposed

    def test_shutdown_aborts_start_in_flight(self, multi_store):
        factory = PipelineFactory()
        factory.hanging.add(2)
        engine = FakeEngine()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory, engine=engine)
            await orch.start_monitoring(1)
            starting = asyncio.create_task(orch.start_monitoring(2))
            await settle()
            await orch.shutdown()
            return orch.get_status(), await starting

        status, started = asyncio.run(run())
        hung = factory.for_channel(2)[0]

        assert started is False
        assert hung.start_cancelled
        assert hung.stop_calls == 1
        assert [p.stop_calls for p in factory.for_channel(1)] == [1]
        assert status.active_monitor_count == 0
        assert status.pending_channel_count == 0
        assert engine.disposed

    def test_shutdown_aborts_promotion_in_flight(self, multi_store):
        liveness = FakeLiveness(default=False)
        factory = PipelineFactory()
        factory.hanging.add(1)

        async def run():
            orch = make_orchestrator(multi_store, liveness=liveness, factory=factory)
            await orch.start_monitoring(1)
            liveness.set("https://twitch.tv/streamer1", True)
            polling = asyncio.create_task(orch.poll_once())
            await settle()
            await orch.shutdown()
            await polling
            return orch.get_state(1)

        state = asyncio.run(run())
        hung = factory.for_channel(1)[0]

        assert state is MonitorState.DISABLED
        assert hung.start_cancelled
        assert hung.stop_calls == 1

    def test_shutdown_cancels_polling(self, multi_store):
        async def run():
            orch = make_orchestrator(multi_store, liveness=FakeLiveness())
            await orch.initialize()
            task = orch._poll_task
            await orch.shutdown()
            return task

        task = asyncio.run(run())
        assert task.cancelled() or task.done()

    def test_initialize_twice_is_harmless(self, multi_store):
        factory = PipelineFactory()

        async def run():
            orch = make_orchestrator(multi_store, factory=factory)
            await orch.initialize()
            await orch.initialize()
            await orch.shutdown()

        asyncio.run(run())
        assert len(factory.built) == 3
