"""
Test Configuration
==================

Pytest fixtures and test doubles for the streamwatch agent.

Async code is driven with asyncio.run() inside plain test functions.
"""

import asyncio
from typing import Dict, List, Optional, Set

import pytest

from streamwatch_agent.models import Channel, DetectionConfig, DetectionRule, LivenessResult
from streamwatch_agent.stores import MemoryStore
from streamwatch_agent.stream import Frame


STREAM_URL = "https://twitch.tv/somestreamer"


def make_jpeg(payload: bytes = b"image-data") -> bytes:
    """Minimal byte string that passes the JPEG signature check."""
    return b"\xff\xd8\xff\xe0" + payload + b"\xff\xd9"


def make_frame(sequence: int = 1, captured_at: float = 1700000000.0) -> Frame:
    return Frame(data=make_jpeg(), captured_at=captured_at, sequence=sequence)


# =============================================================================
# Fake ffmpeg process
# =============================================================================

class FakeProcess:
    """
    Stand-in for asyncio.subprocess.Process.

    stdout/stderr are real StreamReaders. With exit_on_eof the process
    "exits" once its output is drained; otherwise it runs until
    terminate() or kill().
    """

    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        exit_code: int = 0,
        exit_on_eof: bool = True,
        ignore_terminate: bool = False,
    ) -> None:
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        if stdout:
            self.stdout.feed_data(stdout)
        if stderr:
            self.stderr.feed_data(stderr)

        self.returncode: Optional[int] = None
        self._exit_code = exit_code
        self._exited = asyncio.Event()
        self.ignore_terminate = ignore_terminate
        self.terminated = False
        self.killed = False

        if exit_on_eof:
            self._finish(exit_code)

    def _finish(self, code: int) -> None:
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exit_code = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        if self.returncode is None:
            self.returncode = self._exit_code
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self._finish(-15)

    def kill(self) -> None:
        self.killed = True
        self._finish(-9)


class ProcessScript:
    """
    Process factory handing out FakeProcess instances in order.

    Each entry is a dict of FakeProcess keyword arguments; the last
    entry is reused once the script runs out.
    """

    def __init__(self, *specs: Dict) -> None:
        self.specs = list(specs) or [{}]
        self.commands: List[List[str]] = []
        self.processes: List[FakeProcess] = []

    async def __call__(self, command):
        self.commands.append(list(command))
        spec = self.specs[min(len(self.processes), len(self.specs) - 1)]
        process = FakeProcess(**spec)
        self.processes.append(process)
        return process

    @property
    def spawn_count(self) -> int:
        return len(self.processes)


# =============================================================================
# Fake collaborators
# =============================================================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    """Notifier that records messages, optionally failing."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: List[tuple] = []

    async def say(self, channel_username: str, message: str) -> None:
        if self.fail:
            raise ConnectionError("chat disconnected")
        self.messages.append((channel_username, message))


class FakeLiveness:
    """LivenessChecker with a scripted answer per stream URL."""

    def __init__(self, default: Optional[bool] = True) -> None:
        self.default = default
        self.answers: Dict[str, Optional[bool]] = {}
        self.calls: List[str] = []

    def set(self, url: str, is_live: Optional[bool]) -> None:
        self.answers[url] = is_live

    async def is_live(self, stream_url: str) -> LivenessResult:
        self.calls.append(stream_url)
        answer = self.answers.get(stream_url, self.default)
        if answer is None:
            return LivenessResult(is_live=False, error="status unavailable")
        return LivenessResult(is_live=answer)


class FakePipeline:
    """DetectionPipeline stand-in for orchestrator tests."""

    def __init__(self, config, channel, start_error=None, stop_error=None, hang_on_start=False) -> None:
        self.config = config
        self.channel = channel
        self.start_error = start_error
        self.stop_error = stop_error
        self.hang_on_start = hang_on_start
        self.start_cancelled = False
        self.started = False
        self.stop_calls = 0
        self.detection_callbacks = []
        self.error_callbacks = []

    def on_detection(self, callback) -> None:
        self.detection_callbacks.append(callback)

    def on_error(self, callback) -> None:
        self.error_callbacks.append(callback)

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        if self.hang_on_start:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.start_cancelled = True
                raise
        self.started = True

    async def stop(self) -> None:
        self.stop_calls += 1
        self.started = False
        if self.stop_error is not None:
            raise self.stop_error

    def fail(self, error: Exception) -> None:
        for callback in self.error_callbacks:
            callback(error)

    def get_status(self) -> dict:
        return {"running": self.started, "capture_status": "connected", "stats": {}}


class PipelineFactory:
    """Records every pipeline built; per-channel start/stop errors."""

    def __init__(self) -> None:
        self.built: List[FakePipeline] = []
        self.start_errors: Dict[int, Exception] = {}
        self.stop_errors: Dict[int, Exception] = {}
        self.hanging: Set[int] = set()

    def __call__(self, config, channel) -> FakePipeline:
        pipeline = FakePipeline(
            config,
            channel,
            start_error=self.start_errors.get(channel.id),
            stop_error=self.stop_errors.get(channel.id),
            hang_on_start=channel.id in self.hanging,
        )
        self.built.append(pipeline)
        return pipeline

    def for_channel(self, channel_id: int) -> List[FakePipeline]:
        return [p for p in self.built if p.channel.id == channel_id]


class FakeEngine:
    """Minimal InferenceEngine for orchestrator tests."""

    def __init__(self) -> None:
        self.is_initialized = False
        self.disposed = False

    async def initialize(self) -> None:
        self.is_initialized = True

    async def detect(self, image: bytes):
        raise NotImplementedError

    def dispose(self) -> None:
        self.disposed = True
        self.is_initialized = False


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def channel():
    return Channel(id=1, username="somestreamer")


@pytest.fixture
def detection_config():
    return DetectionConfig(
        id=10,
        channel_id=1,
        stream_url=STREAM_URL,
        frame_interval_ms=1000,
        cooldown_seconds=30,
        is_enabled=True,
    )


@pytest.fixture
def store(channel, detection_config):
    """Memory store seeded with one channel, its config and a cat rule."""
    store = MemoryStore()
    store.add_channel(channel)
    store.add_config(detection_config)
    store.add_rule(
        DetectionRule(
            id=100,
            config_id=detection_config.id,
            object_class="cat",
            min_confidence=0.6,
            message_template="Spotted a {object} ({confidence_pct})!",
        )
    )
    return store


@pytest.fixture
def multi_store():
    """Memory store with three enabled channels."""
    store = MemoryStore()
    for i in (1, 2, 3):
        store.add_channel(Channel(id=i, username=f"streamer{i}"))
        store.add_config(
            DetectionConfig(
                id=10 + i,
                channel_id=i,
                stream_url=f"https://twitch.tv/streamer{i}",
                is_enabled=True,
            )
        )
    return store
