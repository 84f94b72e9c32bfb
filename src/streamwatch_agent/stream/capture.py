"""
Stream Capture
==============

ffmpeg-backed frame source for live video streams.

This module provides the StreamCapture class which:
    - Validates the stream URL against the source allow-list
    - Spawns ffmpeg to emit one JPEG every frame_interval_ms
    - Reassembles JPEG frames from the decoder's stdout
    - Pushes valid frames into a bounded ring buffer and fans them out
    - Reconnects with capped exponential backoff on unexpected exits

Design Rules:
    - Exactly one ffmpeg process is owned at a time
    - stop() always reaps the process (SIGTERM, then SIGKILL after a grace period)
    - No frame or error callback fires once stop() has returned
    - Malformed frames are logged and dropped, never raised
    - Reconnect exhaustion is reported to error callbacks, never raised
"""

import asyncio
import logging
import re
import time
from collections import deque
from typing import Awaitable, Callable, List, Optional, Sequence

from streamwatch_agent.errors import (
    CaptureError,
    CaptureTimeoutError,
    ProcessSpawnError,
    ReconnectExhaustedError,
    StreamEndedError,
)
from streamwatch_agent.models.status import CaptureStatus
from streamwatch_agent.stream.backoff import BackoffPolicy
from streamwatch_agent.stream.buffer import FrameRingBuffer
from streamwatch_agent.stream.frame import Frame
from streamwatch_agent.stream.jpeg import JpegFrameAssembler, is_valid_jpeg
from streamwatch_agent.stream.sources import (
    DEFAULT_ALLOWED_HOSTS,
    sanitize_url,
    validate_stream_url,
)


logger = logging.getLogger(__name__)


DEFAULT_FRAME_INTERVAL_MS = 5000
DEFAULT_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_BASE_DELAY_MS = 1000
DEFAULT_RECONNECT_MAX_DELAY_MS = 30000
DEFAULT_MAX_FRAME_SIZE_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_BUFFER_FRAMES = 5
DEFAULT_CONNECTION_TIMEOUT_MS = 30000
DEFAULT_FRAME_QUALITY = 2  # JPEG qscale 2-31, lower is better
DEFAULT_KILL_GRACE_SECONDS = 5.0

_READ_CHUNK_SIZE = 64 * 1024
_STDERR_TAIL_LINES = 20
_LINE_SPLIT = re.compile(r"[\r\n]+")

FrameCallback = Callable[[Frame], None]
ErrorCallback = Callable[[Exception], None]
ProcessFactory = Callable[[Sequence[str]], Awaitable[asyncio.subprocess.Process]]


def build_ffmpeg_command(
    ffmpeg_path: str,
    stream_url: str,
    frame_interval_ms: int,
    frame_quality: int,
) -> List[str]:
    """
    Build the ffmpeg argv for single-image JPEG output on stdout.

    Args:
        ffmpeg_path: ffmpeg executable
        stream_url: Validated stream URL
        frame_interval_ms: Milliseconds between emitted frames
        frame_quality: JPEG qscale (2-31)

    Returns:
        Argument list for create_subprocess_exec
    """
    return [
        ffmpeg_path,
        "-hide_banner",
        "-re",
        "-reconnect", "1",
        "-reconnect_streamed", "1",
        "-reconnect_delay_max", "5",
        "-i", stream_url,
        "-vf", f"fps=1000/{frame_interval_ms}",
        "-q:v", str(frame_quality),
        "-f", "image2pipe",
        "-vcodec", "mjpeg",
        "-an",
        "pipe:1",
    ]


async def spawn_ffmpeg(command: Sequence[str]) -> asyncio.subprocess.Process:
    """Default process factory: ffmpeg with piped stdout/stderr."""
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


class CaptureMetrics:
    """Metrics for StreamCapture observability."""

    __slots__ = (
        "frames_emitted",
        "frames_dropped",
        "bytes_read",
        "reconnect_count",
        "demux_resets",
        "last_frame_at",
    )

    def __init__(self) -> None:
        self.frames_emitted: int = 0
        self.frames_dropped: int = 0
        self.bytes_read: int = 0
        self.reconnect_count: int = 0
        self.demux_resets: int = 0
        self.last_frame_at: float = 0.0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "frames_emitted": self.frames_emitted,
            "frames_dropped": self.frames_dropped,
            "bytes_read": self.bytes_read,
            "reconnect_count": self.reconnect_count,
            "demux_resets": self.demux_resets,
            "last_frame_at": self.last_frame_at,
        }


class StreamCapture:
    """
    Frame source wrapping an ffmpeg decode subprocess.

    Attributes:
        stream_url: Validated stream URL
        frame_interval_ms: Milliseconds between frames
        reconnect_attempts: Reconnects allowed before giving up
        max_frame_size_bytes: Frames above this size are dropped
        connection_timeout_ms: Time allowed for the first decode
        metrics: Operational metrics

    Example:
        capture = StreamCapture("https://twitch.tv/somechannel", frame_interval_ms=5000)
        capture.on_frame(lambda frame: print(frame))
        capture.on_error(lambda error: print(error))

        await capture.start()
        ...
        await capture.stop()

        # or
        async with StreamCapture(url) as capture:
            ...
    """

    def __init__(
        self,
        stream_url: str,
        *,
        frame_interval_ms: int = DEFAULT_FRAME_INTERVAL_MS,
        reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS,
        reconnect_base_delay_ms: int = DEFAULT_RECONNECT_BASE_DELAY_MS,
        reconnect_max_delay_ms: int = DEFAULT_RECONNECT_MAX_DELAY_MS,
        max_frame_size_bytes: int = DEFAULT_MAX_FRAME_SIZE_BYTES,
        max_buffer_frames: int = DEFAULT_MAX_BUFFER_FRAMES,
        connection_timeout_ms: int = DEFAULT_CONNECTION_TIMEOUT_MS,
        frame_quality: int = DEFAULT_FRAME_QUALITY,
        ffmpeg_path: str = "ffmpeg",
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        allowed_hosts: Sequence[str] = DEFAULT_ALLOWED_HOSTS,
        process_factory: Optional[ProcessFactory] = None,
    ) -> None:
        """
        Initialize stream capture.

        Raises:
            InvalidStreamUrlError: If the URL fails the allow-list.
                Nothing is spawned in that case.
            ValueError: If a numeric option is out of range
        """
        self.stream_url = validate_stream_url(stream_url, allowed_hosts)

        if frame_interval_ms <= 0:
            raise ValueError("frame_interval_ms must be positive")
        if reconnect_attempts < 0:
            raise ValueError("reconnect_attempts must be >= 0")
        if connection_timeout_ms <= 0:
            raise ValueError("connection_timeout_ms must be positive")

        self.frame_interval_ms = frame_interval_ms
        self.reconnect_attempts = reconnect_attempts
        self.max_frame_size_bytes = max_frame_size_bytes
        self.connection_timeout_ms = connection_timeout_ms
        self.frame_quality = frame_quality
        self.kill_grace_seconds = kill_grace_seconds

        self._command = build_ffmpeg_command(
            ffmpeg_path, self.stream_url, frame_interval_ms, frame_quality
        )
        self._process_factory: ProcessFactory = process_factory or spawn_ffmpeg
        self._backoff = BackoffPolicy(reconnect_base_delay_ms, reconnect_max_delay_ms)

        # State
        self._status = CaptureStatus.STOPPED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_tasks: List[asyncio.Task] = []
        self._connected_future: Optional[asyncio.Future] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._reconnect_count: int = 0
        self._is_shutting_down: bool = False
        self._sequence: int = 0
        self._stderr_tail: deque = deque(maxlen=_STDERR_TAIL_LINES)

        self._frame_callbacks: List[FrameCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

        self._ring = FrameRingBuffer(capacity=max_buffer_frames)
        self._assembler = JpegFrameAssembler(max_frame_size=max_frame_size_bytes)

        # Metrics
        self.metrics = CaptureMetrics()

        logger.debug(
            f"StreamCapture created: url={sanitize_url(self.stream_url)}, "
            f"interval={frame_interval_ms}ms, attempts={reconnect_attempts}"
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def status(self) -> CaptureStatus:
        return self._status

    def get_status(self) -> CaptureStatus:
        """Current capture status."""
        return self._status

    @property
    def reconnect_count(self) -> int:
        """Reconnects since the last successful connection."""
        return self._reconnect_count

    @property
    def command(self) -> List[str]:
        return list(self._command)

    def on_frame(self, callback: FrameCallback) -> None:
        """Register a callback receiving every valid Frame."""
        if not callable(callback):
            raise TypeError("on_frame callback must be callable")
        self._frame_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback receiving non-fatal capture errors."""
        if not callable(callback):
            raise TypeError("on_error callback must be callable")
        self._error_callbacks.append(callback)

    async def start(self) -> None:
        """
        Start capturing.

        Returns once the first decode confirms the stream is live.

        Raises:
            CaptureTimeoutError: No decode within connection_timeout_ms
            StreamEndedError: ffmpeg exited before the first frame
            ProcessSpawnError: ffmpeg could not be started
        """
        if self._status in (CaptureStatus.CONNECTED, CaptureStatus.CONNECTING):
            logger.warning("Stream capture already started")
            return

        self._is_shutting_down = False
        self._reconnect_count = 0

        try:
            await self._connect()
        except CaptureError:
            self._status = (
                CaptureStatus.STOPPED if self._is_shutting_down else CaptureStatus.ERROR
            )
            raise

    async def stop(self) -> None:
        """
        Stop capturing and release the subprocess.

        Safe to call from any state, any number of times.
        """
        logger.info(f"Stopping stream capture: {sanitize_url(self.stream_url)}")
        self._is_shutting_down = True

        pending = self._connected_future
        if pending is not None and not pending.done():
            pending.set_exception(CaptureError("Capture stopped while connecting"))

        current = asyncio.current_task()
        for task in (self._reconnect_task, self._cleanup_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._reconnect_task = None
        self._cleanup_task = None

        await self._kill_process()

        self._ring.clear()
        self._assembler.reset()
        self._status = CaptureStatus.STOPPED

        logger.info("Stream capture stopped")

    def get_frame_buffer(self) -> List[Frame]:
        """Buffered frames, oldest first."""
        return self._ring.snapshot()

    def get_latest_frame(self) -> Optional[Frame]:
        """Most recent buffered frame, or None."""
        return self._ring.latest()

    def clear_frame_buffer(self) -> None:
        self._ring.clear()
        logger.debug("Frame buffer cleared")

    async def __aenter__(self) -> "StreamCapture":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def _connect(self) -> None:
        """Spawn ffmpeg and wait for the first decode signal."""
        self._status = CaptureStatus.CONNECTING
        self._assembler.reset()
        self._stderr_tail.clear()
        logger.info(f"Connecting to stream: {sanitize_url(self.stream_url)}")

        connected = asyncio.get_running_loop().create_future()
        self._connected_future = connected

        try:
            process = await self._process_factory(self._command)
        except OSError as e:
            self._connected_future = None
            raise ProcessSpawnError(f"Failed to start ffmpeg: {e}") from e

        self._process = process
        self._reader_tasks = [
            asyncio.create_task(self._read_frames(process), name="capture_stdout"),
            asyncio.create_task(self._read_stderr(process), name="capture_stderr"),
        ]

        try:
            await asyncio.wait_for(
                connected,
                timeout=self.connection_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Connection timeout after {self.connection_timeout_ms}ms: "
                f"{sanitize_url(self.stream_url)}"
            )
            self._connected_future = None
            await self._kill_process()
            raise CaptureTimeoutError() from None
        except (CaptureError, asyncio.CancelledError):
            self._connected_future = None
            await self._kill_process()
            raise
        finally:
            if self._connected_future is connected:
                self._connected_future = None

    def _mark_connected(self, process) -> None:
        """First decode signal for the current process."""
        if process is not self._process or self._is_shutting_down:
            return

        if self._status is not CaptureStatus.CONNECTED:
            self._status = CaptureStatus.CONNECTED
            self._reconnect_count = 0
            logger.info(f"Stream connected: {sanitize_url(self.stream_url)}")

        future = self._connected_future
        if future is not None and not future.done():
            future.set_result(None)

    async def _kill_process(self) -> None:
        """Terminate the owned process, escalating to kill after the grace period."""
        process = self._process
        self._process = None
        readers = self._reader_tasks
        self._reader_tasks = []

        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            else:
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
                except asyncio.TimeoutError:
                    logger.warning("FFmpeg process did not exit cleanly, forcing kill")
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

        current = asyncio.current_task()
        others = [t for t in readers if t is not current and not t.done()]
        for task in others:
            task.cancel()
        if others:
            await asyncio.gather(*others, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Readers
    # -------------------------------------------------------------------------

    async def _read_frames(self, process) -> None:
        """Demux JPEG frames from ffmpeg stdout until EOF."""
        try:
            while True:
                chunk = await process.stdout.read(_READ_CHUNK_SIZE)
                if not chunk:
                    break
                if process is not self._process:
                    return
                self.metrics.bytes_read += len(chunk)

                resets_before = self._assembler.reset_count
                for data in self._assembler.feed(chunk):
                    self._handle_frame(process, data)
                self.metrics.demux_resets += self._assembler.reset_count - resets_before
        except (OSError, ValueError) as e:
            logger.error(f"FFmpeg stdout read error: {e}")

        returncode = await process.wait()
        self._on_process_exit(process, returncode)

    async def _read_stderr(self, process) -> None:
        """Watch ffmpeg progress output for the first decode signal."""
        partial = ""
        try:
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    break
                text = partial + chunk.decode("utf-8", errors="replace")
                lines = _LINE_SPLIT.split(text)
                partial = lines.pop()
                for line in lines:
                    self._handle_stderr_line(process, line)
        except (OSError, ValueError) as e:
            logger.debug(f"FFmpeg stderr read error: {e}")

        if partial:
            self._handle_stderr_line(process, partial)

    def _handle_stderr_line(self, process, line: str) -> None:
        line = line.strip()
        if not line:
            return
        self._stderr_tail.append(line)
        logger.debug(f"FFmpeg stderr: {line}")
        if "frame=" in line:
            self._mark_connected(process)

    def _handle_frame(self, process, data: bytes) -> None:
        """Validate a reassembled frame, buffer it and notify callbacks."""
        if process is not self._process or self._is_shutting_down:
            return

        if len(data) > self.max_frame_size_bytes:
            self.metrics.frames_dropped += 1
            logger.warning(
                f"Frame exceeds size limit, dropping: "
                f"size={len(data)}, limit={self.max_frame_size_bytes}"
            )
            return
        if not is_valid_jpeg(data, self.max_frame_size_bytes):
            self.metrics.frames_dropped += 1
            logger.warning("Invalid JPEG frame header, dropping")
            return

        self._sequence += 1
        frame = Frame(data=data, captured_at=time.time(), sequence=self._sequence)
        self._ring.push(frame)
        self.metrics.frames_emitted += 1
        self.metrics.last_frame_at = frame.captured_at

        self._mark_connected(process)

        logger.debug(f"Frame captured: {frame!r}, buffered={len(self._ring)}")

        for callback in list(self._frame_callbacks):
            try:
                callback(frame)
            except Exception as e:
                logger.error(f"Frame callback error: {e}")

    # -------------------------------------------------------------------------
    # Disconnect / reconnect
    # -------------------------------------------------------------------------

    def _on_process_exit(self, process, returncode: Optional[int]) -> None:
        """ffmpeg exited on its own (EOF on stdout)."""
        if process is not self._process:
            # Killed or replaced on purpose
            return

        detail = self._stderr_tail[-1] if self._stderr_tail else "no output"
        error = StreamEndedError(
            f"Stream ended (exit code {returncode}): {detail}",
            returncode=returncode,
        )

        future = self._connected_future
        if future is not None and not future.done():
            future.set_exception(error)
            return

        if self._is_shutting_down:
            logger.debug("FFmpeg ended during shutdown")
            return

        logger.info(f"FFmpeg stream ended: exit code {returncode}")
        self._handle_disconnect(error)

    def _handle_disconnect(self, error: Exception) -> None:
        """Schedule a reconnect, or give up once the budget is spent."""
        if self._is_shutting_down:
            return

        if self._reconnect_count >= self.reconnect_attempts:
            logger.error(
                f"Max reconnection attempts reached ({self.reconnect_attempts}): "
                f"{sanitize_url(self.stream_url)}"
            )
            self._status = CaptureStatus.ERROR
            exhausted = ReconnectExhaustedError()
            exhausted.__cause__ = error
            self._emit_error(exhausted)
            self._cleanup_task = asyncio.create_task(
                self._kill_process(), name="capture_cleanup"
            )
            return

        self._status = CaptureStatus.RECONNECTING
        self._reconnect_count += 1
        self.metrics.reconnect_count += 1
        delay = self._backoff.delay_seconds(self._reconnect_count)

        logger.info(
            f"Scheduling reconnection: attempt={self._reconnect_count}/"
            f"{self.reconnect_attempts}, delay={delay:.1f}s, cause={error}"
        )

        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="capture_reconnect"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._is_shutting_down:
            return

        try:
            await self._kill_process()
            await self._connect()
        except CaptureError as e:
            if self._is_shutting_down:
                return
            logger.error(f"Reconnection failed: {e}")
            self._handle_disconnect(e)

    def _emit_error(self, error: Exception) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback error: {e}")
