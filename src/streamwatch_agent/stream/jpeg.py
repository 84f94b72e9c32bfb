"""
JPEG Demuxer
============

Reassembles discrete JPEG images from the decoder's image2pipe output.

ffmpeg writes back-to-back JPEG files to stdout with no framing. Chunks
read from the pipe are arbitrary slices of that byte stream, so a chunk
may hold part of a frame, exactly one frame, or the tail of one frame
and the head of the next.

Design Rules:
    - Frames are cut at the EOI marker (FF D9)
    - Bytes after the marker are kept as the start of the next frame
    - The accumulator is reset when it exceeds twice the frame size limit
    - Validation is a separate step (is_valid_jpeg)
"""

import logging
from typing import List


logger = logging.getLogger(__name__)


JPEG_SOI = b"\xff\xd8"
JPEG_EOI = b"\xff\xd9"

# SOI + at least one marker byte pair
MIN_JPEG_LENGTH = 4


def is_valid_jpeg(data: bytes, max_size: int) -> bool:
    """
    Check the minimal JPEG signature and size limit.

    Args:
        data: Candidate frame bytes
        max_size: Maximum accepted size in bytes

    Returns:
        True if the frame starts with SOI, is long enough and not oversized
    """
    if len(data) < MIN_JPEG_LENGTH:
        return False
    if len(data) > max_size:
        return False
    return data[:2] == JPEG_SOI


class JpegFrameAssembler:
    """
    Incremental splitter for a concatenated JPEG byte stream.

    Attributes:
        max_frame_size: Frame size limit; the accumulator is discarded
            once it holds more than twice this many bytes
        reset_count: Number of corruption-guard resets

    Example:
        assembler = JpegFrameAssembler(max_frame_size=10 * 1024 * 1024)

        async for chunk in stdout:
            for frame_bytes in assembler.feed(chunk):
                handle(frame_bytes)
    """

    def __init__(self, max_frame_size: int) -> None:
        if max_frame_size < MIN_JPEG_LENGTH:
            raise ValueError("max_frame_size too small")

        self.max_frame_size = max_frame_size
        self.reset_count: int = 0
        self._pending = bytearray()

    @property
    def pending_bytes(self) -> int:
        """Bytes waiting for an end marker."""
        return len(self._pending)

    def feed(self, chunk: bytes) -> List[bytes]:
        """
        Add a chunk and return every frame it completes.

        Args:
            chunk: Raw bytes read from the decoder

        Returns:
            Complete frames in stream order (possibly empty)
        """
        # Resume one byte early in case FF arrived at the end of the last chunk
        search_from = max(0, len(self._pending) - 1)
        self._pending.extend(chunk)

        frames: List[bytes] = []
        while True:
            end = self._pending.find(JPEG_EOI, search_from)
            if end == -1:
                break
            cut = end + len(JPEG_EOI)
            frames.append(bytes(self._pending[:cut]))
            del self._pending[:cut]
            search_from = 0

        if len(self._pending) > self.max_frame_size * 2:
            logger.warning(
                f"Frame data accumulation exceeded limit "
                f"({len(self._pending)} bytes), clearing buffer"
            )
            self._pending.clear()
            self.reset_count += 1

        return frames

    def reset(self) -> None:
        """Discard any partial frame."""
        self._pending.clear()
