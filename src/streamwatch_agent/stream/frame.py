"""
Frame Data Model
=================

Internal frame representation for the capture pipeline.

This module defines the typed Frame class that is used as the interface
between the stream capture and the detection pipeline.

Design Rules:
    - This is the ONLY frame format passed to downstream stages
    - Holds the raw JPEG bytes exactly as emitted by the decoder
    - Only validated frames are ever wrapped in a Frame
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Frame:
    """
    Validated JPEG frame cut from the decoder output.

    It is immutable (frozen) to prevent accidental modification
    while the same frame is fanned out to several callbacks.

    Attributes:
        data: Complete JPEG image (SOI through EOI markers)
        captured_at: UNIX timestamp when the frame was reassembled
        sequence: Per-capture frame counter, starting at 1
    """

    data: bytes
    captured_at: float
    sequence: int

    @property
    def size(self) -> int:
        """Frame size in bytes."""
        return len(self.data)

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the image bytes."""
        return (
            f"Frame(sequence={self.sequence}, "
            f"captured_at={self.captured_at:.3f}, "
            f"size={self.size})"
        )
