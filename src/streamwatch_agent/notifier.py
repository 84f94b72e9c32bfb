"""
Notifier
========

Outbound chat dispatch used by the detection pipeline.

The chat client itself lives outside this package; anything with an
async say(channel, message) method can be plugged in.
"""

import logging
import time
from collections import deque
from typing import Deque, List, Protocol, Tuple


logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Protocol for chat backends."""

    async def say(self, channel_username: str, message: str) -> None:
        """
        Send a message to a channel's chat.

        Raises:
            Exception: Any dispatch failure (the pipeline logs and counts it)
        """
        ...


class LoggingNotifier:
    """
    Notifier that logs messages instead of sending them.

    Used for dry runs and when no chat backend is configured. Keeps
    the most recent messages for the status API.

    Attributes:
        history_size: Number of messages retained
    """

    def __init__(self, history_size: int = 100) -> None:
        self.history_size = history_size
        self._history: Deque[Tuple[float, str, str]] = deque(maxlen=history_size)

    async def say(self, channel_username: str, message: str) -> None:
        logger.info(f"[#{channel_username}] {message}")
        self._history.append((time.time(), channel_username, message))

    @property
    def sent_count(self) -> int:
        return len(self._history)

    def recent(self, limit: int = 20) -> List[dict]:
        """Most recent messages, newest last."""
        items = list(self._history)[-limit:] if limit > 0 else []
        return [
            {"timestamp": ts, "channel": channel, "message": message}
            for ts, channel, message in items
        ]
