"""
Store Protocols
===============

Persistence contracts consumed by the pipeline and the orchestrator.

All methods are async; implementations that do blocking I/O run it in
a worker thread.
"""

from typing import Any, List, Optional, Protocol

from streamwatch_agent.models.channel import Channel, DetectionConfig, DetectionRule
from streamwatch_agent.models.detection import DetectionEvent


# Columns update_config() may change
CONFIG_UPDATABLE_FIELDS = (
    "is_enabled",
    "stream_url",
    "frame_interval_ms",
    "max_concurrent_detections",
    "cooldown_seconds",
)


class ChannelStore(Protocol):
    """Lookup of chat channels."""

    async def find_by_id(self, channel_id: int) -> Optional[Channel]:
        ...


class DetectionConfigStore(Protocol):
    """Detection configs, rules and the detection log."""

    async def get_config(self, channel_id: int) -> Optional[DetectionConfig]:
        ...

    async def get_enabled_configs(self) -> List[DetectionConfig]:
        ...

    async def get_enabled_rules(self, config_id: int) -> List[DetectionRule]:
        ...

    async def update_config(self, config_id: int, **patch: Any) -> Optional[DetectionConfig]:
        """Apply a partial update; unknown fields are ignored."""
        ...

    async def log_detection(
        self,
        config_id: int,
        rule_id: Optional[int],
        event: DetectionEvent,
    ) -> None:
        ...
