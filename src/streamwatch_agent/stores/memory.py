"""
In-Memory Store
===============

Dict-backed ChannelStore and DetectionConfigStore.

Used for dry runs and as the test double for the pipeline and the
orchestrator. Records are pydantic models, copied on update.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from streamwatch_agent.models.channel import Channel, DetectionConfig, DetectionRule
from streamwatch_agent.models.detection import DetectionEvent
from streamwatch_agent.stores.base import CONFIG_UPDATABLE_FIELDS


logger = logging.getLogger(__name__)


class MemoryStore:
    """
    Channels, configs, rules and logs held in dicts.

    Example:
        store = MemoryStore()
        store.add_channel(Channel(id=1, username="somestreamer"))
        store.add_config(DetectionConfig(id=10, channel_id=1, stream_url=url))
        store.add_rule(DetectionRule(id=100, config_id=10, object_class="cat"))
    """

    def __init__(self) -> None:
        self.channels: Dict[int, Channel] = {}
        self.configs: Dict[int, DetectionConfig] = {}
        self.rules: Dict[int, DetectionRule] = {}
        self.detection_logs: List[Tuple[int, Optional[int], DetectionEvent]] = []

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def add_channel(self, channel: Channel) -> Channel:
        self.channels[channel.id] = channel
        return channel

    def add_config(self, config: DetectionConfig) -> DetectionConfig:
        for existing in self.configs.values():
            if existing.channel_id == config.channel_id and existing.id != config.id:
                raise ValueError(f"Channel {config.channel_id} already has a config")
        self.configs[config.id] = config
        return config

    def add_rule(self, rule: DetectionRule) -> DetectionRule:
        self.rules[rule.id] = rule
        return rule

    # -------------------------------------------------------------------------
    # ChannelStore
    # -------------------------------------------------------------------------

    async def find_by_id(self, channel_id: int) -> Optional[Channel]:
        return self.channels.get(channel_id)

    # -------------------------------------------------------------------------
    # DetectionConfigStore
    # -------------------------------------------------------------------------

    async def get_config(self, channel_id: int) -> Optional[DetectionConfig]:
        for config in self.configs.values():
            if config.channel_id == channel_id:
                return config
        return None

    async def get_enabled_configs(self) -> List[DetectionConfig]:
        return [c for c in self.configs.values() if c.is_enabled]

    async def get_enabled_rules(self, config_id: int) -> List[DetectionRule]:
        return [
            r for r in sorted(self.rules.values(), key=lambda r: r.id)
            if r.config_id == config_id and r.is_enabled
        ]

    async def update_config(self, config_id: int, **patch: Any) -> Optional[DetectionConfig]:
        config = self.configs.get(config_id)
        if config is None:
            return None

        updates = {k: v for k, v in patch.items() if k in CONFIG_UPDATABLE_FIELDS}
        if not updates:
            return config

        updated = config.model_copy(update=updates)
        self.configs[config_id] = updated
        logger.debug(f"Config {config_id} updated: {sorted(updates)}")
        return updated

    async def log_detection(
        self,
        config_id: int,
        rule_id: Optional[int],
        event: DetectionEvent,
    ) -> None:
        self.detection_logs.append((config_id, rule_id, event))
