"""
Stores Module
=============

Persistence for channels, detection configs, rules and detection logs.

Components:
    - ChannelStore, DetectionConfigStore: Protocols consumed by the core
    - MemoryStore: Dict-backed implementation (dry runs, tests)
    - SqliteStore: SQLite-backed implementation (production)
"""

from streamwatch_agent.stores.base import (
    CONFIG_UPDATABLE_FIELDS,
    ChannelStore,
    DetectionConfigStore,
)
from streamwatch_agent.stores.memory import MemoryStore
from streamwatch_agent.stores.sqlite import SqliteStore


__all__ = [
    "CONFIG_UPDATABLE_FIELDS",
    "ChannelStore",
    "DetectionConfigStore",
    "MemoryStore",
    "SqliteStore",
]
