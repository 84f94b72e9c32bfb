"""
Rule Cache
==========

TTL-cached lookup table of the enabled detection rules of one config.

Design Rules:
    - One store round-trip per TTL window, not per frame
    - A failed refresh serves the last known-good table
    - Nothing ever loaded + failed refresh = empty table (fail closed)
    - At most one rule per object class; the first returned wins
"""

import logging
import time
from typing import Callable, Dict, Optional

from streamwatch_agent.models.channel import DetectionRule


logger = logging.getLogger(__name__)


DEFAULT_RULES_TTL_SECONDS = 60.0

RuleTable = Dict[str, DetectionRule]


class RuleCache:
    """
    Per-config rule table with time-based refresh.

    Attributes:
        config_id: Config whose rules are cached
        ttl_seconds: Table lifetime before a refresh is attempted
        refresh_failures: Number of failed refreshes

    Example:
        rules = RuleCache(store, config_id=7)
        table = await rules.get_rules()
        rule = table.get("cat")
    """

    def __init__(
        self,
        store,
        config_id: int,
        ttl_seconds: float = DEFAULT_RULES_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize rule cache.

        Args:
            store: DetectionConfigStore providing get_enabled_rules
            config_id: Config whose rules are cached
            ttl_seconds: Cache lifetime
            clock: Monotonic time source (injectable for tests)
        """
        self._store = store
        self.config_id = config_id
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._table: Optional[RuleTable] = None
        self._loaded_at: Optional[float] = None
        self.refresh_failures: int = 0

    @property
    def is_loaded(self) -> bool:
        return self._table is not None

    def _is_fresh(self) -> bool:
        if self._table is None or self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self.ttl_seconds

    async def get_rules(self) -> RuleTable:
        """
        Current class -> rule table.

        Returns:
            Mapping from normalized object class to its enabled rule
        """
        if self._is_fresh():
            return self._table

        try:
            rules = await self._store.get_enabled_rules(self.config_id)
        except Exception as e:
            self.refresh_failures += 1
            logger.error(f"Failed to get enabled rules for config {self.config_id}: {e}")
            return self._table if self._table is not None else {}

        self._table = self._build_table(rules)
        self._loaded_at = self._clock()
        logger.debug(f"Rules refreshed: config={self.config_id}, classes={sorted(self._table)}")
        return self._table

    async def lookup(self, object_class: str) -> Optional[DetectionRule]:
        table = await self.get_rules()
        return table.get(object_class.strip().lower())

    def invalidate(self) -> None:
        """Force a refresh on the next lookup."""
        self._loaded_at = None

    def _build_table(self, rules) -> RuleTable:
        table: RuleTable = {}
        for rule in rules:
            if not rule.is_enabled:
                continue
            if rule.object_class in table:
                logger.warning(
                    f"Duplicate enabled rule for class '{rule.object_class}' "
                    f"(config {self.config_id}), ignoring rule {rule.id}"
                )
                continue
            table[rule.object_class] = rule
        return table
