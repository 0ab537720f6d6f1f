"""
Rule Registry

Keyed, read-mostly lookups over the loaded rule tables:

- magnet interaction rules, keyed by (source_type, target_type)
- drop rules, keyed by row_type
- job row configs, keyed by (job_id, row_type)

The registry holds one immutable RuleTables snapshot. ``load`` swaps the
snapshot in a single assignment; callers that need several lookups to agree
take ``snapshot()`` once and query that object, so a reload never changes the
rules under an operation already in flight.

An unknown (source, target) pair or an unknown row is a deny, never an allow.
"""

import logging
import threading
from typing import FrozenSet, List, Optional

from crewboard.models.entities import ResourceType, RowType
from crewboard.models.rules import JobRowBox, JobRowConfig, MagnetInteractionRule, RuleTables
from crewboard.models.verdict import ErrorKind, MutationRejected

logger = logging.getLogger(__name__)


class RuleSnapshot:
    """Query view over one RuleTables instance."""

    def __init__(self, tables: RuleTables, version: int):
        self.tables = tables
        self.version = version

    def rule_for(self, source_type: ResourceType, target_type: ResourceType) -> Optional[MagnetInteractionRule]:
        return self.tables.magnet_rules.get((source_type, target_type))

    def can_attach(self, source_type: ResourceType, target_type: ResourceType) -> bool:
        rule = self.rule_for(source_type, target_type)
        return bool(rule and rule.can_attach)

    def max_count(self, source_type: ResourceType, target_type: ResourceType) -> Optional[int]:
        rule = self.rule_for(source_type, target_type)
        return rule.max_count if rule else None

    def required_sources(self, target_type: ResourceType) -> List[ResourceType]:
        """Source types that must be attached to target_type before finalization."""
        return sorted(
            (r.source_type for r in self.tables.magnet_rules.values()
             if r.target_type == target_type and r.is_required and r.can_attach),
            key=lambda t: t.value,
        )

    def job_row_config(self, job_id: str, row_type: RowType) -> Optional[JobRowConfig]:
        return self.tables.job_row_configs.get((job_id, row_type))

    def allowed_types(self, job_id: str, row_type: RowType) -> FrozenSet[ResourceType]:
        """A job-specific row config overrides the global drop rule for that row."""
        config = self.job_row_config(job_id, row_type)
        if config is not None:
            return config.allowed_types
        drop_rule = self.tables.drop_rules.get(row_type)
        if drop_rule is None:
            return frozenset()
        return drop_rule.allowed_types

    def is_allowed(self, resource_type: ResourceType, job_id: str, row_type: RowType) -> bool:
        return resource_type in self.allowed_types(job_id, row_type)

    def row_capacity(self, row_type: RowType) -> Optional[int]:
        drop_rule = self.tables.drop_rules.get(row_type)
        return drop_rule.capacity if drop_rule else None

    def candidate_boxes(self, resource_type: ResourceType, job_id: str, row_type: RowType) -> List[JobRowBox]:
        """Leaf boxes of the job's row config that accept resource_type, in declaration order."""
        config = self.job_row_config(job_id, row_type)
        if config is None:
            return []
        return [box for box in config.leaf_boxes() if resource_type in box.allowed_types]


class RuleRegistry:
    def __init__(self, tables: Optional[RuleTables] = None):
        self._lock = threading.Lock()
        self._snapshot: Optional[RuleSnapshot] = None
        self._version = 0
        if tables is not None:
            self.load(tables)

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def load(self, tables: RuleTables) -> RuleSnapshot:
        """Install a new rule snapshot. Called explicitly on startup and on reload."""
        with self._lock:
            self._version += 1
            snapshot = RuleSnapshot(tables, self._version)
            self._snapshot = snapshot
        logger.info(
            f"Rules loaded (v{snapshot.version}): {len(tables.magnet_rules)} magnet rules, "
            f"{len(tables.drop_rules)} drop rules, {len(tables.job_row_configs)} job row configs"
        )
        return snapshot

    def snapshot(self) -> RuleSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise MutationRejected.of(ErrorKind.RULE_NOT_LOADED, "Rule registry has not been loaded yet")
        return snapshot

    # Convenience pass-throughs for one-off queries.

    def can_attach(self, source_type: ResourceType, target_type: ResourceType) -> bool:
        return self.snapshot().can_attach(source_type, target_type)

    def rule_for(self, source_type: ResourceType, target_type: ResourceType) -> Optional[MagnetInteractionRule]:
        return self.snapshot().rule_for(source_type, target_type)

    def is_allowed(self, resource_type: ResourceType, job_id: str, row_type: RowType) -> bool:
        return self.snapshot().is_allowed(resource_type, job_id, row_type)

    def required_sources(self, target_type: ResourceType) -> List[ResourceType]:
        return self.snapshot().required_sources(target_type)
