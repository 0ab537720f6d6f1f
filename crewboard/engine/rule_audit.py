from collections import Counter
from dataclasses import dataclass, field
from typing import List

from crewboard.models.entities import EQUIPMENT_TYPES, ResourceType
from crewboard.models.rules import RuleTables

HIGH_MAX_COUNT = 5
DRIVER_TYPES = (ResourceType.DRIVER, ResourceType.PRIVATE_DRIVER)


@dataclass
class RuleReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class RuleAuditor:
    """
    Checks a rule table for internal consistency before (or after) it is loaded.
    Errors make the table unusable as intended; warnings are likely mistakes.
    """

    def __init__(self, tables: RuleTables):
        self.tables = tables

    def audit(self) -> RuleReport:
        report = RuleReport()
        self._check_magnet_rules(report)
        self._check_drop_rules(report)
        self._check_cross_references(report)
        return report

    def _check_magnet_rules(self, report: RuleReport) -> None:
        rules = self.tables.raw_magnet_rules
        counts = Counter(r.key for r in rules)
        for (source, target), n in sorted(counts.items(), key=lambda kv: (kv[0][0].value, kv[0][1].value)):
            if n > 1:
                report.errors.append(f"Duplicate rules found for {source.value} → {target.value}")

        for rule in rules:
            pair = f"{rule.source_type.value} → {rule.target_type.value}"
            if rule.is_required and not rule.can_attach:
                report.errors.append(f"Rule marked as required but canAttach is false: {pair}")
            if rule.can_attach and rule.max_count == 0:
                report.warnings.append(f"Rule allows attachment but maxCount is 0: {pair}")
            if rule.max_count and rule.max_count > HIGH_MAX_COUNT:
                report.warnings.append(f"High maxCount ({rule.max_count}) for {pair} - verify if intentional")

        for equipment in sorted(EQUIPMENT_TYPES - {ResourceType.TRUCK}, key=lambda t: t.value):
            if not any(r.source_type == ResourceType.OPERATOR and r.target_type == equipment and r.can_attach
                       for r in rules):
                report.warnings.append(f"No operator rule found for {equipment.value} - equipment may not be operable")
                report.suggestions.append(f"Add operator rule for {equipment.value}")

        if not any(r.source_type in DRIVER_TYPES and r.target_type == ResourceType.TRUCK and r.can_attach
                   for r in rules):
            report.warnings.append("No driver rule found for trucks - vehicles may not be drivable")
            report.suggestions.append("Add driver rule for trucks")

    def _check_drop_rules(self, report: RuleReport) -> None:
        counts = Counter(r.row_type for r in self.tables.raw_drop_rules)
        for row_type, n in counts.items():
            if n > 1:
                report.errors.append(f"Multiple drop rules found for row type: {row_type.value}")
        for rule in self.tables.raw_drop_rules:
            if not rule.allowed_types:
                report.warnings.append(
                    f"Row type {rule.row_type.value} has no allowed resource types - nothing can be dropped here"
                )

    def _check_cross_references(self, report: RuleReport) -> None:
        placeable = set()
        for rule in self.tables.drop_rules.values():
            placeable |= rule.allowed_types
        for config in self.tables.job_row_configs.values():
            placeable |= config.allowed_types

        for rule in self.tables.magnet_rules.values():
            for resource_type in (rule.source_type, rule.target_type):
                if resource_type not in placeable:
                    report.warnings.append(
                        f"Magnet rule {rule.source_type.value} → {rule.target_type.value} references "
                        f"{resource_type.value} but it's not allowed in any row"
                    )
