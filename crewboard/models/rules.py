from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple

from crewboard.models.entities import ResourceType, RowType


@dataclass(frozen=True)
class MagnetInteractionRule:
    source_type: ResourceType  # the magnet being attached
    target_type: ResourceType  # the magnet it attaches to
    can_attach: bool
    is_required: bool = False
    max_count: Optional[int] = None
    required_credentials: Tuple[str, ...] = ()

    @property
    def key(self) -> Tuple[ResourceType, ResourceType]:
        return (self.source_type, self.target_type)


@dataclass(frozen=True)
class DropRule:
    row_type: RowType
    allowed_types: FrozenSet[ResourceType]
    capacity: Optional[int] = None


@dataclass(frozen=True)
class JobRowBox:
    id: str
    name: str
    allowed_types: FrozenSet[ResourceType]
    capacity: Optional[int] = None
    sub_boxes: Tuple["JobRowBox", ...] = ()

    def leaves(self) -> Iterator["JobRowBox"]:
        """Boxes that actually hold magnets: a split box delegates to its sub-boxes."""
        if not self.sub_boxes:
            yield self
            return
        for sub in self.sub_boxes:
            yield from sub.leaves()


@dataclass(frozen=True)
class JobRowConfig:
    job_id: str
    row_type: RowType
    boxes: Tuple[JobRowBox, ...]

    def leaf_boxes(self) -> List[JobRowBox]:
        return [leaf for box in self.boxes for leaf in box.leaves()]

    @property
    def allowed_types(self) -> FrozenSet[ResourceType]:
        allowed = set()
        for leaf in self.leaf_boxes():
            allowed |= leaf.allowed_types
        return frozenset(allowed)


@dataclass(frozen=True)
class RuleTables:
    """An immutable, fully-keyed snapshot of the rule source."""

    magnet_rules: Dict[Tuple[ResourceType, ResourceType], MagnetInteractionRule]
    drop_rules: Dict[RowType, DropRule]
    job_row_configs: Dict[Tuple[str, RowType], JobRowConfig]
    # rows as they came from the source, duplicates included, for the consistency report
    raw_magnet_rules: Tuple[MagnetInteractionRule, ...] = ()
    raw_drop_rules: Tuple[DropRule, ...] = ()

    @classmethod
    def build(
        cls,
        magnet_rules: List[MagnetInteractionRule],
        drop_rules: List[DropRule],
        job_row_configs: Optional[List[JobRowConfig]] = None,
    ) -> "RuleTables":
        # later rows win on duplicate keys
        return cls(
            magnet_rules={r.key: r for r in magnet_rules},
            drop_rules={r.row_type: r for r in drop_rules},
            job_row_configs={(c.job_id, c.row_type): c for c in job_row_configs or []},
            raw_magnet_rules=tuple(magnet_rules),
            raw_drop_rules=tuple(drop_rules),
        )

    def to_dict(self) -> Dict:
        return {
            "magnet_rules": [_magnet_rule_to_dict(r) for r in self.raw_magnet_rules],
            "drop_rules": [
                {
                    "row_type": r.row_type.value,
                    "allowed_types": sorted(t.value for t in r.allowed_types),
                    "capacity": r.capacity,
                }
                for r in self.raw_drop_rules
            ],
            "job_row_configs": [
                {
                    "job_id": c.job_id,
                    "row_type": c.row_type.value,
                    "boxes": [box_to_dict(b) for b in c.boxes],
                }
                for c in self.job_row_configs.values()
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RuleTables":
        return cls.build(
            magnet_rules=[
                MagnetInteractionRule(
                    source_type=ResourceType(r["source_type"]),
                    target_type=ResourceType(r["target_type"]),
                    can_attach=bool(r["can_attach"]),
                    is_required=bool(r.get("is_required", False)),
                    max_count=r.get("max_count"),
                    required_credentials=tuple(r.get("required_credentials") or ()),
                )
                for r in data.get("magnet_rules", [])
            ],
            drop_rules=[
                DropRule(
                    row_type=RowType(r["row_type"]),
                    allowed_types=frozenset(ResourceType(t) for t in r["allowed_types"]),
                    capacity=r.get("capacity"),
                )
                for r in data.get("drop_rules", [])
            ],
            job_row_configs=[
                JobRowConfig(
                    job_id=c["job_id"],
                    row_type=RowType(c["row_type"]),
                    boxes=tuple(box_from_dict(b) for b in c["boxes"]),
                )
                for c in data.get("job_row_configs", [])
            ],
        )


def _magnet_rule_to_dict(rule: MagnetInteractionRule) -> Dict:
    return {
        "source_type": rule.source_type.value,
        "target_type": rule.target_type.value,
        "can_attach": rule.can_attach,
        "is_required": rule.is_required,
        "max_count": rule.max_count,
        "required_credentials": list(rule.required_credentials),
    }


def box_to_dict(box: JobRowBox) -> Dict:
    return {
        "id": box.id,
        "name": box.name,
        "allowed_types": sorted(t.value for t in box.allowed_types),
        "capacity": box.capacity,
        "sub_boxes": [box_to_dict(s) for s in box.sub_boxes],
    }


def box_from_dict(data: Dict) -> JobRowBox:
    return JobRowBox(
        id=data["id"],
        name=data.get("name", data["id"]),
        allowed_types=frozenset(ResourceType(t) for t in data.get("allowed_types", [])),
        capacity=data.get("capacity"),
        sub_boxes=tuple(box_from_dict(s) for s in data.get("sub_boxes") or []),
    )
