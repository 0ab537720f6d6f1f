from collections import defaultdict
from typing import Callable, Dict, List, Mapping, Optional, Set

from crewboard.engine.rule_registry import RuleSnapshot
from crewboard.models.entities import Assignment, ResourceType
from crewboard.models.verdict import ErrorKind, Verdict


class AttachmentGraph:
    """
    Parent/child links between assignments. The relation is a forest: every
    assignment has at most one parent and is never its own ancestor. A node
    without a parent is the primary of its group.

    Every check runs before the edge is written, so the forest property holds
    at all times, not only between operations.
    """

    def __init__(self, assignments: Mapping[str, Assignment], type_of: Callable[[str], ResourceType]):
        self._assignments = assignments
        self._type_of = type_of
        self._parent: Dict[str, str] = {}
        self._children: Dict[str, Set[str]] = defaultdict(set)

    def parent_of(self, assignment_id: str) -> Optional[str]:
        return self._parent.get(assignment_id)

    def children_of(self, assignment_id: str) -> List[str]:
        return self._ordered(self._children.get(assignment_id, ()))

    def is_primary(self, assignment_id: str) -> bool:
        return assignment_id not in self._parent

    def primary_of(self, assignment_id: str) -> str:
        node = assignment_id
        while node in self._parent:
            node = self._parent[node]
        return node

    def descendants(self, assignment_id: str) -> List[str]:
        """All nodes below assignment_id, pre-order."""
        out: List[str] = []
        stack = list(reversed(self.children_of(assignment_id)))
        while stack:
            node = stack.pop()
            out.append(node)
            stack.extend(reversed(self.children_of(node)))
        return out

    def count_children_of_type(self, parent_id: str, resource_type: ResourceType) -> int:
        return sum(1 for c in self._children.get(parent_id, ()) if self._type_of(c) == resource_type)

    def check_link(self, child_id: str, parent_id: str, rules: RuleSnapshot) -> Verdict:
        if child_id == parent_id or parent_id in self.descendants(child_id):
            return Verdict.reject(
                ErrorKind.CYCLE_DETECTED,
                f"Attaching {child_id} to {parent_id} would make {child_id} its own ancestor",
            )
        current = self._parent.get(child_id)
        if current == parent_id:
            return Verdict.accept()
        if current is not None:
            return Verdict.reject(
                ErrorKind.CYCLE_DETECTED,
                f"{child_id} is already attached to {current}; detach it first",
            )
        child_type = self._type_of(child_id)
        max_count = rules.max_count(child_type, self._type_of(parent_id))
        if max_count is not None and self.count_children_of_type(parent_id, child_type) >= max_count:
            return Verdict.reject(
                ErrorKind.CAPACITY_EXCEEDED,
                f"{parent_id} already has {max_count} {child_type.value}(s) attached",
            )
        return Verdict.accept()

    def link(self, child_id: str, parent_id: str, rules: RuleSnapshot) -> Verdict:
        verdict = self.check_link(child_id, parent_id, rules)
        if verdict:
            self._parent[child_id] = parent_id
            self._children[parent_id].add(child_id)
        return verdict

    def unlink(self, child_id: str) -> Verdict:
        parent_id = self._parent.pop(child_id, None)
        if parent_id is not None:
            siblings = self._children[parent_id]
            siblings.discard(child_id)
            if not siblings:
                del self._children[parent_id]
        return Verdict.accept()

    def discard(self, assignment_id: str) -> None:
        """Forget a removed node. Its children become primaries of their own groups."""
        self.unlink(assignment_id)
        for child in list(self._children.pop(assignment_id, ())):
            self._parent.pop(child, None)

    def group(self, assignment_id: str) -> List[Assignment]:
        """Primary of the group first, then every descendant, pre-order by (position, id)."""
        primary = self.primary_of(assignment_id)
        return [self._assignments[i] for i in [primary] + self.descendants(primary)]

    def _ordered(self, ids) -> List[str]:
        return sorted(ids, key=lambda i: (self._assignments[i].position, i))
