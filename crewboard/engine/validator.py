"""
Assignment Validator

The single decision point for "may this placement, attachment or move
happen now". A caller-supplied time slot must be well formed before any
rule is consulted. After that, checks run in a fixed order and the first
failure is the reported reason:

1. Row admission: the resource type must be allowed in the target row,
   using the job's row config when one exists, else the global drop rule.
2. Capacity: the row (or the chosen box of a split row) must have room.
   Attached magnets ride with their primary and do not take a slot.
3. Attachment: when a parent is named, the magnet rule for
   (source type, parent type) must allow it and its max count must not
   be reached.
4. Custom constraint checks (double shift, credentials).

Validation never writes. The MutationCoordinator calls it inside the
critical section and applies the change only on acceptance.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from crewboard.engine.board_state import BoardState
from crewboard.engine.custom_constraints import (
    ConstraintRegistry,
    MutationKind,
    ProposedMutation,
    missing_required_attachments,
)
from crewboard.engine.rule_registry import RuleSnapshot
from crewboard.models.entities import Assignment, Job, Resource, ResourceType, RowType, TimeSlot
from crewboard.models.verdict import ErrorKind, MutationRejected, Verdict
from crewboard.utils.time_slots import slot_error


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    box_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.verdict.accepted


class AssignmentValidator:
    def __init__(self, constraints: ConstraintRegistry):
        self.constraints = constraints

    # -- public decisions --------------------------------------------------

    def validate_placement(
        self,
        state: BoardState,
        rules: RuleSnapshot,
        resource_id: str,
        job_id: str,
        row_type: RowType,
        parent_id: Optional[str] = None,
        time_slot: Optional[TimeSlot] = None,
    ) -> Decision:
        try:
            resource = state.require_resource(resource_id)
            job = state.require_job(job_id)
            self._require_open(job)
            if time_slot is not None:
                self._require_slot(time_slot)
            self._require_admitted(rules, resource.type, job_id, row_type)
            if parent_id is None:
                box_id = self._require_room(state, rules, resource.type, job_id, row_type)
            else:
                parent = self._require_attachable(state, rules, resource, job_id, row_type, parent_id)
                box_id = parent.box_id
            mutation = ProposedMutation(
                kind=MutationKind.PLACE,
                job_id=job_id,
                row_type=row_type,
                resource_ids=(resource_id,),
                parent_id=parent_id,
            )
            self._require(self.constraints.evaluate_placement(mutation, state, rules))
        except MutationRejected as rejected:
            return Decision(rejected.verdict)
        return Decision(Verdict.accept(self._placement_warnings(rules, resource.type)), box_id)

    def validate_attach(self, state: BoardState, rules: RuleSnapshot, child_id: str, parent_id: str) -> Decision:
        """Attach an existing assignment (and whatever hangs below it) to another one."""
        try:
            child = state.require_assignment(child_id)
            parent = state.require_assignment(parent_id)
            self._require_open(state.require_job(child.job_id))
            self._require_open(state.require_job(parent.job_id))
            resource = state.resource_of(child_id)
            self._require_admitted(rules, resource.type, parent.job_id, parent.row_type)
            self._require_attachable(state, rules, resource, parent.job_id, parent.row_type, parent_id,
                                     already_attached_to=state.graph.parent_of(child_id))
            self._require(state.graph.check_link(child_id, parent_id, rules))
            subtree = [child_id] + state.graph.descendants(child_id)
            mutation = ProposedMutation(
                kind=MutationKind.ATTACH,
                job_id=parent.job_id,
                row_type=parent.row_type,
                resource_ids=tuple(state.assignments[i].resource_id for i in subtree),
                parent_id=parent_id,
                moving_ids=tuple(subtree),
            )
            self._require(self.constraints.evaluate_placement(mutation, state, rules))
        except MutationRejected as rejected:
            return Decision(rejected.verdict)
        return Decision(Verdict.accept(), parent.box_id)

    def validate_group_move(
        self,
        state: BoardState,
        rules: RuleSnapshot,
        group: List[Assignment],
        target_job_id: str,
        target_row_type: RowType,
    ) -> Decision:
        """
        Only the primary is checked against the target row; attached members keep
        their attachments without re-validation. Every member's resource still
        goes through the custom checks for the target job.
        """
        primary = group[0]
        member_ids = [a.id for a in group]
        try:
            target_job = state.require_job(target_job_id)
            self._require_open(state.require_job(primary.job_id))
            self._require_open(target_job)
            primary_type = state.resource_type_of(primary.id)
            self._require_admitted(rules, primary_type, target_job_id, target_row_type)
            box_id = self._require_room(state, rules, primary_type, target_job_id, target_row_type,
                                        exclude=member_ids)
            mutation = ProposedMutation(
                kind=MutationKind.MOVE_GROUP,
                job_id=target_job_id,
                row_type=target_row_type,
                resource_ids=tuple(dict.fromkeys(a.resource_id for a in group)),
                moving_ids=tuple(member_ids),
            )
            self._require(self.constraints.evaluate_placement(mutation, state, rules))
        except MutationRejected as rejected:
            return Decision(rejected.verdict)
        return Decision(Verdict.accept(), box_id)

    def validate_finalize(self, state: BoardState, rules: RuleSnapshot, job_id: str) -> Verdict:
        try:
            state.require_job(job_id)
        except MutationRejected as rejected:
            return rejected.verdict
        mutation = ProposedMutation(kind=MutationKind.FINALIZE, job_id=job_id)
        return self.constraints.evaluate_finalize(mutation, state, rules)

    def validate_time_slot(self, state: BoardState, assignment_id: str, slot: TimeSlot) -> Verdict:
        try:
            assignment = state.require_assignment(assignment_id)
            self._require_open(state.require_job(assignment.job_id))
            self._require_slot(slot)
        except MutationRejected as rejected:
            return rejected.verdict
        return Verdict.accept()

    def validate_detach(self, state: BoardState, rules: RuleSnapshot, assignment_id: str) -> Decision:
        """A detached magnet becomes a primary, so it must be admitted in its row and find room there."""
        try:
            assignment = state.require_assignment(assignment_id)
            self._require_open(state.require_job(assignment.job_id))
            resource_type = state.resource_type_of(assignment_id)
            self._require_admitted(rules, resource_type, assignment.job_id, assignment.row_type)
            box_id = self._require_room(state, rules, resource_type, assignment.job_id, assignment.row_type,
                                        exclude=[assignment_id])
        except MutationRejected as rejected:
            return Decision(rejected.verdict)
        return Decision(Verdict.accept(), box_id)

    def validate_edit(self, state: BoardState, assignment_id: str) -> Verdict:
        """Remove only needs the assignment to exist in an open job."""
        try:
            assignment = state.require_assignment(assignment_id)
            self._require_open(state.require_job(assignment.job_id))
        except MutationRejected as rejected:
            return rejected.verdict
        return Verdict.accept()

    # -- steps -------------------------------------------------------------

    @staticmethod
    def _require(verdict: Verdict) -> None:
        if not verdict:
            raise MutationRejected(verdict)

    @staticmethod
    def _require_open(job: Job) -> None:
        if job.finalized:
            raise MutationRejected.of(
                ErrorKind.JOB_FINALIZED,
                f"Job {job.name or job.id} is finalized; unfinalize it before making changes",
            )

    @staticmethod
    def _require_slot(slot: TimeSlot) -> None:
        error = slot_error(slot)
        if error:
            raise MutationRejected.of(ErrorKind.INVALID_TIME_SLOT, error)

    @staticmethod
    def _require_admitted(rules: RuleSnapshot, resource_type: ResourceType, job_id: str, row_type: RowType) -> None:
        if not rules.is_allowed(resource_type, job_id, row_type):
            raise MutationRejected.of(
                ErrorKind.TYPE_NOT_ALLOWED,
                f"{resource_type.value} cannot be dropped into {row_type.value} row",
            )

    @staticmethod
    def _require_room(
        state: BoardState,
        rules: RuleSnapshot,
        resource_type: ResourceType,
        job_id: str,
        row_type: RowType,
        exclude: Iterable[str] = (),
    ) -> Optional[str]:
        """Return the box the primary lands in (None for an unsplit row)."""
        occupants = state.row_primaries(job_id, row_type, exclude)
        if rules.job_row_config(job_id, row_type) is not None:
            boxes = rules.candidate_boxes(resource_type, job_id, row_type)
            for box in boxes:
                used = sum(1 for a in occupants if a.box_id == box.id)
                if box.capacity is None or used < box.capacity:
                    return box.id
            names = ", ".join(b.name for b in boxes)
            raise MutationRejected.of(ErrorKind.ROW_AT_CAPACITY, f"{row_type.value} row is full ({names})")
        capacity = rules.row_capacity(row_type)
        if capacity is not None and len(occupants) >= capacity:
            raise MutationRejected.of(
                ErrorKind.ROW_AT_CAPACITY,
                f"{row_type.value} row is at capacity ({capacity})",
            )
        return None

    @staticmethod
    def _require_attachable(
        state: BoardState,
        rules: RuleSnapshot,
        resource: Resource,
        job_id: str,
        row_type: RowType,
        parent_id: str,
        already_attached_to: Optional[str] = None,
    ) -> Assignment:
        parent = state.require_assignment(parent_id)
        parent_type = state.resource_type_of(parent_id)
        if parent.job_id != job_id or parent.row_type != row_type:
            raise MutationRejected.of(
                ErrorKind.ATTACHMENT_NOT_ALLOWED,
                f"Attached magnets must sit in their parent's row ({parent.job_id}/{parent.row_type.value})",
            )
        rule = rules.rule_for(resource.type, parent_type)
        if rule is None or not rule.can_attach:
            raise MutationRejected.of(
                ErrorKind.ATTACHMENT_NOT_ALLOWED,
                f"Cannot attach {resource.type.value} to {parent_type.value}. "
                f"Rule not found or attachment not allowed.",
            )
        if rule.max_count is not None and already_attached_to != parent_id:
            if state.graph.count_children_of_type(parent_id, resource.type) >= rule.max_count:
                raise MutationRejected.of(
                    ErrorKind.MAX_ATTACHMENTS_EXCEEDED,
                    f"Maximum {rule.max_count} {resource.type.value}(s) already attached to this "
                    f"{parent_type.value}.",
                )
        return parent

    @staticmethod
    def _placement_warnings(rules: RuleSnapshot, resource_type: ResourceType) -> Tuple[str, ...]:
        return tuple(
            f"{resource_type.value} needs a {required.value} attached before the job can be finalized"
            for required in rules.required_sources(resource_type)
        )


def readiness_warnings(state: BoardState, rules: RuleSnapshot, job_id: str) -> List[str]:
    """Soft, non-blocking view of what finalize would reject."""
    warnings = []
    for assignment in state.job_assignments(job_id):
        missing = missing_required_attachments(assignment.id, state, rules)
        if missing:
            warnings.append(f"{assignment.id} missing {', '.join(t.value for t in missing)}")
    return warnings
