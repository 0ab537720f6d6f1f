import logging
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Set, Union

from crewboard.engine.board_state import BoardState
from crewboard.engine.coordinator import MutationCoordinator, job_key, resource_key
from crewboard.engine.custom_constraints import ConstraintRegistry, MutationKind
from crewboard.engine.rule_registry import RuleRegistry, RuleSnapshot
from crewboard.engine.validator import AssignmentValidator, Decision, readiness_warnings
from crewboard.models.entities import (
    Assignment,
    AssignmentView,
    Job,
    Resource,
    RowType,
    TimeSlot,
    TruckConfig,
)
from crewboard.models.rules import RuleTables
from crewboard.models.verdict import ErrorKind, MutationRejected, Outcome, Verdict
from crewboard.utils.time_slots import default_time_slot, slot_warnings

logger = logging.getLogger(__name__)


class BoardService:
    """
    The rule engine as seen by the rest of the application. Construct one per
    process (or per board) and pass it to whoever needs it.

    Every operation returns an Outcome or a Verdict; rejections are values with
    a kind and a message, never exceptions.
    """

    def __init__(
        self,
        registry: Optional[RuleRegistry] = None,
        constraints: Optional[ConstraintRegistry] = None,
        lock_timeout: float = 5.0,
        default_end_time: str = "15:30",
    ):
        self.registry = registry or RuleRegistry()
        self.state = BoardState()
        self.validator = AssignmentValidator(constraints or ConstraintRegistry.default())
        self.coordinator = MutationCoordinator(self.state, self.registry, lock_timeout=lock_timeout)
        self.default_end_time = default_end_time

    # -- setup -------------------------------------------------------------

    def load_rules(self, tables: RuleTables) -> RuleSnapshot:
        return self.registry.load(tables)

    def upsert_resource(self, resource: Resource) -> Resource:
        with self.coordinator.locks.hold([resource_key(resource.id)], self.coordinator.lock_timeout):
            self.state.resources[resource.id] = resource
        return resource

    def upsert_job(self, job: Job) -> Job:
        with self.coordinator.locks.hold([job_key(job.id)], self.coordinator.lock_timeout):
            self.state.jobs[job.id] = job
        return job

    def set_on_site(self, resource_id: str, on_site: bool) -> Outcome[Resource]:
        with self.coordinator.locks.hold([resource_key(resource_id)], self.coordinator.lock_timeout):
            resource = self.state.resources.get(resource_id)
            if resource is None:
                return Outcome.failure(Verdict.reject(ErrorKind.NOT_FOUND, f"Resource {resource_id} not found"))
            resource = self.state.resources[resource_id] = replace(resource, on_site=on_site)
        return Outcome.success(resource)

    def job_version(self, job_id: str) -> int:
        return self.state.job_version(job_id)

    # -- engine operations ---------------------------------------------------

    def place_resource(
        self,
        resource_id: str,
        job_id: str,
        row_type: RowType,
        position: Optional[int] = None,
        attach_to: Optional[str] = None,
        time_slot: Optional[TimeSlot] = None,
        truck_config: Optional[TruckConfig] = None,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Outcome[AssignmentView]:
        state = self.state

        def keys() -> Set[str]:
            wanted = {job_key(job_id), resource_key(resource_id)}
            parent = state.assignments.get(attach_to) if attach_to else None
            if parent is not None:
                wanted.add(job_key(parent.job_id))
            return wanted

        def validate(rules: RuleSnapshot) -> Decision:
            duplicate = self._existing_placement(resource_id, job_id, row_type)
            if duplicate is not None:
                return Decision(Verdict.reject(
                    ErrorKind.ALREADY_ASSIGNED,
                    f"Resource {resource_id} is already in {row_type.value} row of job {job_id} ({duplicate})",
                ))
            return self.validator.validate_placement(
                state, rules, resource_id, job_id, row_type, attach_to, time_slot
            )

        def apply(rules: RuleSnapshot, decision: Decision) -> AssignmentView:
            job = state.jobs[job_id]
            if attach_to is not None:
                slot_position = len(state.graph.children_of(attach_to))
            elif position is not None:
                slot_position = position
            else:
                slot_position = state.next_position(job_id, row_type)
            assignment = Assignment(
                id=str(uuid.uuid4()),
                resource_id=resource_id,
                job_id=job_id,
                row_type=row_type,
                position=slot_position,
                time_slot=time_slot or default_time_slot(job, self.default_end_time),
                truck_config=truck_config,
                box_id=decision.box_id,
                note=note,
            )
            state.put(assignment)
            if attach_to is not None:
                linked = state.graph.link(assignment.id, attach_to, rules)
                if not linked:
                    state.drop(assignment.id)
                    raise MutationRejected(linked)
            return state.view(assignment.id)

        return self.coordinator.execute(
            MutationKind.PLACE, keys, validate, apply, self._expect(job_id, expected_version)
        )

    def can_place(
        self,
        resource_id: str,
        job_id: str,
        row_type: RowType,
        attach_to: Optional[str] = None,
    ) -> Verdict:
        """Dry run of place_resource: same checks, same locks, no writes."""
        state = self.state
        try:
            rules = self.registry.snapshot()
            wanted = {job_key(job_id), resource_key(resource_id)}
            parent = state.assignments.get(attach_to) if attach_to else None
            if parent is not None:
                wanted.add(job_key(parent.job_id))

            def decide() -> Verdict:
                duplicate = self._existing_placement(resource_id, job_id, row_type)
                if duplicate is not None:
                    return Verdict.reject(
                        ErrorKind.ALREADY_ASSIGNED,
                        f"Resource {resource_id} is already in {row_type.value} row of job {job_id}",
                    )
                return self.validator.validate_placement(state, rules, resource_id, job_id, row_type, attach_to).verdict

            return self.coordinator.read(wanted, decide)
        except MutationRejected as rejected:
            return rejected.verdict

    def attach(self, assignment_id: str, parent_id: str) -> Outcome[List[AssignmentView]]:
        """Attach an existing assignment, with anything already hanging from it, to parent_id."""
        state = self.state

        def keys() -> Set[str]:
            child = state.require_assignment(assignment_id)
            parent = state.require_assignment(parent_id)
            subtree = [assignment_id] + state.graph.descendants(assignment_id)
            wanted = {job_key(child.job_id), job_key(parent.job_id)}
            wanted.update(resource_key(state.assignments[i].resource_id) for i in subtree)
            return wanted

        def validate(rules: RuleSnapshot) -> Decision:
            return self.validator.validate_attach(state, rules, assignment_id, parent_id)

        def apply(rules: RuleSnapshot, decision: Decision) -> List[AssignmentView]:
            parent = state.assignments[parent_id]
            subtree = [assignment_id] + state.graph.descendants(assignment_id)
            originals = {i: state.assignments[i] for i in subtree}
            changed: Dict[str, Assignment] = {}
            for member_id in subtree:
                member = state.assignments[member_id]
                updates = {"job_id": parent.job_id, "row_type": parent.row_type, "box_id": decision.box_id}
                if member.job_id != parent.job_id:
                    updates["time_slot"] = parent.time_slot
                changed[member_id] = replace(member, **updates)
            if state.graph.parent_of(assignment_id) != parent_id:
                changed[assignment_id] = replace(
                    changed[assignment_id], position=len(state.graph.children_of(parent_id))
                )
            state.put_all(changed.values())
            linked = state.graph.link(assignment_id, parent_id, rules)
            if not linked:
                state.put_all(originals.values())
                raise MutationRejected(linked)
            return [state.view(i) for i in subtree]

        return self.coordinator.execute(MutationKind.ATTACH, keys, validate, apply)

    def detach(self, assignment_id: str) -> Outcome[AssignmentView]:
        """
        Break the link to the parent. The detached magnet becomes a primary in
        its row and takes a slot there, with anything still hanging below it.
        Detaching an unattached assignment is a no-op.
        """
        state = self.state

        def keys() -> Set[str]:
            return {job_key(state.require_assignment(assignment_id).job_id)}

        def validate(rules: RuleSnapshot) -> Union[Decision, Verdict]:
            state.require_assignment(assignment_id)
            if state.graph.is_primary(assignment_id):
                return Verdict.accept()
            return self.validator.validate_detach(state, rules, assignment_id)

        def apply(rules: RuleSnapshot, decision: Decision) -> AssignmentView:
            if not state.graph.is_primary(assignment_id):
                assignment = state.assignments[assignment_id]
                position = state.next_position(assignment.job_id, assignment.row_type, exclude=[assignment_id])
                state.graph.unlink(assignment_id)
                state.put(replace(assignment, position=position, box_id=decision.box_id))
                state.put_all(
                    replace(state.assignments[i], box_id=decision.box_id)
                    for i in state.graph.descendants(assignment_id)
                )
            return state.view(assignment_id)

        return self.coordinator.execute(MutationKind.DETACH, keys, validate, apply)

    def move_group(
        self,
        assignment_ids: Sequence[str],
        target_job_id: str,
        target_row_type: RowType,
        target_position: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> Outcome[List[AssignmentView]]:
        """
        Move a whole attachment group. The ids may name any members of one group;
        the rest of the group is implied by the graph and moves with them.
        """
        state = self.state

        def resolve() -> List[Assignment]:
            if not assignment_ids:
                raise MutationRejected.of(ErrorKind.INVALID_GROUP, "No assignments given to move")
            for assignment_id in assignment_ids:
                state.require_assignment(assignment_id)
            primaries = {state.graph.primary_of(i) for i in assignment_ids}
            if len(primaries) > 1:
                raise MutationRejected.of(
                    ErrorKind.INVALID_GROUP,
                    f"Assignments belong to {len(primaries)} different groups; move them one group at a time",
                )
            return state.graph.group(primaries.pop())

        def keys() -> Set[str]:
            group = resolve()
            wanted = {job_key(target_job_id)}
            wanted.update(job_key(a.job_id) for a in group)
            wanted.update(resource_key(a.resource_id) for a in group)
            return wanted

        def validate(rules: RuleSnapshot) -> Decision:
            return self.validator.validate_group_move(state, rules, resolve(), target_job_id, target_row_type)

        def apply(rules: RuleSnapshot, decision: Decision) -> List[AssignmentView]:
            group = resolve()
            member_ids = [a.id for a in group]
            target_job = state.jobs[target_job_id]
            primary = group[0]
            sibling_index = {}
            for member in group:
                for index, child_id in enumerate(state.graph.children_of(member.id)):
                    sibling_index[child_id] = index
            if target_position is not None:
                primary_position = target_position
            else:
                primary_position = state.next_position(target_job_id, target_row_type, exclude=member_ids)
            moved: Dict[str, Assignment] = {}
            for member in group:
                updates = {
                    "job_id": target_job_id,
                    "row_type": target_row_type,
                    "box_id": decision.box_id,
                    "position": primary_position if member.id == primary.id else sibling_index[member.id],
                }
                if member.job_id != target_job_id:
                    updates["time_slot"] = default_time_slot(target_job, self.default_end_time)
                moved[member.id] = replace(member, **updates)
            state.put_all(moved.values())
            return [state.view(i) for i in member_ids]

        return self.coordinator.execute(
            MutationKind.MOVE_GROUP, keys, validate, apply, self._expect(target_job_id, expected_version)
        )

    def update_time_slot(self, assignment_id: str, time_slot: TimeSlot) -> Outcome[AssignmentView]:
        state = self.state

        def keys() -> Set[str]:
            assignment = state.require_assignment(assignment_id)
            return {job_key(assignment.job_id), resource_key(assignment.resource_id)}

        def validate(rules: RuleSnapshot) -> Verdict:
            verdict = self.validator.validate_time_slot(state, assignment_id, time_slot)
            if not verdict:
                return verdict
            assignment = state.assignments[assignment_id]
            job = state.jobs[assignment.job_id]
            same_day = [
                a for a in state.resource_assignments(assignment.resource_id, exclude=[assignment_id])
                if a.job_id in state.jobs and state.jobs[a.job_id].schedule_date == job.schedule_date
            ]
            return Verdict.accept(tuple(slot_warnings(time_slot, same_day, state.jobs)))

        def apply(rules: RuleSnapshot, decision: Decision) -> AssignmentView:
            state.put(replace(state.assignments[assignment_id], time_slot=time_slot))
            return state.view(assignment_id)

        return self.coordinator.execute(MutationKind.UPDATE_TIME_SLOT, keys, validate, apply)

    def remove_assignment(self, assignment_id: str) -> Outcome[List[str]]:
        """Remove an assignment and everything attached below it."""
        state = self.state

        def keys() -> Set[str]:
            assignment = state.require_assignment(assignment_id)
            subtree = [assignment_id] + state.graph.descendants(assignment_id)
            wanted = {job_key(assignment.job_id)}
            wanted.update(resource_key(state.assignments[i].resource_id) for i in subtree)
            return wanted

        def validate(rules: RuleSnapshot) -> Verdict:
            return self.validator.validate_edit(state, assignment_id)

        def apply(rules: RuleSnapshot, decision: Decision) -> List[str]:
            removed = [assignment_id] + state.graph.descendants(assignment_id)
            for node in reversed(removed):
                state.graph.discard(node)
                state.drop(node)
            return removed

        return self.coordinator.execute(MutationKind.REMOVE, keys, validate, apply)

    def finalize_job(self, job_id: str) -> Outcome[Job]:
        state = self.state

        def validate(rules: RuleSnapshot) -> Verdict:
            return self.validator.validate_finalize(state, rules, job_id)

        def apply(rules: RuleSnapshot, decision: Decision) -> Job:
            job = state.jobs[job_id] = replace(state.jobs[job_id], finalized=True)
            return job

        return self.coordinator.execute(MutationKind.FINALIZE, lambda: {job_key(job_id)}, validate, apply)

    def unfinalize_job(self, job_id: str) -> Outcome[Job]:
        state = self.state

        def validate(rules: RuleSnapshot) -> Verdict:
            state.require_job(job_id)
            return Verdict.accept()

        def apply(rules: RuleSnapshot, decision: Decision) -> Job:
            job = state.jobs[job_id] = replace(state.jobs[job_id], finalized=False)
            return job

        return self.coordinator.execute(MutationKind.FINALIZE, lambda: {job_key(job_id)}, validate, apply)

    # -- reads ---------------------------------------------------------------

    def group(self, assignment_id: str) -> Outcome[List[AssignmentView]]:
        def read() -> List[AssignmentView]:
            self.state.require_assignment(assignment_id)
            return [self.state.view(a.id) for a in self.state.graph.group(assignment_id)]

        return self._read(lambda: {job_key(self.state.require_assignment(assignment_id).job_id)}, read)

    def job_assignments(self, job_id: str) -> Outcome[List[AssignmentView]]:
        def read() -> List[AssignmentView]:
            self.state.require_job(job_id)
            return [self.state.view(a.id) for a in self.state.job_assignments(job_id)]

        return self._read(lambda: {job_key(job_id)}, read)

    def job_readiness(self, job_id: str) -> Outcome[List[str]]:
        """Non-blocking list of what finalize_job would currently complain about."""
        def read() -> List[str]:
            self.state.require_job(job_id)
            return readiness_warnings(self.state, self.registry.snapshot(), job_id)

        return self._read(lambda: {job_key(job_id)}, read)

    def is_working_double(self, resource_id: str) -> Outcome[bool]:
        """True if the resource sits on both a day and a night job on the same date."""
        def read() -> bool:
            shifts_by_date: Dict[object, set] = {}
            for assignment in self.state.resource_assignments(resource_id):
                job = self.state.jobs.get(assignment.job_id)
                if job is not None:
                    shifts_by_date.setdefault(job.schedule_date, set()).add(job.shift)
            return any(len(shifts) > 1 for shifts in shifts_by_date.values())

        return self._read(lambda: {resource_key(resource_id)}, read)

    # -- helpers ---------------------------------------------------------------

    def _read(self, keys, fn) -> Outcome:
        try:
            self.registry.snapshot()
            return Outcome.success(self.coordinator.read(keys(), fn))
        except MutationRejected as rejected:
            return Outcome.failure(rejected.verdict)

    def _existing_placement(self, resource_id: str, job_id: str, row_type: RowType) -> Optional[str]:
        for assignment in self.state.resource_assignments(resource_id):
            if assignment.job_id == job_id and assignment.row_type == row_type:
                return assignment.id
        return None

    @staticmethod
    def _expect(job_id: str, expected_version: Optional[int]) -> Optional[Dict[str, int]]:
        return None if expected_version is None else {job_id: expected_version}
