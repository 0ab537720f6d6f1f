import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from crewboard.engine.board_state import BoardState
from crewboard.engine.rule_registry import RuleSnapshot
from crewboard.models.entities import Job, ResourceType, RowType
from crewboard.models.verdict import ErrorKind, Verdict

logger = logging.getLogger(__name__)


class MutationKind(str, Enum):
    PLACE = "place"
    ATTACH = "attach"
    DETACH = "detach"
    MOVE_GROUP = "move_group"
    UPDATE_TIME_SLOT = "update_time_slot"
    REMOVE = "remove"
    FINALIZE = "finalize"


@dataclass(frozen=True)
class ProposedMutation:
    """
    What a caller wants to happen, resolved against the board.

    ``resource_ids`` are the resources that end up in ``job_id``;
    ``moving_ids`` are existing assignments the mutation relocates, which
    checks must not count as conflicts with themselves.
    """

    kind: MutationKind
    job_id: str
    row_type: Optional[RowType] = None
    resource_ids: Tuple[str, ...] = ()
    parent_id: Optional[str] = None
    moving_ids: Tuple[str, ...] = ()


class ConstraintCheck(ABC):
    """
    Base class for business rules that are not simple attachment or drop rules.
    Checks are pure: they read the board and the rules and return a Verdict.
    """

    name = "constraint"

    @abstractmethod
    def evaluate(self, mutation: ProposedMutation, state: BoardState, rules: RuleSnapshot) -> Verdict:
        pass


class DoubleShiftCheck(ConstraintCheck):
    """A resource may not work a day job and a night job on the same date."""

    name = "double_shift"

    def evaluate(self, mutation: ProposedMutation, state: BoardState, rules: RuleSnapshot) -> Verdict:
        target = state.jobs[mutation.job_id]
        for resource_id in mutation.resource_ids:
            for other in state.resource_assignments(resource_id, exclude=mutation.moving_ids):
                other_job = state.jobs.get(other.job_id)
                if other_job is None or not _same_day(other_job, target):
                    continue
                if other_job.shift != target.shift:
                    resource = state.resources[resource_id]
                    return Verdict.reject(
                        ErrorKind.SHIFT_CONFLICT,
                        f"{resource.name or resource_id} is already on {other_job.shift.value} shift job "
                        f"{other_job.name or other_job.id} that day and cannot work the "
                        f"{target.shift.value} shift",
                    )
        return Verdict.accept()


class CredentialCheck(ConstraintCheck):
    """Some attachments require the source resource to hold a certification or skill (e.g. CDL)."""

    name = "credentials"

    def evaluate(self, mutation: ProposedMutation, state: BoardState, rules: RuleSnapshot) -> Verdict:
        if mutation.parent_id is None or mutation.kind not in (MutationKind.PLACE, MutationKind.ATTACH):
            return Verdict.accept()
        target_type = state.resource_type_of(mutation.parent_id)
        for resource_id in mutation.resource_ids[:1]:
            resource = state.resources[resource_id]
            rule = rules.rule_for(resource.type, target_type)
            if rule is None:
                continue
            missing = [c for c in rule.required_credentials if not resource.holds(c)]
            if missing:
                return Verdict.reject(
                    ErrorKind.CERTIFICATION_MISSING,
                    f"{resource.type.value} {resource.name or resource.id} needs {', '.join(missing)} "
                    f"to attach to a {target_type.value}",
                )
        return Verdict.accept()


class RequiredAttachmentCheck(ConstraintCheck):
    """Every assignment whose type has required attachments must have them before the job finalizes."""

    name = "required_attachments"

    def evaluate(self, mutation: ProposedMutation, state: BoardState, rules: RuleSnapshot) -> Verdict:
        for assignment in state.job_assignments(mutation.job_id):
            missing = missing_required_attachments(assignment.id, state, rules)
            if missing:
                resource = state.resource_of(assignment.id)
                return Verdict.reject(
                    ErrorKind.MISSING_REQUIRED_ATTACHMENT,
                    f"Assignment {assignment.id} ({resource.type.value} {resource.name or resource.id}) "
                    f"is missing required attachment(s): {', '.join(t.value for t in missing)}",
                )
        return Verdict.accept()


def missing_required_attachments(assignment_id: str, state: BoardState, rules: RuleSnapshot) -> List[ResourceType]:
    required = rules.required_sources(state.resource_type_of(assignment_id))
    if not required:
        return []
    attached = {state.resource_type_of(c) for c in state.graph.children_of(assignment_id)}
    return [t for t in required if t not in attached]


def _same_day(a: Job, b: Job) -> bool:
    return a.schedule_date == b.schedule_date


class ConstraintRegistry:
    """
    The checks the validator runs. Populated once when the engine is built;
    placement checks run on every placement, attach and group move, finalize
    checks only when a job is finalized.
    """

    def __init__(self):
        self.placement_checks: List[ConstraintCheck] = []
        self.finalize_checks: List[ConstraintCheck] = []

    def register_placement_check(self, check: ConstraintCheck):
        self.placement_checks.append(check)

    def register_finalize_check(self, check: ConstraintCheck):
        self.finalize_checks.append(check)

    def evaluate_placement(self, mutation: ProposedMutation, state: BoardState, rules: RuleSnapshot) -> Verdict:
        return _first_failure(self.placement_checks, mutation, state, rules)

    def evaluate_finalize(self, mutation: ProposedMutation, state: BoardState, rules: RuleSnapshot) -> Verdict:
        return _first_failure(self.finalize_checks, mutation, state, rules)

    @classmethod
    def default(cls) -> "ConstraintRegistry":
        registry = cls()
        registry.register_placement_check(DoubleShiftCheck())
        registry.register_placement_check(CredentialCheck())
        registry.register_finalize_check(RequiredAttachmentCheck())
        return registry


def _first_failure(checks, mutation, state, rules) -> Verdict:
    for check in checks:
        verdict = check.evaluate(mutation, state, rules)
        if not verdict:
            logger.debug(f"Check {check.name} rejected {mutation.kind.value} on {mutation.job_id}: {verdict.message}")
            return verdict
    return Verdict.accept()
