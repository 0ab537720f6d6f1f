"""
Example: Extending CrewBoard with a custom constraint check

Checks share one signature, evaluate(mutation, state, rules) -> Verdict, and
are registered when the board is built. This one keeps crew members without
a night-work card off night shift jobs.
"""

from crewboard.engine.board import BoardService
from crewboard.engine.board_state import BoardState
from crewboard.engine.custom_constraints import ConstraintCheck, ConstraintRegistry, ProposedMutation
from crewboard.engine.default_rules import default_rule_tables
from crewboard.engine.rule_registry import RuleSnapshot
from crewboard.models.entities import PERSONNEL_TYPES, Job, Resource, ResourceType, RowType, Shift
from crewboard.models.verdict import ErrorKind, Verdict

NIGHT_CARD = "Night Work"


# 1. Define the check
class NightWorkCertificationCheck(ConstraintCheck):
    """People placed on a night shift job must hold the night-work card."""

    name = "night_work_certification"

    def evaluate(self, mutation: ProposedMutation, state: BoardState, rules: RuleSnapshot) -> Verdict:
        if state.jobs[mutation.job_id].shift != Shift.NIGHT:
            return Verdict.accept()
        for resource_id in mutation.resource_ids:
            resource = state.resources[resource_id]
            if resource.type in PERSONNEL_TYPES and not resource.holds(NIGHT_CARD):
                return Verdict.reject(
                    ErrorKind.CERTIFICATION_MISSING,
                    f"{resource.name or resource.id} needs {NIGHT_CARD} to work a night shift",
                )
        return Verdict.accept()


# 2. Start from the built-in checks and add the new one
constraints = ConstraintRegistry.default()
constraints.register_placement_check(NightWorkCertificationCheck())

# 3. Build the board with it
board = BoardService(constraints=constraints)
board.load_rules(default_rule_tables())
board.upsert_job(Job(id="job-1", name="Route 9 mill", shift=Shift.NIGHT, start_time="19:00"))
board.upsert_resource(Resource(id="op-7", type=ResourceType.OPERATOR, name="Op 7"))


if __name__ == "__main__":
    outcome = board.place_resource("op-7", "job-1", RowType.EQUIPMENT)
    print(outcome.kind, outcome.message)
