import pytest
from datetime import date

from crewboard.engine.board import BoardService
from crewboard.engine.board_state import BoardState
from crewboard.engine.rule_registry import RuleRegistry
from crewboard.models.entities import Assignment, Job, Resource, ResourceType as R, RowType, Shift
from crewboard.models.rules import DropRule, MagnetInteractionRule, RuleTables

WORK_DAY = date(2026, 10, 19)
NEXT_DAY = date(2026, 10, 20)


@pytest.fixture
def rule_tables():
    """Rules for an excavation board: operators run machines, a fuel truck can ride with an excavator."""
    magnet_rules = [
        MagnetInteractionRule(R.OPERATOR, R.EXCAVATOR, can_attach=True, is_required=True, max_count=1),
        MagnetInteractionRule(R.OPERATOR, R.PAVER, can_attach=True, is_required=True, max_count=1),
        MagnetInteractionRule(R.TRUCK, R.EXCAVATOR, can_attach=True, max_count=1),
        MagnetInteractionRule(R.DRIVER, R.TRUCK, can_attach=True, is_required=True, max_count=1),
        MagnetInteractionRule(R.LABORER, R.TRUCK, can_attach=True, max_count=1, required_credentials=("CDL",)),
    ]
    drop_rules = [
        DropRule(RowType.EQUIPMENT, frozenset({R.EXCAVATOR, R.PAVER, R.OPERATOR, R.TRUCK, R.DRIVER})),
        DropRule(RowType.CREW, frozenset({R.LABORER, R.STRIPER})),
        DropRule(RowType.TRUCKS, frozenset({R.TRUCK, R.DRIVER, R.LABORER})),
        DropRule(RowType.FORMAN, frozenset({R.FOREMAN}), capacity=1),
    ]
    return RuleTables.build(magnet_rules, drop_rules)


@pytest.fixture
def jobs():
    return [
        Job(id="job-day", name="Main St dig", shift=Shift.DAY, schedule_date=WORK_DAY),
        Job(id="job-day-2", name="Oak Ave patch", shift=Shift.DAY, start_time="06:30", schedule_date=WORK_DAY),
        Job(id="job-night", name="Route 9 mill", shift=Shift.NIGHT, start_time="19:00", schedule_date=WORK_DAY),
        Job(id="job-night-next", name="Route 9 pave", shift=Shift.NIGHT, start_time="19:00",
            schedule_date=NEXT_DAY),
    ]


@pytest.fixture
def resources():
    people = [
        Resource(id=f"op-{i}", type=R.OPERATOR, name=f"Operator {i}") for i in range(1, 4)
    ] + [
        Resource(id="drv-1", type=R.DRIVER, name="Dana Driver", skills=frozenset({"Heavy Vehicle Operation"})),
        Resource(id="lab-1", type=R.LABORER, name="Lee Laborer"),
        Resource(id="lab-cdl", type=R.LABORER, name="Casey Laborer", certifications=frozenset({"CDL"})),
        Resource(id="fm-1", type=R.FOREMAN, name="Foreman One"),
        Resource(id="fm-2", type=R.FOREMAN, name="Foreman Two"),
    ]
    machines = [
        Resource(id="ex-1", type=R.EXCAVATOR, name="EX-1", on_site=True),
        Resource(id="ex-2", type=R.EXCAVATOR, name="EX-2", on_site=True),
        Resource(id="ex-3", type=R.EXCAVATOR, name="EX-3"),
        Resource(id="pav-1", type=R.PAVER, name="PV-1"),
        Resource(id="tr-1", type=R.TRUCK, name="Fuel truck 10W"),
        Resource(id="tr-2", type=R.TRUCK, name="Dump truck 22"),
    ]
    return people + machines


@pytest.fixture
def board(rule_tables, jobs, resources):
    """Board with rules loaded, jobs and resources synced, no assignments."""
    service = BoardService(lock_timeout=1.0)
    service.load_rules(rule_tables)
    for job in jobs:
        service.upsert_job(job)
    for resource in resources:
        service.upsert_resource(resource)
    return service


@pytest.fixture
def excavator_group(board):
    """Excavator with an operator and a fuel truck attached, in the Equipment row of job-day."""
    ex = board.place_resource("ex-1", "job-day", RowType.EQUIPMENT).value
    op = board.place_resource("op-1", "job-day", RowType.EQUIPMENT, attach_to=ex.id).value
    truck = board.place_resource("tr-1", "job-day", RowType.EQUIPMENT, attach_to=ex.id).value
    return ex.id, op.id, truck.id


@pytest.fixture
def graph_state(rule_tables, resources):
    """Bare BoardState with a few assignments, for exercising the graph directly."""
    state = BoardState()
    for resource in resources:
        state.resources[resource.id] = resource
    layout = [
        ("a-ex1", "ex-1", 0),
        ("a-ex2", "ex-2", 1),
        ("a-op1", "op-1", 0),
        ("a-op2", "op-2", 1),
        ("a-tr1", "tr-1", 1),
        ("a-drv", "drv-1", 0),
    ]
    for assignment_id, resource_id, position in layout:
        state.put(Assignment(
            id=assignment_id,
            resource_id=resource_id,
            job_id="job-day",
            row_type=RowType.EQUIPMENT,
            position=position,
        ))
    return state, RuleRegistry(rule_tables).snapshot()
