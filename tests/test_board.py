import random
from collections import Counter

import pytest

from crewboard.engine.board import BoardService
from crewboard.engine.coordinator import MutationStatus
from crewboard.models.entities import Job, Resource, ResourceType, RowType, TimeSlot
from crewboard.models.rules import DropRule, JobRowBox, JobRowConfig, MagnetInteractionRule, RuleTables
from crewboard.models.verdict import ErrorKind


def positions(board, job_id):
    return {v.id: (v.assignment.row_type, v.assignment.position, v.attached_to)
            for v in board.job_assignments(job_id).value}


def excavation_lot(capacity=None, configs=()):
    """One job whose Equipment row takes excavators and operators, operators riding one per machine."""
    board = BoardService(lock_timeout=1.0)
    board.load_rules(RuleTables.build(
        [MagnetInteractionRule(ResourceType.OPERATOR, ResourceType.EXCAVATOR, can_attach=True, max_count=1)],
        [DropRule(RowType.EQUIPMENT, frozenset({ResourceType.EXCAVATOR, ResourceType.OPERATOR}), capacity=capacity)],
        list(configs),
    ))
    board.upsert_job(Job(id="lot"))
    board.upsert_resource(Resource(id="ex", type=ResourceType.EXCAVATOR))
    for op_id in ("op-a", "op-b"):
        board.upsert_resource(Resource(id=op_id, type=ResourceType.OPERATOR))
    return board


def assert_board_invariants(board):
    state = board.state
    rules = board.registry.snapshot()
    for assignment_id, assignment in state.assignments.items():
        seen = {assignment_id}
        node = state.graph.parent_of(assignment_id)
        while node is not None:
            assert node not in seen, "cycle in attachment graph"
            assert node in state.assignments
            seen.add(node)
            node = state.graph.parent_of(node)

        parent_id = state.graph.parent_of(assignment_id)
        if parent_id is not None:
            parent = state.assignments[parent_id]
            assert (assignment.job_id, assignment.row_type) == (parent.job_id, parent.row_type)

        parent_type = state.resource_type_of(assignment_id)
        counts = Counter(state.resource_type_of(c) for c in state.graph.children_of(assignment_id))
        for child_type, n in counts.items():
            limit = rules.max_count(child_type, parent_type)
            assert limit is None or n <= limit, f"{n} {child_type.value} on one {parent_type.value}"

    for job_id in state.jobs:
        indexed = {a.id for a in state.job_assignments(job_id)}
        assert indexed == {i for i, a in state.assignments.items() if a.job_id == job_id}
        for row_type in RowType:
            capacity = rules.row_capacity(row_type)
            if capacity is not None:
                assert len(state.row_primaries(job_id, row_type)) <= capacity

    for resource_id in state.resources:
        assert board.is_working_double(resource_id).value is False


class TestRulesNotLoaded:
    def test_operations_fail_until_rules_load(self, rule_tables):
        board = BoardService()
        board.upsert_job(Job(id="j1"))
        board.upsert_resource(Resource(id="ex", type=ResourceType.EXCAVATOR))

        assert board.place_resource("ex", "j1", RowType.EQUIPMENT).kind == ErrorKind.RULE_NOT_LOADED
        assert board.can_place("ex", "j1", RowType.EQUIPMENT).kind == ErrorKind.RULE_NOT_LOADED
        assert board.job_assignments("j1").kind == ErrorKind.RULE_NOT_LOADED

        board.load_rules(rule_tables)

        assert board.place_resource("ex", "j1", RowType.EQUIPMENT).ok


class TestAttachExisting:
    def test_attach_primary_to_parent(self, board):
        ex = board.place_resource("ex-1", "job-day", RowType.EQUIPMENT).value
        op = board.place_resource("op-1", "job-day", RowType.EQUIPMENT).value

        outcome = board.attach(op.id, ex.id)

        assert outcome.ok
        assert outcome.value[0].attached_to == ex.id
        assert outcome.value[0].assignment.position == 0

    def test_attach_brings_subtree_along(self, board):
        ex = board.place_resource("ex-1", "job-day", RowType.EQUIPMENT).value
        truck = board.place_resource("tr-1", "job-day", RowType.EQUIPMENT).value
        driver = board.place_resource("drv-1", "job-day", RowType.EQUIPMENT, attach_to=truck.id).value

        outcome = board.attach(truck.id, ex.id)

        assert outcome.ok
        assert [v.id for v in outcome.value] == [truck.id, driver.id]
        assert [v.id for v in board.group(driver.id).value] == [ex.id, truck.id, driver.id]

    def test_attached_assignment_cannot_take_second_parent(self, board):
        ex1 = board.place_resource("ex-1", "job-day", RowType.EQUIPMENT).value
        ex2 = board.place_resource("ex-2", "job-day", RowType.EQUIPMENT).value
        op = board.place_resource("op-1", "job-day", RowType.EQUIPMENT, attach_to=ex1.id).value

        outcome = board.attach(op.id, ex2.id)

        assert outcome.kind == ErrorKind.CYCLE_DETECTED
        assert board.group(op.id).value[0].id == ex1.id

    def test_attach_to_unknown_assignment(self, board):
        op = board.place_resource("op-1", "job-day", RowType.EQUIPMENT).value
        assert board.attach(op.id, "missing").kind == ErrorKind.NOT_FOUND


class TestDetach:
    def test_detach_makes_child_primary(self, board, excavator_group):
        ex_id, op_id, _ = excavator_group

        outcome = board.detach(op_id)

        assert outcome.ok
        assert outcome.value.attached_to is None
        assert op_id not in board.group(ex_id).value[0].attachments

    def test_detach_twice_is_a_noop(self, board, excavator_group):
        _, op_id, _ = excavator_group
        assert board.detach(op_id).ok
        before = positions(board, "job-day")

        second = board.detach(op_id)

        assert second.ok
        assert second.value.attached_to is None
        assert positions(board, "job-day") == before

    def test_detach_primary_is_a_noop(self, board, excavator_group):
        ex_id, _, _ = excavator_group
        before = positions(board, "job-day")

        assert board.detach(ex_id).ok
        assert positions(board, "job-day") == before

    def test_detach_into_full_row_is_rejected(self):
        board = excavation_lot(capacity=1)
        ex = board.place_resource("ex", "lot", RowType.EQUIPMENT).value
        op = board.place_resource("op-a", "lot", RowType.EQUIPMENT, attach_to=ex.id).value

        outcome = board.detach(op.id)

        assert outcome.kind == ErrorKind.ROW_AT_CAPACITY
        assert [v.id for v in board.group(ex.id).value] == [ex.id, op.id]
        assert len(board.state.row_primaries("lot", RowType.EQUIPMENT)) == 1

    def test_detached_magnet_moves_to_a_box_that_takes_it(self):
        config = JobRowConfig(
            job_id="lot",
            row_type=RowType.EQUIPMENT,
            boxes=(
                JobRowBox(id="machines", name="Machines", allowed_types=frozenset({ResourceType.EXCAVATOR}),
                          capacity=1),
                JobRowBox(id="people", name="People", allowed_types=frozenset({ResourceType.OPERATOR}),
                          capacity=1),
            ),
        )
        board = excavation_lot(configs=[config])
        ex = board.place_resource("ex", "lot", RowType.EQUIPMENT).value
        first = board.place_resource("op-a", "lot", RowType.EQUIPMENT, attach_to=ex.id).value
        assert first.assignment.box_id == "machines"

        detached = board.detach(first.id)
        second = board.place_resource("op-b", "lot", RowType.EQUIPMENT, attach_to=ex.id).value
        full = board.detach(second.id)

        assert detached.value.assignment.box_id == "people"
        assert full.kind == ErrorKind.ROW_AT_CAPACITY
        assert board.group(second.id).value[0].id == ex.id


class TestMoveGroup:
    def test_rejected_move_leaves_every_member_in_place(self, board, excavator_group):
        before = positions(board, "job-day")

        # Crew row does not take excavators
        outcome = board.move_group([excavator_group[0]], "job-day", RowType.CREW)

        assert outcome.kind == ErrorKind.TYPE_NOT_ALLOWED
        assert positions(board, "job-day") == before

    def test_move_by_any_member_moves_whole_group(self, board, excavator_group):
        ex_id, op_id, truck_id = excavator_group

        outcome = board.move_group([op_id], "job-day-2", RowType.EQUIPMENT)

        assert outcome.ok
        assert [v.id for v in outcome.value] == [ex_id, op_id, truck_id]
        assert board.job_assignments("job-day").value == []
        moved = {v.id: v for v in board.job_assignments("job-day-2").value}
        assert moved[op_id].attached_to == ex_id
        assert moved[truck_id].attached_to == ex_id
        assert moved[ex_id].assignment.position == 0

    def test_move_to_another_job_resets_time_slots(self, board, excavator_group):
        outcome = board.move_group([excavator_group[0]], "job-day-2", RowType.EQUIPMENT)
        assert {v.assignment.time_slot.start_time for v in outcome.value} == {"06:30"}

    def test_move_into_conflicting_shift_is_rejected(self, board, excavator_group):
        assert board.place_resource("op-1", "job-day-2", RowType.EQUIPMENT).ok
        before = positions(board, "job-day")

        outcome = board.move_group([excavator_group[0]], "job-night", RowType.EQUIPMENT)

        assert outcome.kind == ErrorKind.SHIFT_CONFLICT
        assert positions(board, "job-day") == before
        assert board.job_assignments("job-night").value == []

    def test_members_of_different_groups(self, board, excavator_group):
        other = board.place_resource("ex-2", "job-day", RowType.EQUIPMENT).value
        outcome = board.move_group([excavator_group[1], other.id], "job-day-2", RowType.EQUIPMENT)
        assert outcome.kind == ErrorKind.INVALID_GROUP

    def test_empty_move(self, board):
        assert board.move_group([], "job-day", RowType.EQUIPMENT).kind == ErrorKind.INVALID_GROUP

    def test_reorder_within_full_row(self, board):
        foreman = board.place_resource("fm-1", "job-day", RowType.FORMAN).value

        outcome = board.move_group([foreman.id], "job-day", RowType.FORMAN, target_position=3)

        assert outcome.ok
        assert outcome.value[0].assignment.position == 3


class TestTimeSlots:
    def test_default_slot_is_full_day_from_job_start(self, board):
        view = board.place_resource("op-1", "job-day-2", RowType.EQUIPMENT).value
        assert view.assignment.time_slot == TimeSlot("06:30", "15:30", is_full_day=True)

    def test_placement_rejects_malformed_slot(self, board):
        outcome = board.place_resource("ex-1", "job-day", RowType.EQUIPMENT, time_slot=TimeSlot("xx:yy", "07:00"))

        assert outcome.kind == ErrorKind.INVALID_TIME_SLOT
        assert board.job_assignments("job-day").value == []

    def test_placement_rejects_reversed_slot(self, board):
        reversed_slot = board.place_resource("ex-1", "job-day", RowType.EQUIPMENT,
                                             time_slot=TimeSlot("15:00", "07:00"))
        placed = board.place_resource("ex-1", "job-day-2", RowType.EQUIPMENT, time_slot=TimeSlot("06:30", "10:00"))

        assert reversed_slot.kind == ErrorKind.INVALID_TIME_SLOT
        assert placed.ok
        assert board.update_time_slot(placed.value.id, TimeSlot("08:00", "09:00")).ok

    def test_malformed_slot(self, board):
        view = board.place_resource("op-1", "job-day", RowType.EQUIPMENT).value
        outcome = board.update_time_slot(view.id, TimeSlot("25:00", "26:00"))
        assert outcome.kind == ErrorKind.INVALID_TIME_SLOT

    def test_end_before_start(self, board):
        view = board.place_resource("op-1", "job-day", RowType.EQUIPMENT).value
        outcome = board.update_time_slot(view.id, TimeSlot("12:00", "08:00"))
        assert outcome.kind == ErrorKind.INVALID_TIME_SLOT

    def test_overlap_is_a_warning(self, board):
        board.place_resource("op-1", "job-day", RowType.EQUIPMENT)
        second = board.place_resource("op-1", "job-day-2", RowType.EQUIPMENT).value

        outcome = board.update_time_slot(second.id, TimeSlot("08:00", "12:00"))

        assert outcome.ok
        assert outcome.value.assignment.time_slot == TimeSlot("08:00", "12:00")
        assert any(w.startswith("Overlaps") for w in outcome.warnings)


class TestRemove:
    def test_remove_cascades_to_attachments(self, board, excavator_group):
        ex_id, op_id, truck_id = excavator_group

        outcome = board.remove_assignment(ex_id)

        assert outcome.ok
        assert set(outcome.value) == {ex_id, op_id, truck_id}
        assert board.job_assignments("job-day").value == []
        assert board.group(op_id).kind == ErrorKind.NOT_FOUND

    def test_remove_child_keeps_parent(self, board, excavator_group):
        ex_id, op_id, truck_id = excavator_group

        assert board.remove_assignment(op_id).value == [op_id]
        assert board.group(ex_id).value[0].attachments == (truck_id,)


class TestFinalize:
    def test_missing_operator_blocks_finalize(self, board):
        ex = board.place_resource("ex-1", "job-day", RowType.EQUIPMENT).value

        outcome = board.finalize_job("job-day")

        assert outcome.kind == ErrorKind.MISSING_REQUIRED_ATTACHMENT
        assert ex.id in outcome.message
        assert board.job_readiness("job-day").value

    def test_finalize_when_complete(self, board, excavator_group):
        # the fuel truck needs its driver too
        assert board.place_resource("drv-1", "job-day", RowType.EQUIPMENT, attach_to=excavator_group[2]).ok

        outcome = board.finalize_job("job-day")

        assert outcome.ok
        assert outcome.value.finalized
        assert board.job_readiness("job-day").value == []

    def test_finalized_job_rejects_changes_until_unfinalized(self, board, excavator_group):
        assert board.place_resource("drv-1", "job-day", RowType.EQUIPMENT, attach_to=excavator_group[2]).ok
        assert board.finalize_job("job-day").ok

        assert board.place_resource("fm-1", "job-day", RowType.FORMAN).kind == ErrorKind.JOB_FINALIZED
        assert board.detach(excavator_group[1]).kind == ErrorKind.JOB_FINALIZED
        assert board.remove_assignment(excavator_group[0]).kind == ErrorKind.JOB_FINALIZED

        assert board.unfinalize_job("job-day").ok
        assert board.place_resource("fm-1", "job-day", RowType.FORMAN).ok

    def test_empty_job_finalizes(self, board):
        assert board.finalize_job("job-night").ok


class TestVersionsAndHistory:
    def test_stale_version_is_a_concurrent_modification(self, board):
        version = board.job_version("job-day")
        assert board.place_resource("ex-1", "job-day", RowType.EQUIPMENT, expected_version=version).ok

        outcome = board.place_resource("ex-2", "job-day", RowType.EQUIPMENT, expected_version=version)

        assert outcome.kind == ErrorKind.CONCURRENT_MODIFICATION
        assert board.job_version("job-day") == version + 1

    def test_rejections_do_not_bump_version(self, board):
        version = board.job_version("job-day")
        board.place_resource("fm-1", "job-day", RowType.EQUIPMENT)
        assert board.job_version("job-day") == version

    def test_history_records_final_status(self, board):
        board.place_resource("fm-1", "job-day", RowType.EQUIPMENT)
        board.place_resource("fm-1", "job-day", RowType.FORMAN)

        statuses = [r.status for r in board.coordinator.history]

        assert statuses == [MutationStatus.REJECTED, MutationStatus.APPLIED]
        assert board.coordinator.history[0].verdict.kind == ErrorKind.TYPE_NOT_ALLOWED


class TestRandomEditSequences:
    """Whatever order edits arrive in, the board stays a forest inside its rule limits."""

    ROWS = [RowType.EQUIPMENT, RowType.CREW, RowType.TRUCKS, RowType.FORMAN]

    @pytest.mark.parametrize("seed", [3, 11, 29, 101])
    def test_invariants_hold_after_every_edit(self, board, jobs, resources, seed):
        rng = random.Random(seed)
        job_ids = [j.id for j in jobs]
        resource_ids = [r.id for r in resources]

        for _ in range(300):
            ids = sorted(board.state.assignments)
            roll = rng.random()
            if roll < 0.4 or not ids:
                parent = rng.choice(ids) if ids and rng.random() < 0.5 else None
                board.place_resource(rng.choice(resource_ids), rng.choice(job_ids), rng.choice(self.ROWS),
                                     attach_to=parent)
            elif roll < 0.6:
                board.attach(rng.choice(ids), rng.choice(ids))
            elif roll < 0.75:
                board.move_group([rng.choice(ids)], rng.choice(job_ids), rng.choice(self.ROWS))
            elif roll < 0.9:
                board.detach(rng.choice(ids))
            else:
                board.remove_assignment(rng.choice(ids))

            assert_board_invariants(board)

