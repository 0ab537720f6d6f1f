from collections import defaultdict
from typing import Dict, Iterable, List, Set

from crewboard.graph.attachment_graph import AttachmentGraph
from crewboard.models.entities import Assignment, AssignmentView, Job, Resource, ResourceType, RowType
from crewboard.models.verdict import ErrorKind, MutationRejected


class BoardState:
    """
    In-memory resources, jobs, assignments and the attachment graph for one board.

    Not thread-safe by itself: writers go through the MutationCoordinator,
    which holds the relevant job and resource critical sections. Assignments
    are indexed per job and per resource, and every query walks only the index
    for the key its caller holds, never the whole board.
    """

    def __init__(self):
        self.resources: Dict[str, Resource] = {}
        self.jobs: Dict[str, Job] = {}
        self.assignments: Dict[str, Assignment] = {}
        self.versions: Dict[str, int] = {}
        self.graph = AttachmentGraph(self.assignments, self.resource_type_of)
        self._by_job: Dict[str, Set[str]] = defaultdict(set)
        self._by_resource: Dict[str, Set[str]] = defaultdict(set)

    # -- lookups ---------------------------------------------------------

    def require_resource(self, resource_id: str) -> Resource:
        resource = self.resources.get(resource_id)
        if resource is None:
            raise MutationRejected.of(ErrorKind.NOT_FOUND, f"Resource {resource_id} not found")
        return resource

    def require_job(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise MutationRejected.of(ErrorKind.NOT_FOUND, f"Job {job_id} not found")
        return job

    def require_assignment(self, assignment_id: str) -> Assignment:
        assignment = self.assignments.get(assignment_id)
        if assignment is None:
            raise MutationRejected.of(ErrorKind.NOT_FOUND, f"Assignment {assignment_id} not found")
        return assignment

    def resource_of(self, assignment_id: str) -> Resource:
        return self.resources[self.assignments[assignment_id].resource_id]

    def resource_type_of(self, assignment_id: str) -> ResourceType:
        return self.resource_of(assignment_id).type

    def job_version(self, job_id: str) -> int:
        return self.versions.get(job_id, 0)

    def bump(self, job_ids: Iterable[str]) -> None:
        for job_id in set(job_ids):
            self.versions[job_id] = self.versions.get(job_id, 0) + 1

    # -- writes ----------------------------------------------------------

    def put(self, assignment: Assignment) -> None:
        previous = self.assignments.get(assignment.id)
        if previous is not None and previous.job_id != assignment.job_id:
            self._by_job[previous.job_id].discard(assignment.id)
        self.assignments[assignment.id] = assignment
        if previous is None or previous.job_id != assignment.job_id:
            self._by_job[assignment.job_id].add(assignment.id)
        if previous is None:
            self._by_resource[assignment.resource_id].add(assignment.id)

    def put_all(self, assignments: Iterable[Assignment]) -> None:
        for assignment in assignments:
            self.put(assignment)

    def drop(self, assignment_id: str) -> None:
        assignment = self.assignments.pop(assignment_id)
        self._by_job[assignment.job_id].discard(assignment_id)
        self._by_resource[assignment.resource_id].discard(assignment_id)

    # -- queries ---------------------------------------------------------

    def job_assignments(self, job_id: str) -> List[Assignment]:
        rows = list(RowType)
        return sorted(
            (self.assignments[i] for i in self._by_job.get(job_id, ())),
            key=lambda a: (rows.index(a.row_type), a.position, a.id),
        )

    def row_assignments(self, job_id: str, row_type: RowType) -> List[Assignment]:
        return sorted(
            (a for a in self.job_assignments(job_id) if a.row_type == row_type),
            key=lambda a: (a.position, a.id),
        )

    def row_primaries(self, job_id: str, row_type: RowType, exclude: Iterable[str] = ()) -> List[Assignment]:
        excluded = set(exclude)
        return [
            a for a in self.row_assignments(job_id, row_type)
            if self.graph.is_primary(a.id) and a.id not in excluded
        ]

    def resource_assignments(self, resource_id: str, exclude: Iterable[str] = ()) -> List[Assignment]:
        excluded = set(exclude)
        return [
            self.assignments[i] for i in sorted(self._by_resource.get(resource_id, ()))
            if i not in excluded
        ]

    def next_position(self, job_id: str, row_type: RowType, exclude: Iterable[str] = ()) -> int:
        primaries = self.row_primaries(job_id, row_type, exclude)
        return max((a.position for a in primaries), default=-1) + 1

    def view(self, assignment_id: str) -> AssignmentView:
        return AssignmentView(
            assignment=self.assignments[assignment_id],
            resource_type=self.resource_type_of(assignment_id),
            attached_to=self.graph.parent_of(assignment_id),
            attachments=tuple(self.graph.children_of(assignment_id)),
        )
