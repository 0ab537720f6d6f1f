from datetime import date
from typing import List, Optional
import logging

from fastapi import APIRouter, HTTPException, Depends, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from crewboard.config.settings import get_settings
from crewboard.engine.board import BoardService
from crewboard.engine.rule_audit import RuleAuditor
from crewboard.models.entities import (
    AssignmentView,
    Job,
    Resource,
    ResourceType,
    RowType,
    Shift,
    TimeSlot,
    TruckConfig,
)
from crewboard.models.verdict import ErrorKind, Outcome, Verdict
from crewboard.storage.cache import RuleCache
from crewboard.storage.database import get_db
from crewboard.storage.rule_source import reload_rules
from crewboard.utils.time_slots import HHMM

router = APIRouter()
logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONCURRENT_MODIFICATION: 409,
    ErrorKind.RULE_NOT_LOADED: 503,
}


def get_board(request: Request) -> BoardService:
    return request.app.state.board


def get_rule_cache() -> Optional[RuleCache]:
    settings = get_settings()
    if not settings.rule_cache_enabled:
        return None
    return RuleCache(settings.redis_url)


def raise_for(outcome) -> None:
    """Turn a rejected Outcome/Verdict into an HTTP error with a structured detail."""
    if outcome:
        return
    status = STATUS_BY_KIND.get(outcome.kind, 422)
    raise HTTPException(status_code=status, detail={"kind": outcome.kind.value, "message": outcome.message})


class ResourceDTO(BaseModel):
    id: str
    type: ResourceType
    name: str = ""
    on_site: bool = False
    certifications: List[str] = []
    skills: List[str] = []

    def to_domain(self) -> Resource:
        return Resource(
            id=self.id,
            type=self.type,
            name=self.name,
            on_site=self.on_site,
            certifications=frozenset(self.certifications),
            skills=frozenset(self.skills),
        )

    @classmethod
    def from_domain(cls, r: Resource) -> "ResourceDTO":
        return cls(id=r.id, type=r.type, name=r.name, on_site=r.on_site,
                   certifications=sorted(r.certifications), skills=sorted(r.skills))


class JobDTO(BaseModel):
    id: str
    name: str = ""
    shift: Shift = Shift.DAY
    finalized: bool = False
    start_time: str = "07:00"
    schedule_date: Optional[date] = None

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: str):
        """Default crew start must be HH:MM."""
        if not HHMM.match(v):
            raise ValueError("start_time must be HH:MM")
        return v

    def to_domain(self) -> Job:
        return Job(id=self.id, name=self.name, shift=self.shift, finalized=self.finalized,
                   start_time=self.start_time, schedule_date=self.schedule_date)

    @classmethod
    def from_domain(cls, j: Job) -> "JobDTO":
        return cls(id=j.id, name=j.name, shift=j.shift, finalized=j.finalized,
                   start_time=j.start_time, schedule_date=j.schedule_date)


class TimeSlotDTO(BaseModel):
    start_time: str
    end_time: str
    is_full_day: bool = False

    def to_domain(self) -> TimeSlot:
        return TimeSlot(start_time=self.start_time, end_time=self.end_time, is_full_day=self.is_full_day)


class AssignmentDTO(BaseModel):
    id: str
    resource_id: str
    resource_type: ResourceType
    job_id: str
    row_type: RowType
    position: int
    attached_to: Optional[str] = None
    attachments: List[str] = []
    time_slot: Optional[TimeSlotDTO] = None
    truck_config: Optional[TruckConfig] = None
    box_id: Optional[str] = None
    note: Optional[str] = None

    @classmethod
    def from_domain(cls, v: AssignmentView) -> "AssignmentDTO":
        a = v.assignment
        slot = None
        if a.time_slot is not None:
            slot = TimeSlotDTO(start_time=a.time_slot.start_time, end_time=a.time_slot.end_time,
                               is_full_day=a.time_slot.is_full_day)
        return cls(
            id=a.id,
            resource_id=a.resource_id,
            resource_type=v.resource_type,
            job_id=a.job_id,
            row_type=a.row_type,
            position=a.position,
            attached_to=v.attached_to,
            attachments=list(v.attachments),
            time_slot=slot,
            truck_config=a.truck_config,
            box_id=a.box_id,
            note=a.note,
        )


class PlaceRequest(BaseModel):
    resource_id: str
    job_id: str
    row_type: RowType
    position: Optional[int] = Field(None, ge=0)
    attach_to: Optional[str] = None
    time_slot: Optional[TimeSlotDTO] = None
    truck_config: Optional[TruckConfig] = None
    note: Optional[str] = None
    expected_version: Optional[int] = None


class CanPlaceRequest(BaseModel):
    resource_id: str
    job_id: str
    row_type: RowType
    attach_to: Optional[str] = None


class AttachRequest(BaseModel):
    parent_assignment_id: str


class MoveGroupRequest(BaseModel):
    assignment_ids: List[str] = Field(..., min_length=1)
    target_job_id: str
    target_row_type: RowType
    target_position: Optional[int] = Field(None, ge=0)
    expected_version: Optional[int] = None


class OnSiteRequest(BaseModel):
    on_site: bool


class VerdictResponse(BaseModel):
    accepted: bool
    kind: Optional[ErrorKind] = None
    message: str = ""
    warnings: List[str] = []

    @classmethod
    def from_domain(cls, v: Verdict) -> "VerdictResponse":
        return cls(accepted=v.accepted, kind=v.kind, message=v.message, warnings=list(v.warnings))


class AssignmentResponse(BaseModel):
    assignment: AssignmentDTO
    warnings: List[str] = []


class GroupResponse(BaseModel):
    assignments: List[AssignmentDTO]
    warnings: List[str] = []


class JobResponse(BaseModel):
    job: JobDTO
    version: int


class RemovedResponse(BaseModel):
    removed: List[str]


class RuleReportResponse(BaseModel):
    version: int
    valid: bool
    errors: List[str]
    warnings: List[str]
    suggestions: List[str]


def _assignment_response(outcome: Outcome) -> AssignmentResponse:
    raise_for(outcome)
    return AssignmentResponse(assignment=AssignmentDTO.from_domain(outcome.value), warnings=list(outcome.warnings))


def _group_response(outcome: Outcome) -> GroupResponse:
    raise_for(outcome)
    return GroupResponse(assignments=[AssignmentDTO.from_domain(v) for v in outcome.value],
                         warnings=list(outcome.warnings))


def _job_response(board: BoardService, outcome: Outcome) -> JobResponse:
    raise_for(outcome)
    job = outcome.value
    return JobResponse(job=JobDTO.from_domain(job), version=board.job_version(job.id))


# -- resources & jobs (synced from the external system) ----------------------

@router.put("/resources/{resource_id}", response_model=ResourceDTO, summary="Create or replace a resource")
def put_resource(resource_id: str, req: ResourceDTO, board: BoardService = Depends(get_board)):
    if req.id != resource_id:
        raise HTTPException(status_code=400, detail="Resource id in path and body differ")
    return ResourceDTO.from_domain(board.upsert_resource(req.to_domain()))


@router.patch("/resources/{resource_id}/on-site", response_model=ResourceDTO, summary="Toggle on-site flag")
def patch_on_site(resource_id: str, req: OnSiteRequest, board: BoardService = Depends(get_board)):
    outcome = board.set_on_site(resource_id, req.on_site)
    raise_for(outcome)
    return ResourceDTO.from_domain(outcome.value)


@router.get("/resources/{resource_id}/double-shift", summary="Is the resource on both a day and night job")
def get_double_shift(resource_id: str, board: BoardService = Depends(get_board)):
    outcome = board.is_working_double(resource_id)
    raise_for(outcome)
    return {"resource_id": resource_id, "working_double": outcome.value}


@router.put("/jobs/{job_id}", response_model=JobResponse, summary="Create or replace a job")
def put_job(job_id: str, req: JobDTO, board: BoardService = Depends(get_board)):
    if req.id != job_id:
        raise HTTPException(status_code=400, detail="Job id in path and body differ")
    job = board.upsert_job(req.to_domain())
    return JobResponse(job=JobDTO.from_domain(job), version=board.job_version(job_id))


@router.get("/jobs/{job_id}/assignments", response_model=GroupResponse, summary="Assignments of a job")
def get_job_assignments(job_id: str, board: BoardService = Depends(get_board)):
    return _group_response(board.job_assignments(job_id))


@router.get("/jobs/{job_id}/readiness", summary="What would block finalization")
def get_job_readiness(job_id: str, board: BoardService = Depends(get_board)):
    outcome = board.job_readiness(job_id)
    raise_for(outcome)
    return {"job_id": job_id, "ready": not outcome.value, "warnings": outcome.value}


@router.post("/jobs/{job_id}/finalize", response_model=JobResponse, summary="Finalize a job")
def finalize_job(job_id: str, board: BoardService = Depends(get_board)):
    """
    Hard gate: every assignment whose type has required attachments must have
    them. The first offending assignment is named in the 422 detail.
    """
    return _job_response(board, board.finalize_job(job_id))


@router.post("/jobs/{job_id}/unfinalize", response_model=JobResponse, summary="Reopen a finalized job")
def unfinalize_job(job_id: str, board: BoardService = Depends(get_board)):
    return _job_response(board, board.unfinalize_job(job_id))


# -- assignments ---------------------------------------------------------------

@router.post("/assignments", response_model=AssignmentResponse, summary="Place a resource into a row")
def place_resource(req: PlaceRequest, board: BoardService = Depends(get_board)):
    """
    Place a resource into a job row, optionally attached to an existing assignment.

    **Checks, first failure wins:**
    0. A given `time_slot` must be HH:MM with end after start
    1. Resource type allowed in the row (job row config, else drop rule)
    2. Row / box capacity (primary placements only)
    3. Attachment rule and max count (when `attach_to` is given)
    4. Double shift and credential checks

    **Errors:** 404 unknown id, 409 concurrent modification, 422 rule violation,
    503 rules not loaded. The detail is `{"kind": ..., "message": ...}`.

    **Warnings:** required attachments still missing (informational only).
    """
    logger.info(f"Place request: {req.resource_id} -> {req.job_id}/{req.row_type.value}")
    outcome = board.place_resource(
        req.resource_id,
        req.job_id,
        req.row_type,
        position=req.position,
        attach_to=req.attach_to,
        time_slot=req.time_slot.to_domain() if req.time_slot else None,
        truck_config=req.truck_config,
        note=req.note,
        expected_version=req.expected_version,
    )
    return _assignment_response(outcome)


@router.post("/assignments/can-place", response_model=VerdictResponse, summary="Dry-run a placement")
def can_place(req: CanPlaceRequest, board: BoardService = Depends(get_board)):
    verdict = board.can_place(req.resource_id, req.job_id, req.row_type, attach_to=req.attach_to)
    return VerdictResponse.from_domain(verdict)


@router.post("/assignments/{assignment_id}/attach", response_model=GroupResponse, summary="Attach to another assignment")
def attach(assignment_id: str, req: AttachRequest, board: BoardService = Depends(get_board)):
    return _group_response(board.attach(assignment_id, req.parent_assignment_id))


@router.post("/assignments/{assignment_id}/detach", response_model=AssignmentResponse, summary="Detach from parent")
def detach(assignment_id: str, board: BoardService = Depends(get_board)):
    return _assignment_response(board.detach(assignment_id))


@router.put("/assignments/{assignment_id}/time-slot", response_model=AssignmentResponse, summary="Change time slot")
def update_time_slot(assignment_id: str, req: TimeSlotDTO, board: BoardService = Depends(get_board)):
    return _assignment_response(board.update_time_slot(assignment_id, req.to_domain()))


@router.delete("/assignments/{assignment_id}", response_model=RemovedResponse, summary="Remove an assignment")
def remove_assignment(assignment_id: str, board: BoardService = Depends(get_board)):
    outcome = board.remove_assignment(assignment_id)
    raise_for(outcome)
    return RemovedResponse(removed=outcome.value)


@router.get("/assignments/{assignment_id}/group", response_model=GroupResponse, summary="Attachment group")
def get_group(assignment_id: str, board: BoardService = Depends(get_board)):
    return _group_response(board.group(assignment_id))


@router.post("/groups/move", response_model=GroupResponse, summary="Move an attachment group")
def move_group(req: MoveGroupRequest, board: BoardService = Depends(get_board)):
    """
    Move a primary and everything attached to it. Only the primary is checked
    against the target row; if it fails, nothing moves.
    """
    logger.info(f"Move request: {len(req.assignment_ids)} ids -> {req.target_job_id}/{req.target_row_type.value}")
    outcome = board.move_group(
        req.assignment_ids,
        req.target_job_id,
        req.target_row_type,
        target_position=req.target_position,
        expected_version=req.expected_version,
    )
    return _group_response(outcome)


# -- rules -----------------------------------------------------------------------

@router.post("/rules/reload", response_model=RuleReportResponse, summary="Reload rules from the rule source")
def post_reload_rules(
    board: BoardService = Depends(get_board),
    db: Session = Depends(get_db),
    cache: Optional[RuleCache] = Depends(get_rule_cache),
):
    settings = get_settings()
    snapshot = reload_rules(board, settings.rule_source, db=db, cache=cache,
                            ttl_seconds=settings.rule_cache_ttl_seconds)
    report = RuleAuditor(snapshot.tables).audit()
    for error in report.errors:
        logger.warning(f"Rule table error: {error}")
    return RuleReportResponse(version=snapshot.version, valid=report.is_valid, errors=report.errors,
                              warnings=report.warnings, suggestions=report.suggestions)


@router.get("/rules/report", response_model=RuleReportResponse, summary="Consistency report of loaded rules")
def get_rule_report(board: BoardService = Depends(get_board)):
    if not board.registry.loaded:
        raise_for(Verdict.reject(ErrorKind.RULE_NOT_LOADED, "Rule registry has not been loaded yet"))
    snapshot = board.registry.snapshot()
    report = RuleAuditor(snapshot.tables).audit()
    return RuleReportResponse(version=snapshot.version, valid=report.is_valid, errors=report.errors,
                              warnings=report.warnings, suggestions=report.suggestions)
