from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    TYPE_NOT_ALLOWED = "TypeNotAllowed"
    ROW_AT_CAPACITY = "RowAtCapacity"
    ATTACHMENT_NOT_ALLOWED = "AttachmentNotAllowed"
    MAX_ATTACHMENTS_EXCEEDED = "MaxAttachmentsExceeded"
    CYCLE_DETECTED = "CycleDetected"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    SHIFT_CONFLICT = "ShiftConflict"
    MISSING_REQUIRED_ATTACHMENT = "MissingRequiredAttachment"
    CERTIFICATION_MISSING = "CertificationMissing"
    CONCURRENT_MODIFICATION = "ConcurrentModification"
    NOT_FOUND = "NotFound"
    RULE_NOT_LOADED = "RuleNotLoaded"
    JOB_FINALIZED = "JobFinalized"
    INVALID_GROUP = "InvalidGroup"
    INVALID_TIME_SLOT = "InvalidTimeSlot"
    ALREADY_ASSIGNED = "AlreadyAssigned"


@dataclass(frozen=True)
class Verdict:
    """Accept/reject decision. Rejections carry exactly one reason."""

    accepted: bool
    kind: Optional[ErrorKind] = None
    message: str = ""
    warnings: Tuple[str, ...] = ()

    @classmethod
    def accept(cls, warnings: Tuple[str, ...] = ()) -> "Verdict":
        return cls(accepted=True, warnings=tuple(warnings))

    @classmethod
    def reject(cls, kind: ErrorKind, message: str) -> "Verdict":
        return cls(accepted=False, kind=kind, message=message)

    def __bool__(self) -> bool:
        return self.accepted


class MutationRejected(Exception):
    """Raised inside the engine to abort a mutation; converted to an Outcome at the boundary."""

    def __init__(self, verdict: Verdict):
        super().__init__(f"{verdict.kind.value}: {verdict.message}")
        self.verdict = verdict

    @classmethod
    def of(cls, kind: ErrorKind, message: str) -> "MutationRejected":
        return cls(Verdict.reject(kind, message))


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of an engine operation: a value on success, a kind + message otherwise."""

    ok: bool
    value: Optional[T] = None
    kind: Optional[ErrorKind] = None
    message: str = ""
    warnings: Tuple[str, ...] = ()

    @classmethod
    def success(cls, value: Optional[T] = None, warnings: Tuple[str, ...] = ()) -> "Outcome[T]":
        return cls(ok=True, value=value, warnings=tuple(warnings))

    @classmethod
    def failure(cls, verdict: Verdict) -> "Outcome[T]":
        return cls(ok=False, kind=verdict.kind, message=verdict.message)

    def __bool__(self) -> bool:
        return self.ok
