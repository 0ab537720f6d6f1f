from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import FrozenSet, Optional, Tuple


class ResourceType(str, Enum):
    # personnel
    OPERATOR = "operator"
    DRIVER = "driver"
    STRIPER = "striper"
    FOREMAN = "foreman"
    LABORER = "laborer"
    PRIVATE_DRIVER = "privateDriver"
    # equipment
    SKIDSTEER = "skidsteer"
    PAVER = "paver"
    EXCAVATOR = "excavator"
    SWEEPER = "sweeper"
    MILLING_MACHINE = "millingMachine"
    GRADER = "grader"
    DOZER = "dozer"
    PAYLOADER = "payloader"
    ROLLER = "roller"
    EQUIPMENT = "equipment"
    TRUCK = "truck"


PERSONNEL_TYPES = frozenset({
    ResourceType.OPERATOR,
    ResourceType.DRIVER,
    ResourceType.STRIPER,
    ResourceType.FOREMAN,
    ResourceType.LABORER,
    ResourceType.PRIVATE_DRIVER,
})

EQUIPMENT_TYPES = frozenset(t for t in ResourceType if t not in PERSONNEL_TYPES)


class RowType(str, Enum):
    FORMAN = "Forman"
    EQUIPMENT = "Equipment"
    SWEEPER = "Sweeper"
    TACK = "Tack"
    MPT = "MPT"
    CREW = "crew"
    TRUCKS = "trucks"


class Shift(str, Enum):
    DAY = "day"
    NIGHT = "night"


class TruckConfig(str, Enum):
    FLOWBOY = "flowboy"
    DUMP_TRAILER = "dump-trailer"


@dataclass(frozen=True)
class Resource:
    id: str
    type: ResourceType
    name: str = ""
    on_site: bool = False
    certifications: FrozenSet[str] = frozenset()
    skills: FrozenSet[str] = frozenset()

    def holds(self, credential: str) -> bool:
        return credential in self.certifications or credential in self.skills


@dataclass(frozen=True)
class Job:
    id: str
    name: str = ""
    shift: Shift = Shift.DAY
    finalized: bool = False
    start_time: str = "07:00"  # HH:MM, default crew start
    schedule_date: Optional[date] = None


def to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


@dataclass(frozen=True)
class TimeSlot:
    start_time: str  # HH:MM
    end_time: str  # HH:MM
    is_full_day: bool = False

    def overlaps(self, other: "TimeSlot") -> bool:
        """Full-day slots overlap everything."""
        if self.is_full_day or other.is_full_day:
            return True
        return max(to_minutes(self.start_time), to_minutes(other.start_time)) < min(
            to_minutes(self.end_time), to_minutes(other.end_time)
        )


@dataclass(frozen=True)
class Assignment:
    """
    A resource placed in one row of one job.

    Parent/child links are not stored here; the attachment graph owns them.
    """

    id: str
    resource_id: str
    job_id: str
    row_type: RowType
    position: int = 0
    time_slot: Optional[TimeSlot] = None
    truck_config: Optional[TruckConfig] = None
    box_id: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class AssignmentView:
    """An assignment together with its attachment links, as handed to callers."""

    assignment: Assignment
    resource_type: ResourceType
    attached_to: Optional[str] = None
    attachments: Tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.assignment.id
