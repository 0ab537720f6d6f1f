import re
from typing import List, Optional

from crewboard.models.entities import Assignment, Job, TimeSlot, to_minutes

HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
EARLY_START = 6 * 60
LATE_END = 20 * 60


def default_time_slot(job: Job, end_time: str) -> TimeSlot:
    return TimeSlot(start_time=job.start_time, end_time=end_time, is_full_day=True)


def slot_error(slot: TimeSlot) -> Optional[str]:
    """Why a slot is malformed, or None if it is usable."""
    for value in (slot.start_time, slot.end_time):
        if not HHMM.match(value):
            return f"'{value}' is not a HH:MM time"
    if not slot.is_full_day and to_minutes(slot.start_time) >= to_minutes(slot.end_time):
        return "End time must be after start time"
    return None


def slot_warnings(slot: TimeSlot, others: List[Assignment], jobs: dict) -> List[str]:
    warnings = []
    for other in others:
        if other.time_slot is not None and slot.overlaps(other.time_slot):
            job = jobs.get(other.job_id)
            label = job.name or job.id if job else other.job_id
            warnings.append(
                f"Overlaps {other.time_slot.start_time}-{other.time_slot.end_time} on {label}"
            )
    if slot.is_full_day and others:
        warnings.append("Full day assignment will conflict with all existing assignments")
    if to_minutes(slot.start_time) < EARLY_START:
        warnings.append("Very early start time - verify this is correct")
    if to_minutes(slot.end_time) > LATE_END:
        warnings.append("Very late end time - verify this is correct")
    return warnings
