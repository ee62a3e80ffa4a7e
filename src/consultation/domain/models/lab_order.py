from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class LabPriority(str, Enum):
    URGENT = "urgent"
    FAST = "fast"
    NORMAL = "normal"

    @property
    def turnaround_hours(self) -> int:
        return _TURNAROUND_HOURS[self]

    @property
    def turnaround(self) -> timedelta:
        return timedelta(hours=self.turnaround_hours)


_TURNAROUND_HOURS = {
    LabPriority.URGENT: 2,
    LabPriority.FAST: 6,
    LabPriority.NORMAL: 24,
}


class LabTestRef(BaseModel):
    id: int
    name: str
    # Catalog turnaround in hours, when the lab publishes one.
    turnaround_hours: Optional[int] = None


class LabOrderInput(BaseModel):
    test_id: Optional[int] = None
    test_name: Optional[str] = None
    priority: Optional[LabPriority] = None
    clinical_notes: Optional[str] = None


class LabOrder(BaseModel):
    id: UUID
    encounter_id: UUID
    test_id: int
    test_name: str
    priority: LabPriority
    clinical_notes: Optional[str] = None
    expected_completion_at: Optional[datetime] = None
    status: str = "pending"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_input(self) -> LabOrderInput:
        return LabOrderInput(
            test_id=self.test_id,
            test_name=self.test_name,
            priority=self.priority,
            clinical_notes=self.clinical_notes,
        )


def expected_completion(
    priority: LabPriority,
    *,
    ordered_at: datetime,
    catalog_turnaround_hours: Optional[int] = None,
) -> datetime:
    """Return when results are due for a test ordered at ``ordered_at``.

    The catalog turnaround wins when it is faster, but urgent and fast orders
    are never allowed to exceed their priority SLA.
    """

    hours = priority.turnaround_hours
    if catalog_turnaround_hours:
        hours = catalog_turnaround_hours
        if priority != LabPriority.NORMAL:
            hours = min(hours, priority.turnaround_hours)
    return ordered_at + timedelta(hours=hours)
