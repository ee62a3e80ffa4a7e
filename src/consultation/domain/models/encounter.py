from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.consultation.domain.models.lab_order import LabOrder
from src.consultation.domain.models.prescription import Prescription


NOTE_FIELDS = ("subjective", "objective", "assessment", "plan")


class EncounterStatus(str, Enum):
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"


class Encounter(BaseModel):
    """A single consultation being documented for one patient.

    Encounters are registered outside this workflow; here they are only read,
    documented and finally completed. A COMPLETED encounter never changes
    again, and neither do its prescriptions or lab orders.
    """

    id: UUID
    patient_id: str
    clinician_id: Optional[str] = None
    status: EncounterStatus = EncounterStatus.OPEN
    # Emergency patients are the only ones eligible for instant dispensing.
    is_emergency: bool = False
    chief_complaint: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == EncounterStatus.COMPLETED


class ClinicalNoteFields(BaseModel):
    """The four editable SOAP fields of an encounter note."""

    subjective: str = ""
    objective: str = ""
    assessment: str = ""
    plan: str = ""


class ClinicalNote(ClinicalNoteFields):
    encounter_id: UUID
    updated_at: Optional[datetime] = None
    is_final: bool = False


class EncounterSnapshot(BaseModel):
    """Everything the workflow needs on entry, fetched in one call."""

    encounter: Encounter
    note: ClinicalNoteFields = Field(default_factory=ClinicalNoteFields)
    prescriptions: List[Prescription] = Field(default_factory=list)
    lab_orders: List[LabOrder] = Field(default_factory=list)
