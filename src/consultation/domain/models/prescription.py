from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class DrugRef(BaseModel):
    """A formulary entry as picked from the drug search."""

    id: int
    name: str
    generic_name: Optional[str] = None
    strength: Optional[str] = None
    form: Optional[str] = None

    @property
    def display_name(self) -> str:
        parts = [self.generic_name or self.name]
        if self.strength:
            parts.append(self.strength)
        label = " ".join(parts)
        return f"{label} ({self.form})" if self.form else label


class PrescriptionInput(BaseModel):
    """Payload for creating or replacing a prescription.

    Kept permissive on purpose: the order managers validate it themselves so
    that every problem is reported as a field error rather than a parse
    failure.
    """

    drug_id: int
    drug_name: Optional[str] = None
    dosage: str = ""
    frequency: str = ""
    duration: int = 0
    quantity: int = 0
    instant_dispensing: bool = False
    notes: Optional[str] = None


class DrugInteraction(BaseModel):
    drug_name: str
    severity: str = "moderate"
    description: str = ""


class InteractionCheck(BaseModel):
    """Result of the drug interaction and allergy check for one patient/drug pair."""

    drug_id: int
    interactions: List[DrugInteraction] = Field(default_factory=list)
    allergy_conflict: bool = False
    allergy_message: Optional[str] = None


class StockValidation(BaseModel):
    is_valid: bool
    message: str = ""
    # Quantity the validation was made for; a result for another quantity is stale.
    quantity: int = 0


class Prescription(BaseModel):
    id: UUID
    encounter_id: UUID
    drug_id: int
    drug_name: str
    dosage: str
    frequency: str
    duration: int
    quantity: int
    instant_dispensing: bool = False
    notes: Optional[str] = None
    status: str = "pending"
    stock_reserved: bool = False
    interactions: List[DrugInteraction] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_input(self) -> PrescriptionInput:
        return PrescriptionInput(
            drug_id=self.drug_id,
            drug_name=self.drug_name,
            dosage=self.dosage,
            frequency=self.frequency,
            duration=self.duration,
            quantity=self.quantity,
            instant_dispensing=self.instant_dispensing,
            notes=self.notes,
        )
