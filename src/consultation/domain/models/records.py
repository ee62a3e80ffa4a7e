from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class FormularyDrug(BaseModel):
    """Pharmacy formulary entry held by the record service."""

    id: int
    name: str
    generic_name: str
    strength: Optional[str] = None
    form: Optional[str] = None
    therapeutic_class: Optional[str] = None
    contraindications: List[str] = Field(default_factory=list)
    stock_quantity: int = 0
    unit_price: Decimal = Decimal("0")


class PatientRecord(BaseModel):
    id: str
    name: str
    allergies: List[str] = Field(default_factory=list)


class LabCatalogEntry(BaseModel):
    id: int
    name: str
    turnaround_hours: Optional[int] = None
    price: Decimal = Decimal("0")


class BillingItem(BaseModel):
    id: UUID
    encounter_id: UUID
    item_type: str
    description: str
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    reference_id: Optional[str] = None
    created_at: datetime

    @property
    def amount(self) -> Decimal:
        return self.unit_price * self.quantity


class Dispensation(BaseModel):
    id: UUID
    prescription_id: UUID
    quantity_dispensed: int
    dispensed_at: datetime
