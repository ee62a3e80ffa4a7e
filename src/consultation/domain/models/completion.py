from __future__ import annotations

from typing import List, Sequence

from pydantic import BaseModel, Field

from src.consultation.domain.models.lab_order import LabOrder, LabPriority
from src.consultation.domain.models.prescription import Prescription


class CompletionSummary(BaseModel):
    """Confirmation view shown before an encounter is completed.

    Computed from the prescriptions and lab orders held in memory at the moment
    completion is requested. It is never sent to or stored by the server.
    """

    prescriptions: List[Prescription] = Field(default_factory=list)
    lab_orders: List[LabOrder] = Field(default_factory=list)
    instant_dispensing_prescriptions: List[Prescription] = Field(default_factory=list)
    urgent_lab_orders: List[LabOrder] = Field(default_factory=list)

    @property
    def total_prescriptions(self) -> int:
        return len(self.prescriptions)

    @property
    def total_lab_orders(self) -> int:
        return len(self.lab_orders)

    @property
    def regular_prescriptions(self) -> List[Prescription]:
        return [p for p in self.prescriptions if not p.instant_dispensing]

    @classmethod
    def build(
        cls,
        prescriptions: Sequence[Prescription],
        lab_orders: Sequence[LabOrder],
    ) -> "CompletionSummary":
        return cls(
            prescriptions=list(prescriptions),
            lab_orders=list(lab_orders),
            instant_dispensing_prescriptions=[p for p in prescriptions if p.instant_dispensing],
            urgent_lab_orders=[o for o in lab_orders if o.priority == LabPriority.URGENT],
        )


class CompletionResult(BaseModel):
    """What the server reports after completing an encounter."""

    total_prescriptions: int = 0
    total_lab_orders: int = 0
    instant_dispensing_prescriptions: int = 0
    prescriptions_processed: int = 0
    lab_orders_submitted: int = 0
    billing_items_created: int = 0
