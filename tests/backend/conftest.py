import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID, uuid4

import httpx
import pytest

from src.consultation.domain.models.completion import CompletionResult
from src.consultation.domain.models.encounter import (
    ClinicalNote,
    ClinicalNoteFields,
    Encounter,
    EncounterSnapshot,
)
from src.consultation.domain.models.lab_order import LabOrder, LabOrderInput, expected_completion
from src.consultation.domain.models.prescription import (
    InteractionCheck,
    Prescription,
    PrescriptionInput,
    StockValidation,
)
from src.consultation.infra.record_client import HttpRecordServiceClient, RecordService
from src.consultation.main import app
from src.consultation.services.records.service import record_service, seed_demo_data


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeRecordService(RecordService):
    """Scriptable record service recording every call in order."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.saved_notes: List[tuple] = []
        # When set, note saves block until the event is set.
        self.save_gate: Optional[asyncio.Event] = None
        self.save_errors: List[Exception] = []
        self.complete_error: Optional[Exception] = None
        self.checks: Dict[int, InteractionCheck] = {}
        self.stock: Dict[int, int] = {}
        self.stock_checks: List[tuple] = []
        self.in_flight_saves = 0
        self.max_concurrent_saves = 0
        self.prescriptions: Dict[UUID, Prescription] = {}
        self.lab_orders: Dict[UUID, LabOrder] = {}

    async def get_snapshot(self, encounter_id):
        raise NotImplementedError

    async def save_note(self, encounter_id, fields, *, final=False):
        self.calls.append("save_note_final" if final else "save_note")
        self.in_flight_saves += 1
        self.max_concurrent_saves = max(self.max_concurrent_saves, self.in_flight_saves)
        try:
            if self.save_gate is not None:
                await self.save_gate.wait()
            if self.save_errors:
                raise self.save_errors.pop(0)
            self.saved_notes.append((fields.model_copy(), final))
            return ClinicalNote(encounter_id=encounter_id, updated_at=_now(), is_final=final, **fields.model_dump())
        finally:
            self.in_flight_saves -= 1

    async def create_prescription(self, encounter_id, payload: PrescriptionInput):
        self.calls.append("create_prescription")
        prescription = Prescription(
            id=uuid4(),
            encounter_id=encounter_id,
            drug_id=payload.drug_id,
            drug_name=payload.drug_name or f"drug-{payload.drug_id}",
            dosage=payload.dosage,
            frequency=payload.frequency,
            duration=payload.duration,
            quantity=payload.quantity,
            instant_dispensing=payload.instant_dispensing,
            notes=payload.notes,
            stock_reserved=payload.instant_dispensing,
        )
        self.prescriptions[prescription.id] = prescription
        return prescription

    async def update_prescription(self, encounter_id, prescription_id, payload: PrescriptionInput):
        self.calls.append("update_prescription")
        updated = self.prescriptions[prescription_id].model_copy(
            update=payload.model_dump(exclude={"drug_name"}) | {"stock_reserved": payload.instant_dispensing}
        )
        self.prescriptions[prescription_id] = updated
        return updated

    async def delete_prescription(self, encounter_id, prescription_id):
        self.calls.append("delete_prescription")
        self.prescriptions.pop(prescription_id, None)

    async def validate_stock(self, encounter_id, drug_id, quantity):
        self.calls.append("validate_stock")
        self.stock_checks.append((drug_id, quantity))
        available = self.stock.get(drug_id, 0)
        if available >= quantity:
            return StockValidation(is_valid=True, message="Stock available", quantity=quantity)
        return StockValidation(
            is_valid=False,
            message=f"Insufficient stock. Available: {available}",
            quantity=quantity,
        )

    async def check_interactions(self, encounter_id, drug_id, patient_id):
        self.calls.append("check_interactions")
        return self.checks.get(drug_id, InteractionCheck(drug_id=drug_id))

    async def create_lab_order(self, encounter_id, payload: LabOrderInput):
        self.calls.append("create_lab_order")
        now = _now()
        lab_order = LabOrder(
            id=uuid4(),
            encounter_id=encounter_id,
            test_id=payload.test_id,
            test_name=payload.test_name or f"test-{payload.test_id}",
            priority=payload.priority,
            clinical_notes=payload.clinical_notes,
            expected_completion_at=expected_completion(payload.priority, ordered_at=now),
            created_at=now,
        )
        self.lab_orders[lab_order.id] = lab_order
        return lab_order

    async def update_lab_order(self, encounter_id, lab_order_id, payload: LabOrderInput):
        self.calls.append("update_lab_order")
        updated = self.lab_orders[lab_order_id].model_copy(
            update={"priority": payload.priority, "clinical_notes": payload.clinical_notes}
        )
        self.lab_orders[lab_order_id] = updated
        return updated

    async def delete_lab_order(self, encounter_id, lab_order_id):
        self.calls.append("delete_lab_order")
        self.lab_orders.pop(lab_order_id, None)

    async def complete_encounter(self, encounter_id):
        self.calls.append("complete_encounter")
        if self.complete_error is not None:
            raise self.complete_error
        prescriptions = list(self.prescriptions.values())
        return CompletionResult(
            total_prescriptions=len(prescriptions),
            total_lab_orders=len(self.lab_orders),
            instant_dispensing_prescriptions=sum(1 for p in prescriptions if p.instant_dispensing),
            prescriptions_processed=len(prescriptions),
            lab_orders_submitted=len(self.lab_orders),
        )


@pytest.fixture
def fake_client() -> FakeRecordService:
    return FakeRecordService()


@pytest.fixture
def encounter() -> Encounter:
    return Encounter(
        id=uuid4(),
        patient_id="P-1",
        clinician_id="clinician-1",
        is_emergency=True,
        created_at=_now(),
    )


@pytest.fixture
def snapshot(encounter) -> EncounterSnapshot:
    return EncounterSnapshot(encounter=encounter, note=ClinicalNoteFields(subjective="Fever"))


@pytest.fixture
def seeded_records() -> Dict[str, UUID]:
    record_service.reset()
    return seed_demo_data(record_service)


@pytest.fixture
async def http_record_client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test/api/v1") as ac:
        yield HttpRecordServiceClient(client=ac)
