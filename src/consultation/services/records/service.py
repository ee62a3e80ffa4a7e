from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID, uuid4

from src.consultation.domain.models.completion import CompletionResult, CompletionSummary
from src.consultation.domain.models.encounter import (
    ClinicalNote,
    ClinicalNoteFields,
    Encounter,
    EncounterSnapshot,
    EncounterStatus,
)
from src.consultation.domain.models.lab_order import LabOrder, LabOrderInput, expected_completion
from src.consultation.domain.models.prescription import (
    DrugInteraction,
    InteractionCheck,
    Prescription,
    PrescriptionInput,
    StockValidation,
)
from src.consultation.domain.models.records import (
    BillingItem,
    Dispensation,
    FormularyDrug,
    PatientRecord,
    LabCatalogEntry,
)
from src.consultation.services.orders.lab_orders import validate_lab_order_fields
from src.consultation.services.orders.prescriptions import validate_prescription_fields


logger = logging.getLogger("records")

ALLERGY_MESSAGE = "Patient is allergic to this medication. Prescription blocked."
INSUFFICIENT_STOCK_MESSAGE = "Insufficient stock for instant dispensing."
CONSULTATION_FEE = Decimal("1500")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordRejected(Exception):
    """A request the record service refuses, with the structured body to send back."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "VALIDATION_ERROR",
        status_code: int = 422,
        errors: Optional[Dict[str, str]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.errors = errors
        super().__init__(message)

    def to_body(self) -> dict:
        body = {"message": self.message, "code": self.code}
        if self.errors:
            body["errors"] = self.errors
        return body


class InMemoryRecordService:
    """In-memory record service backing the reference API.

    Holds encounters, notes and orders together with the pharmacy formulary,
    the lab test catalog and the billing ledger, and applies the clinical
    rules the workflow relies on: allergy blocks, stock reservation for
    instant dispensing and the all-or-nothing completion of an encounter.
    It is intended for local development and tests.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._encounters: Dict[UUID, Encounter] = {}
        self._notes: Dict[UUID, ClinicalNote] = {}
        self._prescriptions: Dict[UUID, Dict[UUID, Prescription]] = {}
        self._lab_orders: Dict[UUID, Dict[UUID, LabOrder]] = {}
        self._drugs: Dict[int, FormularyDrug] = {}
        self._patients: Dict[str, PatientRecord] = {}
        self._tests: Dict[int, LabCatalogEntry] = {}
        self._billing: Dict[UUID, List[BillingItem]] = {}
        self._dispensations: Dict[UUID, List[Dispensation]] = {}

    # Reference data

    def add_drug(self, drug: FormularyDrug) -> FormularyDrug:
        self._drugs[drug.id] = drug
        return drug

    def get_drug(self, drug_id: int) -> Optional[FormularyDrug]:
        return self._drugs.get(drug_id)

    def add_patient(self, patient: PatientRecord) -> PatientRecord:
        self._patients[patient.id] = patient
        return patient

    def add_lab_test(self, test: LabCatalogEntry) -> LabCatalogEntry:
        self._tests[test.id] = test
        return test

    # Encounters and notes

    def create_encounter(
        self,
        *,
        patient_id: str,
        clinician_id: Optional[str] = None,
        is_emergency: bool = False,
        chief_complaint: Optional[str] = None,
    ) -> Encounter:
        encounter = Encounter(
            id=uuid4(),
            patient_id=patient_id,
            clinician_id=clinician_id,
            is_emergency=is_emergency,
            chief_complaint=chief_complaint,
            created_at=_utcnow(),
        )
        self._encounters[encounter.id] = encounter
        self._prescriptions[encounter.id] = {}
        self._lab_orders[encounter.id] = {}
        self._billing[encounter.id] = []
        self._dispensations[encounter.id] = []
        return encounter

    def get_encounter(self, encounter_id: UUID) -> Encounter:
        encounter = self._encounters.get(encounter_id)
        if encounter is None:
            raise KeyError("Encounter not found")
        return encounter

    def get_snapshot(self, encounter_id: UUID) -> EncounterSnapshot:
        encounter = self.get_encounter(encounter_id)
        note = self._notes.get(encounter_id)
        return EncounterSnapshot(
            encounter=encounter,
            note=ClinicalNoteFields(**note.model_dump(include=set(ClinicalNoteFields.model_fields)))
            if note is not None
            else ClinicalNoteFields(),
            prescriptions=list(self._prescriptions[encounter_id].values()),
            lab_orders=list(self._lab_orders[encounter_id].values()),
        )

    def get_note(self, encounter_id: UUID) -> Optional[ClinicalNote]:
        self.get_encounter(encounter_id)
        return self._notes.get(encounter_id)

    def save_note(self, encounter_id: UUID, fields: ClinicalNoteFields, *, final: bool = False) -> ClinicalNote:
        self._open_encounter(encounter_id)
        note = ClinicalNote(
            encounter_id=encounter_id,
            updated_at=_utcnow(),
            is_final=final,
            **fields.model_dump(include=set(ClinicalNoteFields.model_fields)),
        )
        self._notes[encounter_id] = note
        return note

    # Prescriptions

    def check_prescription(self, encounter_id: UUID, drug_id: int, patient_id: Optional[str] = None) -> InteractionCheck:
        """Allergy and interaction check for ``drug_id`` against the encounter's patient."""

        encounter = self.get_encounter(encounter_id)
        drug = self._drug_or_reject(drug_id)
        allergic = self._is_allergic(patient_id or encounter.patient_id, drug)
        return InteractionCheck(
            drug_id=drug_id,
            interactions=self._interactions(encounter_id, drug),
            allergy_conflict=allergic,
            allergy_message=ALLERGY_MESSAGE if allergic else None,
        )

    def validate_stock(self, drug_id: int, quantity: int) -> StockValidation:
        drug = self._drug_or_reject(drug_id)
        if drug.stock_quantity >= quantity:
            return StockValidation(is_valid=True, message="Stock available", quantity=quantity)
        return StockValidation(
            is_valid=False,
            message=f"Insufficient stock. Available: {drug.stock_quantity}",
            quantity=quantity,
        )

    def create_prescription(self, encounter_id: UUID, payload: PrescriptionInput) -> Prescription:
        encounter = self._open_encounter(encounter_id)
        drug = self._validate_prescription(encounter, payload)

        reserve = payload.instant_dispensing
        if reserve and drug.stock_quantity < payload.quantity:
            raise RecordRejected(
                INSUFFICIENT_STOCK_MESSAGE,
                code="INSUFFICIENT_STOCK",
                errors={"stock": INSUFFICIENT_STOCK_MESSAGE},
            )

        now = _utcnow()
        prescription = Prescription(
            id=uuid4(),
            encounter_id=encounter_id,
            drug_id=drug.id,
            drug_name=payload.drug_name or drug.name,
            dosage=payload.dosage,
            frequency=payload.frequency,
            duration=payload.duration,
            quantity=payload.quantity,
            instant_dispensing=payload.instant_dispensing,
            notes=payload.notes,
            interactions=self._interactions(encounter_id, drug),
            created_at=now,
            updated_at=now,
        )
        if reserve:
            self._reserve(drug, payload.quantity)
            prescription.stock_reserved = True

        self._prescriptions[encounter_id][prescription.id] = prescription
        return prescription

    def update_prescription(
        self,
        encounter_id: UUID,
        prescription_id: UUID,
        payload: PrescriptionInput,
    ) -> Prescription:
        encounter = self._open_encounter(encounter_id)
        existing = self._get_prescription(encounter_id, prescription_id)
        drug = self._validate_prescription(encounter, payload)

        # Stock the existing reservation would give back before the new one is taken.
        released = existing.quantity if existing.stock_reserved and existing.drug_id == drug.id else 0
        if payload.instant_dispensing and drug.stock_quantity + released < payload.quantity:
            raise RecordRejected(
                INSUFFICIENT_STOCK_MESSAGE,
                code="INSUFFICIENT_STOCK",
                errors={"stock": INSUFFICIENT_STOCK_MESSAGE},
            )

        if existing.stock_reserved:
            self._release(existing)
        updated = existing.model_copy(
            update={
                "drug_id": drug.id,
                "drug_name": payload.drug_name or drug.name,
                "dosage": payload.dosage,
                "frequency": payload.frequency,
                "duration": payload.duration,
                "quantity": payload.quantity,
                "instant_dispensing": payload.instant_dispensing,
                "notes": payload.notes,
                "stock_reserved": False,
                "interactions": self._interactions(encounter_id, drug, exclude=prescription_id),
                "updated_at": _utcnow(),
            }
        )
        if payload.instant_dispensing:
            self._reserve(drug, payload.quantity)
            updated.stock_reserved = True

        self._prescriptions[encounter_id][prescription_id] = updated
        return updated

    def delete_prescription(self, encounter_id: UUID, prescription_id: UUID) -> None:
        self._open_encounter(encounter_id)
        existing = self._get_prescription(encounter_id, prescription_id)
        if existing.stock_reserved:
            self._release(existing)
        del self._prescriptions[encounter_id][prescription_id]

    # Lab orders

    def create_lab_order(self, encounter_id: UUID, payload: LabOrderInput) -> LabOrder:
        self._open_encounter(encounter_id)
        test = self._validate_lab_order(payload)
        now = _utcnow()
        lab_order = LabOrder(
            id=uuid4(),
            encounter_id=encounter_id,
            test_id=test.id,
            test_name=payload.test_name or test.name,
            priority=payload.priority,
            clinical_notes=payload.clinical_notes,
            expected_completion_at=expected_completion(
                payload.priority, ordered_at=now, catalog_turnaround_hours=test.turnaround_hours
            ),
            created_at=now,
            updated_at=now,
        )
        self._lab_orders[encounter_id][lab_order.id] = lab_order
        return lab_order

    def update_lab_order(self, encounter_id: UUID, lab_order_id: UUID, payload: LabOrderInput) -> LabOrder:
        self._open_encounter(encounter_id)
        existing = self._get_lab_order(encounter_id, lab_order_id)
        test = self._validate_lab_order(payload)
        now = _utcnow()
        updated = existing.model_copy(
            update={
                "test_id": test.id,
                "test_name": payload.test_name or test.name,
                "priority": payload.priority,
                "clinical_notes": payload.clinical_notes,
                "expected_completion_at": expected_completion(
                    payload.priority, ordered_at=now, catalog_turnaround_hours=test.turnaround_hours
                ),
                "updated_at": now,
            }
        )
        self._lab_orders[encounter_id][lab_order_id] = updated
        return updated

    def delete_lab_order(self, encounter_id: UUID, lab_order_id: UUID) -> None:
        self._open_encounter(encounter_id)
        self._get_lab_order(encounter_id, lab_order_id)
        del self._lab_orders[encounter_id][lab_order_id]

    # Completion

    def summary(self, encounter_id: UUID) -> CompletionSummary:
        self.get_encounter(encounter_id)
        return CompletionSummary.build(
            list(self._prescriptions[encounter_id].values()),
            list(self._lab_orders[encounter_id].values()),
        )

    def complete_encounter(self, encounter_id: UUID) -> CompletionResult:
        """Dispense, submit lab orders, bill and lock the encounter in one step.

        Every change is computed first and applied only once nothing can fail
        any more, so a rejected completion leaves the encounter untouched.
        """

        encounter = self.get_encounter(encounter_id)
        if encounter.is_completed:
            raise RecordRejected(
                "Consultation is already completed and cannot be modified.",
                code="ENCOUNTER_COMPLETED",
            )

        now = _utcnow()
        prescriptions = dict(self._prescriptions[encounter_id])
        lab_orders = dict(self._lab_orders[encounter_id])
        dispensations: List[Dispensation] = []
        billing: List[BillingItem] = []
        billed = {item.reference_id for item in self._billing[encounter_id]}

        instant = 0
        for prescription_id, prescription in prescriptions.items():
            status = "active"
            if prescription.instant_dispensing:
                instant += 1
                if prescription.stock_reserved:
                    dispensations.append(
                        Dispensation(
                            id=uuid4(),
                            prescription_id=prescription_id,
                            quantity_dispensed=prescription.quantity,
                            dispensed_at=now,
                        )
                    )
                    status = "dispensed"
            prescriptions[prescription_id] = prescription.model_copy(update={"status": status, "updated_at": now})

            if str(prescription_id) not in billed:
                drug = self._drugs.get(prescription.drug_id)
                billing.append(
                    BillingItem(
                        id=uuid4(),
                        encounter_id=encounter_id,
                        item_type="pharmacy",
                        description=prescription.drug_name,
                        quantity=prescription.quantity,
                        unit_price=drug.unit_price if drug is not None else Decimal("0"),
                        reference_id=str(prescription_id),
                        created_at=now,
                    )
                )

        for lab_order_id, lab_order in lab_orders.items():
            test = self._tests.get(lab_order.test_id)
            lab_orders[lab_order_id] = lab_order.model_copy(
                update={
                    "status": "in_progress",
                    "expected_completion_at": expected_completion(
                        lab_order.priority,
                        ordered_at=now,
                        catalog_turnaround_hours=test.turnaround_hours if test is not None else None,
                    ),
                    "updated_at": now,
                }
            )
            if str(lab_order_id) not in billed:
                billing.append(
                    BillingItem(
                        id=uuid4(),
                        encounter_id=encounter_id,
                        item_type="laboratory",
                        description=lab_order.test_name,
                        unit_price=test.price if test is not None else Decimal("0"),
                        reference_id=str(lab_order_id),
                        created_at=now,
                    )
                )

        consultation_ref = f"consultation:{encounter_id}"
        if consultation_ref not in billed:
            billing.append(
                BillingItem(
                    id=uuid4(),
                    encounter_id=encounter_id,
                    item_type="consultation",
                    description="Consultation fee",
                    unit_price=CONSULTATION_FEE,
                    reference_id=consultation_ref,
                    created_at=now,
                )
            )

        self._prescriptions[encounter_id] = prescriptions
        self._lab_orders[encounter_id] = lab_orders
        self._dispensations[encounter_id].extend(dispensations)
        self._billing[encounter_id].extend(billing)
        self._encounters[encounter_id] = encounter.model_copy(
            update={"status": EncounterStatus.COMPLETED, "completed_at": now}
        )

        logger.info(
            "Encounter %s completed: %s dispensations, %s lab orders submitted, %s billing items",
            encounter_id,
            len(dispensations),
            len(lab_orders),
            len(billing),
        )
        return CompletionResult(
            total_prescriptions=len(prescriptions),
            total_lab_orders=len(lab_orders),
            instant_dispensing_prescriptions=instant,
            prescriptions_processed=len(prescriptions),
            lab_orders_submitted=len(lab_orders),
            billing_items_created=len(billing),
        )

    def billing_items(self, encounter_id: UUID) -> List[BillingItem]:
        return list(self._billing.get(encounter_id, []))

    def dispensations(self, encounter_id: UUID) -> List[Dispensation]:
        return list(self._dispensations.get(encounter_id, []))

    # Internals

    def _open_encounter(self, encounter_id: UUID) -> Encounter:
        encounter = self.get_encounter(encounter_id)
        if encounter.is_completed:
            raise RecordRejected("Cannot modify completed consultation", code="ENCOUNTER_COMPLETED")
        return encounter

    def _drug_or_reject(self, drug_id: int) -> FormularyDrug:
        drug = self._drugs.get(drug_id)
        if drug is None:
            raise RecordRejected("Validation failed", errors={"drug_id": "Selected drug does not exist"})
        return drug

    def _validate_prescription(self, encounter: Encounter, payload: PrescriptionInput) -> FormularyDrug:
        drug = self._drug_or_reject(payload.drug_id)
        if self._is_allergic(encounter.patient_id, drug):
            raise RecordRejected(ALLERGY_MESSAGE, code="ALLERGY_CONFLICT")
        errors = validate_prescription_fields(payload, is_emergency=encounter.is_emergency)
        if errors:
            raise RecordRejected("Validation failed", errors=errors)
        return drug

    def _validate_lab_order(self, payload: LabOrderInput) -> LabCatalogEntry:
        errors = validate_lab_order_fields(payload)
        test = self._tests.get(payload.test_id) if payload.test_id is not None else None
        if payload.test_id is not None and test is None:
            errors["test_id"] = "Selected lab test does not exist"
        if errors:
            raise RecordRejected("Validation failed", errors=errors)
        return test

    def _is_allergic(self, patient_id: str, drug: FormularyDrug) -> bool:
        patient = self._patients.get(patient_id)
        if patient is None:
            return False
        names = [n.lower() for n in (drug.name, drug.generic_name, drug.therapeutic_class) if n]
        for allergy in patient.allergies:
            needle = allergy.strip().lower()
            if needle and any(needle in name for name in names):
                return True
        return False

    def _interactions(
        self,
        encounter_id: UUID,
        drug: FormularyDrug,
        *,
        exclude: Optional[UUID] = None,
    ) -> List[DrugInteraction]:
        interactions: List[DrugInteraction] = []
        for prescription in self._prescriptions.get(encounter_id, {}).values():
            if prescription.id == exclude or prescription.drug_id == drug.id:
                continue
            other = self._drugs.get(prescription.drug_id)
            if other is None:
                continue
            if drug.therapeutic_class and drug.therapeutic_class == other.therapeutic_class:
                interactions.append(
                    DrugInteraction(
                        drug_name=other.name,
                        severity="moderate",
                        description=f"Both drugs are {drug.therapeutic_class}; review for duplicate therapy.",
                    )
                )
            elif _contraindicated(drug, other) or _contraindicated(other, drug):
                interactions.append(
                    DrugInteraction(
                        drug_name=other.name,
                        severity="high",
                        description=f"{drug.name} is contraindicated with {other.name}.",
                    )
                )
        return interactions

    def _get_prescription(self, encounter_id: UUID, prescription_id: UUID) -> Prescription:
        prescription = self._prescriptions[encounter_id].get(prescription_id)
        if prescription is None:
            raise KeyError("Prescription not found")
        return prescription

    def _get_lab_order(self, encounter_id: UUID, lab_order_id: UUID) -> LabOrder:
        lab_order = self._lab_orders[encounter_id].get(lab_order_id)
        if lab_order is None:
            raise KeyError("Lab order not found")
        return lab_order

    def _reserve(self, drug: FormularyDrug, quantity: int) -> None:
        drug.stock_quantity -= quantity
        logger.info("Reserved %s units of drug %s (remaining %s)", quantity, drug.id, drug.stock_quantity)

    def _release(self, prescription: Prescription) -> None:
        drug = self._drugs.get(prescription.drug_id)
        if drug is None:
            return
        drug.stock_quantity += prescription.quantity
        logger.info("Released %s units of drug %s (available %s)", prescription.quantity, drug.id, drug.stock_quantity)


def _contraindicated(drug: FormularyDrug, other: FormularyDrug) -> bool:
    names = {n.lower() for n in (other.name, other.generic_name, other.therapeutic_class) if n}
    return any(c.lower() in names for c in drug.contraindications)


def seed_demo_data(service: "InMemoryRecordService") -> Dict[str, UUID]:
    """Load a small formulary, test catalog and two patients with open encounters.

    Returns the ids of the seeded encounters keyed by ``"emergency"`` and
    ``"outpatient"``.
    """

    service.add_drug(
        FormularyDrug(
            id=1,
            name="Amoxicillin",
            generic_name="Amoxicillin",
            strength="500mg",
            form="capsule",
            therapeutic_class="Penicillin",
            stock_quantity=100,
            unit_price=Decimal("12.50"),
        )
    )
    service.add_drug(
        FormularyDrug(
            id=2,
            name="Ampiclox",
            generic_name="Ampicillin/Cloxacillin",
            strength="500mg",
            form="capsule",
            therapeutic_class="Penicillin",
            stock_quantity=40,
            unit_price=Decimal("18.00"),
        )
    )
    service.add_drug(
        FormularyDrug(
            id=3,
            name="Paracetamol",
            generic_name="Acetaminophen",
            strength="500mg",
            form="tablet",
            therapeutic_class="Analgesic",
            stock_quantity=500,
            unit_price=Decimal("2.00"),
        )
    )
    service.add_drug(
        FormularyDrug(
            id=4,
            name="Warfarin",
            generic_name="Warfarin",
            strength="5mg",
            form="tablet",
            therapeutic_class="Anticoagulant",
            contraindications=["Aspirin"],
            stock_quantity=60,
            unit_price=Decimal("9.00"),
        )
    )
    service.add_drug(
        FormularyDrug(
            id=5,
            name="Aspirin",
            generic_name="Acetylsalicylic acid",
            strength="75mg",
            form="tablet",
            therapeutic_class="Antiplatelet",
            stock_quantity=300,
            unit_price=Decimal("1.50"),
        )
    )

    service.add_lab_test(LabCatalogEntry(id=1, name="Complete Blood Count", turnaround_hours=4, price=Decimal("800")))
    service.add_lab_test(LabCatalogEntry(id=2, name="Urinalysis", turnaround_hours=12, price=Decimal("500")))
    service.add_lab_test(LabCatalogEntry(id=3, name="Lipid Panel", price=Decimal("1500")))

    service.add_patient(PatientRecord(id="P-1001", name="Amina Otieno", allergies=[]))
    service.add_patient(PatientRecord(id="P-1002", name="Brian Mwangi", allergies=["Penicillin"]))

    emergency = service.create_encounter(
        patient_id="P-1001",
        clinician_id="clinician-1",
        is_emergency=True,
        chief_complaint="Fever and sore throat",
    )
    outpatient = service.create_encounter(
        patient_id="P-1002",
        clinician_id="clinician-1",
        chief_complaint="Productive cough",
    )
    logger.info("Seeded demo record data: encounters %s, %s", emergency.id, outpatient.id)
    return {"emergency": emergency.id, "outpatient": outpatient.id}


record_service = InMemoryRecordService()
