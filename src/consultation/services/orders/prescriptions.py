from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union
from uuid import UUID

from src.consultation.config import settings
from src.consultation.domain.models.prescription import (
    DrugInteraction,
    DrugRef,
    InteractionCheck,
    Prescription,
    PrescriptionInput,
    StockValidation,
)
from src.consultation.errors import (
    AllergyConflictError,
    FieldValidationError,
    InsufficientStockError,
    RecordNotFoundError,
)
from src.consultation.services.audit.service import audit_service
from src.consultation.services.context import EncounterContext
from src.consultation.services.orders.base import OrderManager


logger = logging.getLogger("orders")

DEFAULT_FREQUENCY = "Twice daily"
DEFAULT_DURATION_DAYS = 7
DEFAULT_QUANTITY = 30


def validate_prescription_fields(payload: PrescriptionInput, *, is_emergency: bool) -> Dict[str, str]:
    """Return field errors for ``payload``; an empty dict means valid."""

    errors: Dict[str, str] = {}
    if not payload.dosage.strip():
        errors["dosage"] = "Dosage is required"
    if not payload.frequency.strip():
        errors["frequency"] = "Frequency is required"
    if payload.duration <= 0:
        errors["duration"] = "Duration must be greater than 0"
    if payload.quantity <= 0:
        errors["quantity"] = "Quantity must be greater than 0"
    if payload.instant_dispensing and settings.instant_dispensing_emergency_only and not is_emergency:
        errors["instant_dispensing"] = "Instant dispensing is only available for emergency patients"
    return errors


class PrescriptionForm:
    """Editing state of one prescription, as the clinician fills it in.

    Opening the form for a drug fetches the interaction and allergy check.
    While instant dispensing is on, every quantity change re-validates stock
    for exactly that quantity; answers that arrive for a quantity the form no
    longer holds are dropped.
    """

    def __init__(
        self,
        manager: "PrescriptionManager",
        drug: DrugRef,
        *,
        prescription: Optional[Prescription] = None,
    ) -> None:
        self._manager = manager
        self.drug = drug
        self.prescription = prescription
        if prescription is not None:
            self.dosage = prescription.dosage
            self.frequency = prescription.frequency
            self.duration = prescription.duration
            self.quantity = prescription.quantity
            self.instant_dispensing = prescription.instant_dispensing
            self.notes = prescription.notes
        else:
            self.dosage = drug.strength or ""
            self.frequency = DEFAULT_FREQUENCY
            self.duration = DEFAULT_DURATION_DAYS
            self.quantity = DEFAULT_QUANTITY
            self.instant_dispensing = False
            self.notes: Optional[str] = None
        self.interaction_check: Optional[InteractionCheck] = None
        self.stock_validation: Optional[StockValidation] = None

    @property
    def is_edit(self) -> bool:
        return self.prescription is not None

    @property
    def allergy_conflict(self) -> Optional[str]:
        check = self.interaction_check
        if check is None or not check.allergy_conflict:
            return None
        return check.allergy_message or "Patient is allergic to this medication"

    @property
    def interactions(self) -> List[DrugInteraction]:
        return list(self.interaction_check.interactions) if self.interaction_check else []

    @property
    def can_submit(self) -> bool:
        return self.allergy_conflict is None and not self._manager.pending and not self._manager.read_only

    async def load_checks(self) -> InteractionCheck:
        self.interaction_check = await self._manager.check_drug(self.drug.id)
        return self.interaction_check

    def update(
        self,
        *,
        dosage: Optional[str] = None,
        frequency: Optional[str] = None,
        duration: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> None:
        if dosage is not None:
            self.dosage = dosage
        if frequency is not None:
            self.frequency = frequency
        if duration is not None:
            self.duration = duration
        if notes is not None:
            self.notes = notes

    async def set_quantity(self, quantity: int) -> None:
        if quantity == self.quantity:
            return
        self.quantity = quantity
        await self._refresh_stock()

    async def set_instant_dispensing(self, enabled: bool) -> None:
        if enabled == self.instant_dispensing:
            return
        self.instant_dispensing = enabled
        await self._refresh_stock()

    def current_stock_validation(self) -> Optional[StockValidation]:
        """The stock result for the current quantity, or None if there is none."""

        validation = self.stock_validation
        if validation is None or not self.instant_dispensing or validation.quantity != self.quantity:
            return None
        return validation

    async def _refresh_stock(self) -> None:
        if not self.instant_dispensing or self.quantity <= 0:
            self.stock_validation = None
            return
        if self.current_stock_validation() is not None:
            return

        quantity = self.quantity
        self.stock_validation = None
        result = await self._manager.validate_stock(self.drug.id, quantity)
        if self.instant_dispensing and self.quantity == quantity:
            self.stock_validation = result

    def to_input(self) -> PrescriptionInput:
        return PrescriptionInput(
            drug_id=self.drug.id,
            drug_name=self.drug.display_name,
            dosage=self.dosage,
            frequency=self.frequency,
            duration=self.duration,
            quantity=self.quantity,
            instant_dispensing=self.instant_dispensing,
            notes=self.notes,
        )

    async def submit(self) -> Prescription:
        if self.prescription is not None:
            return await self._manager.update(self.prescription.id, self)
        return await self._manager.create(self)


class PrescriptionManager(OrderManager):
    """Creates, replaces and deletes the encounter's prescriptions.

    Checks run in a fixed order before anything is written: allergy conflict
    (hard stop), field validation, then stock for instant dispensing. A
    failure at any of them means no prescription request is sent.
    """

    entity_label = "prescription"

    def __init__(self, context: EncounterContext) -> None:
        super().__init__(context)
        self._checks: Dict[int, InteractionCheck] = {}

    @property
    def prescriptions(self) -> List[Prescription]:
        return self._context.store.prescriptions

    def open_form(self, drug: DrugRef) -> PrescriptionForm:
        self._context.ensure_open()
        return PrescriptionForm(self, drug)

    def edit_form(self, prescription_id: UUID, drug: Optional[DrugRef] = None) -> PrescriptionForm:
        """Re-open the creation form pre-populated from an existing prescription."""

        self._context.ensure_open()
        prescription = self._get(prescription_id)
        if drug is None:
            drug = DrugRef(id=prescription.drug_id, name=prescription.drug_name)
        return PrescriptionForm(self, drug, prescription=prescription)

    async def check_drug(self, drug_id: int) -> InteractionCheck:
        """Fetch the interaction and allergy check for the encounter's patient."""

        check = await self._context.client.check_interactions(
            self._context.encounter_id, drug_id, self._context.patient_id
        )
        self._checks[drug_id] = check
        if check.allergy_conflict:
            logger.info(
                "Allergy conflict for drug %s on encounter %s",
                drug_id,
                self._context.encounter_id,
            )
        return check

    def cached_check(self, drug_id: int) -> Optional[InteractionCheck]:
        return self._checks.get(drug_id)

    async def validate_stock(self, drug_id: int, quantity: int) -> StockValidation:
        return await self._context.client.validate_stock(self._context.encounter_id, drug_id, quantity)

    async def create(self, payload: Union[PrescriptionForm, PrescriptionInput]) -> Prescription:
        return await self._submit(payload, existing=None)

    async def update(
        self,
        prescription_id: UUID,
        payload: Union[PrescriptionForm, PrescriptionInput],
    ) -> Prescription:
        """Replace a prescription with the full contents of ``payload``."""

        self._context.ensure_open()
        return await self._submit(payload, existing=self._get(prescription_id))

    async def delete(self, prescription_id: UUID) -> None:
        """Delete a prescription; for instant dispensing this releases its stock."""

        self._context.ensure_open()
        existing = self._get(prescription_id)
        with self._operation():
            await self._context.client.delete_prescription(self._context.encounter_id, prescription_id)
        self._context.store.remove_prescription(prescription_id)

        if existing.instant_dispensing:
            logger.info("Stock reservation for prescription %s released", prescription_id)
        audit_service.log_event(
            action="delete_prescription",
            resource_type="prescription",
            resource_id=str(prescription_id),
            subject=self._context.encounter.clinician_id,
            extra={
                "encounter_id": str(self._context.encounter_id),
                "instant_dispensing": existing.instant_dispensing,
            },
        )

    def _get(self, prescription_id: UUID) -> Prescription:
        for prescription in self._context.store.prescriptions:
            if prescription.id == prescription_id:
                return prescription
        raise RecordNotFoundError("Prescription not found")

    async def _submit(
        self,
        payload: Union[PrescriptionForm, PrescriptionInput],
        *,
        existing: Optional[Prescription],
    ) -> Prescription:
        self._context.ensure_open()
        form = payload if isinstance(payload, PrescriptionForm) else None
        data = form.to_input() if form is not None else payload

        with self._operation():
            check = None
            if form is not None and form.interaction_check is not None and form.interaction_check.drug_id == data.drug_id:
                check = form.interaction_check
            if check is None:
                check = self._checks.get(data.drug_id)
            if check is None:
                check = await self.check_drug(data.drug_id)
            if check.allergy_conflict:
                raise AllergyConflictError(
                    check.allergy_message or "Patient is allergic to this medication. Prescription blocked."
                )

            errors = validate_prescription_fields(data, is_emergency=self._context.encounter.is_emergency)
            if errors:
                raise FieldValidationError(errors)

            if data.instant_dispensing and self._needs_stock_check(data, existing):
                validation = form.current_stock_validation() if form is not None else None
                if validation is None:
                    validation = await self.validate_stock(data.drug_id, data.quantity)
                    if form is not None:
                        form.stock_validation = validation
                if not validation.is_valid:
                    raise InsufficientStockError(validation.message or "Insufficient stock for instant dispensing.")

            client = self._context.client
            encounter_id = self._context.encounter_id
            if existing is None:
                prescription = await client.create_prescription(encounter_id, data)
            else:
                prescription = await client.update_prescription(encounter_id, existing.id, data)

        self._context.store.put_prescription(prescription)
        audit_service.log_event(
            action="create_prescription" if existing is None else "update_prescription",
            resource_type="prescription",
            resource_id=str(prescription.id),
            subject=self._context.encounter.clinician_id,
            extra={
                "encounter_id": str(encounter_id),
                "instant_dispensing": prescription.instant_dispensing,
                "interaction_warnings": len(check.interactions),
            },
        )
        return prescription

    @staticmethod
    def _needs_stock_check(data: PrescriptionInput, existing: Optional[Prescription]) -> bool:
        # Stock already reserved for an unchanged quantity does not need a new check.
        if existing is None or not existing.instant_dispensing:
            return True
        return existing.quantity != data.quantity or existing.drug_id != data.drug_id
