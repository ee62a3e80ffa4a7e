from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from src.consultation.api.v1.responses import envelope, not_found
from src.consultation.domain.models.prescription import PrescriptionInput
from src.consultation.security import get_api_key, get_current_subject
from src.consultation.services.audit.service import audit_service
from src.consultation.services.records.service import record_service


router = APIRouter(
    prefix="/encounters/{encounter_id}/prescriptions",
    tags=["prescriptions"],
    dependencies=[Depends(get_api_key)],
)


class StockValidationRequest(BaseModel):
    drug_id: int
    quantity: int


class PrescriptionCheckRequest(BaseModel):
    drug_id: int
    patient_id: Optional[str] = None


@router.post("/validate-stock")
async def validate_stock(encounter_id: UUID, payload: StockValidationRequest) -> dict:
    try:
        record_service.get_encounter(encounter_id)
    except KeyError as exc:
        raise not_found(exc) from exc
    validation = record_service.validate_stock(payload.drug_id, payload.quantity)
    return {"is_valid": validation.is_valid, "message": validation.message}


@router.post("/check")
async def check_prescription(encounter_id: UUID, payload: PrescriptionCheckRequest) -> dict:
    """Drug interaction warnings and allergy conflict for the encounter's patient."""

    try:
        check = record_service.check_prescription(encounter_id, payload.drug_id, payload.patient_id)
    except KeyError as exc:
        raise not_found(exc) from exc
    return {
        "interactions": [interaction.model_dump() for interaction in check.interactions],
        "allergy_conflict": check.allergy_conflict,
        "allergy_message": check.allergy_message,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_prescription(encounter_id: UUID, payload: PrescriptionInput) -> dict:
    try:
        prescription = record_service.create_prescription(encounter_id, payload)
    except KeyError as exc:
        raise not_found(exc) from exc

    audit_service.log_event(
        action="create_prescription",
        resource_type="prescription",
        resource_id=str(prescription.id),
        subject=get_current_subject(),
        extra={
            "encounter_id": str(encounter_id),
            "instant_dispensing": prescription.instant_dispensing,
            "stock_reserved": prescription.stock_reserved,
        },
    )
    return envelope("Prescription created successfully", prescription.model_dump(mode="json"))


@router.put("/{prescription_id}")
async def update_prescription(encounter_id: UUID, prescription_id: UUID, payload: PrescriptionInput) -> dict:
    try:
        prescription = record_service.update_prescription(encounter_id, prescription_id, payload)
    except KeyError as exc:
        raise not_found(exc) from exc

    audit_service.log_event(
        action="update_prescription",
        resource_type="prescription",
        resource_id=str(prescription_id),
        subject=get_current_subject(),
        extra={
            "encounter_id": str(encounter_id),
            "instant_dispensing": prescription.instant_dispensing,
            "stock_reserved": prescription.stock_reserved,
        },
    )
    return envelope("Prescription updated successfully", prescription.model_dump(mode="json"))


@router.delete("/{prescription_id}")
async def delete_prescription(encounter_id: UUID, prescription_id: UUID) -> dict:
    try:
        record_service.delete_prescription(encounter_id, prescription_id)
    except KeyError as exc:
        raise not_found(exc) from exc

    audit_service.log_event(
        action="delete_prescription",
        resource_type="prescription",
        resource_id=str(prescription_id),
        subject=get_current_subject(),
        extra={"encounter_id": str(encounter_id)},
    )
    return envelope("Prescription deleted successfully")
