from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from src.consultation.api.v1.responses import envelope, not_found
from src.consultation.domain.models.encounter import ClinicalNoteFields
from src.consultation.security import get_api_key, get_current_subject
from src.consultation.services.audit.service import audit_service
from src.consultation.services.records.service import record_service


router = APIRouter(
    prefix="/encounters",
    tags=["encounters"],
    dependencies=[Depends(get_api_key)],
)


class NoteUpdateRequest(ClinicalNoteFields):
    # Marks the write made during completion as the final record.
    final: bool = False


@router.get("/{encounter_id}")
async def get_encounter_snapshot(encounter_id: UUID) -> dict:
    """Encounter, current note, prescriptions and lab orders in one payload."""

    try:
        snapshot = record_service.get_snapshot(encounter_id)
    except KeyError as exc:
        raise not_found(exc) from exc
    return envelope("Encounter retrieved successfully", snapshot.model_dump(mode="json"))


@router.put("/{encounter_id}/note")
async def update_encounter_note(encounter_id: UUID, payload: NoteUpdateRequest) -> dict:
    try:
        note = record_service.save_note(
            encounter_id,
            ClinicalNoteFields.model_validate(payload.model_dump(exclude={"final"})),
            final=payload.final,
        )
    except KeyError as exc:
        raise not_found(exc) from exc

    audit_service.log_event(
        action="update_encounter_note",
        resource_type="encounter",
        resource_id=str(encounter_id),
        subject=get_current_subject(),
        extra={"final": payload.final},
    )
    return envelope("SOAP notes saved successfully", note.model_dump(mode="json"))


@router.get("/{encounter_id}/summary")
async def get_completion_summary(encounter_id: UUID) -> dict:
    try:
        summary = record_service.summary(encounter_id)
    except KeyError as exc:
        raise not_found(exc) from exc

    data = summary.model_dump(mode="json")
    data.update(
        {
            "total_prescriptions": summary.total_prescriptions,
            "total_lab_orders": summary.total_lab_orders,
        }
    )
    return envelope("Consultation summary retrieved", data)


@router.post("/{encounter_id}/complete")
async def complete_encounter(encounter_id: UUID) -> dict:
    """Dispense, submit lab orders, bill and lock the encounter."""

    try:
        result = record_service.complete_encounter(encounter_id)
    except KeyError as exc:
        raise not_found(exc) from exc

    audit_service.log_event(
        action="complete_encounter",
        resource_type="encounter",
        resource_id=str(encounter_id),
        subject=get_current_subject(),
        extra={
            "prescriptions_processed": result.prescriptions_processed,
            "lab_orders_submitted": result.lab_orders_submitted,
            "billing_items_created": result.billing_items_created,
        },
    )
    return envelope("Consultation completed successfully", {"summary": result.model_dump(mode="json")})
