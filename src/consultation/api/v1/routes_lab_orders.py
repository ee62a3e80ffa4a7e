from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status

from src.consultation.api.v1.responses import envelope, not_found
from src.consultation.domain.models.lab_order import LabOrderInput
from src.consultation.security import get_api_key, get_current_subject
from src.consultation.services.audit.service import audit_service
from src.consultation.services.records.service import record_service


router = APIRouter(
    prefix="/encounters/{encounter_id}/lab-orders",
    tags=["lab-orders"],
    dependencies=[Depends(get_api_key)],
)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_lab_order(encounter_id: UUID, payload: LabOrderInput) -> dict:
    try:
        lab_order = record_service.create_lab_order(encounter_id, payload)
    except KeyError as exc:
        raise not_found(exc) from exc

    audit_service.log_event(
        action="create_lab_order",
        resource_type="lab_order",
        resource_id=str(lab_order.id),
        subject=get_current_subject(),
        extra={"encounter_id": str(encounter_id), "priority": lab_order.priority.value},
    )
    return envelope("Lab order created successfully", lab_order.model_dump(mode="json"))


@router.put("/{lab_order_id}")
async def update_lab_order(encounter_id: UUID, lab_order_id: UUID, payload: LabOrderInput) -> dict:
    try:
        lab_order = record_service.update_lab_order(encounter_id, lab_order_id, payload)
    except KeyError as exc:
        raise not_found(exc) from exc

    audit_service.log_event(
        action="update_lab_order",
        resource_type="lab_order",
        resource_id=str(lab_order_id),
        subject=get_current_subject(),
        extra={"encounter_id": str(encounter_id), "priority": lab_order.priority.value},
    )
    return envelope("Lab order updated successfully", lab_order.model_dump(mode="json"))


@router.delete("/{lab_order_id}")
async def delete_lab_order(encounter_id: UUID, lab_order_id: UUID) -> dict:
    try:
        record_service.delete_lab_order(encounter_id, lab_order_id)
    except KeyError as exc:
        raise not_found(exc) from exc

    audit_service.log_event(
        action="delete_lab_order",
        resource_type="lab_order",
        resource_id=str(lab_order_id),
        subject=get_current_subject(),
        extra={"encounter_id": str(encounter_id)},
    )
    return envelope("Lab order deleted successfully")
