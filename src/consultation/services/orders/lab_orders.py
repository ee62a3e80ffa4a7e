from __future__ import annotations

import logging
from typing import Dict, List, Union
from uuid import UUID

from pydantic import ValidationError

from src.consultation.domain.models.lab_order import LabOrder, LabOrderInput, LabPriority
from src.consultation.errors import FieldValidationError, RecordNotFoundError
from src.consultation.services.audit.service import audit_service
from src.consultation.services.orders.base import OrderManager


logger = logging.getLogger("orders")


def validate_lab_order_fields(payload: LabOrderInput) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if payload.test_id is None:
        errors["test_id"] = "Lab test is required"
    if payload.priority is None:
        errors["priority"] = "Priority level is required"
    return errors


class LabOrderManager(OrderManager):
    """Creates, replaces and deletes the encounter's lab orders.

    Priority decides the turnaround SLA the laboratory commits to
    (urgent 2h, fast 6h, normal 24h); the server computes the expected
    completion time from it.
    """

    entity_label = "lab order"

    @property
    def lab_orders(self) -> List[LabOrder]:
        return self._context.store.lab_orders

    async def create(self, payload: Union[LabOrderInput, dict]) -> LabOrder:
        return await self._submit(payload, lab_order_id=None)

    async def update(self, lab_order_id: UUID, payload: Union[LabOrderInput, dict]) -> LabOrder:
        """Replace a lab order with the full contents of ``payload``."""

        self._context.ensure_open()
        self._get(lab_order_id)
        return await self._submit(payload, lab_order_id=lab_order_id)

    async def delete(self, lab_order_id: UUID) -> None:
        self._context.ensure_open()
        existing = self._get(lab_order_id)
        with self._operation():
            await self._context.client.delete_lab_order(self._context.encounter_id, lab_order_id)
        self._context.store.remove_lab_order(lab_order_id)

        audit_service.log_event(
            action="delete_lab_order",
            resource_type="lab_order",
            resource_id=str(lab_order_id),
            subject=self._context.encounter.clinician_id,
            extra={"encounter_id": str(self._context.encounter_id), "priority": existing.priority.value},
        )

    def _get(self, lab_order_id: UUID) -> LabOrder:
        for lab_order in self._context.store.lab_orders:
            if lab_order.id == lab_order_id:
                return lab_order
        raise RecordNotFoundError("Lab order not found")

    async def _submit(self, payload: Union[LabOrderInput, dict], *, lab_order_id) -> LabOrder:
        self._context.ensure_open()
        if isinstance(payload, dict):
            priority = payload.get("priority")
            if priority is not None and priority not in {p.value for p in LabPriority}:
                raise FieldValidationError({"priority": "Priority must be one of urgent, fast or normal"})
            try:
                payload = LabOrderInput.model_validate(payload)
            except ValidationError as exc:
                field_errors: Dict[str, str] = {}
                for error in exc.errors():
                    field = ".".join(str(part) for part in error.get("loc", ())) or "payload"
                    field_errors.setdefault(field, error.get("msg", "Invalid value"))
                raise FieldValidationError(field_errors) from exc

        errors = validate_lab_order_fields(payload)
        if errors:
            raise FieldValidationError(errors)

        with self._operation():
            client = self._context.client
            encounter_id = self._context.encounter_id
            if lab_order_id is None:
                lab_order = await client.create_lab_order(encounter_id, payload)
            else:
                lab_order = await client.update_lab_order(encounter_id, lab_order_id, payload)

        self._context.store.put_lab_order(lab_order)
        logger.info(
            "Lab order %s (%s) saved for encounter %s",
            lab_order.id,
            lab_order.priority.value,
            encounter_id,
        )
        audit_service.log_event(
            action="create_lab_order" if lab_order_id is None else "update_lab_order",
            resource_type="lab_order",
            resource_id=str(lab_order.id),
            subject=self._context.encounter.clinician_id,
            extra={"encounter_id": str(encounter_id), "priority": lab_order.priority.value},
        )
        return lab_order
