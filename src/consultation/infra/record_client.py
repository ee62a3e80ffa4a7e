from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

import httpx

from src.consultation.config import settings
from src.consultation.domain.models.completion import CompletionResult
from src.consultation.domain.models.encounter import ClinicalNote, ClinicalNoteFields, EncounterSnapshot
from src.consultation.domain.models.lab_order import LabOrder, LabOrderInput
from src.consultation.domain.models.prescription import (
    InteractionCheck,
    Prescription,
    PrescriptionInput,
    StockValidation,
)
from src.consultation.errors import (
    AllergyConflictError,
    InsufficientStockError,
    RecordNotFoundError,
    RemoteOperationError,
    RemoteValidationError,
    SessionExpiredError,
    TransientNetworkError,
)


logger = logging.getLogger("record_client")


class RecordService(ABC):
    """Remote record service consumed by the consultation workflow.

    Every method either returns the server's answer or raises a
    ``ConsultationError`` subclass; none of them hang or return partial
    results.
    """

    @abstractmethod
    async def get_snapshot(self, encounter_id: UUID) -> EncounterSnapshot:
        raise NotImplementedError

    @abstractmethod
    async def save_note(
        self,
        encounter_id: UUID,
        fields: ClinicalNoteFields,
        *,
        final: bool = False,
    ) -> ClinicalNote:
        raise NotImplementedError

    @abstractmethod
    async def create_prescription(self, encounter_id: UUID, payload: PrescriptionInput) -> Prescription:
        raise NotImplementedError

    @abstractmethod
    async def update_prescription(
        self,
        encounter_id: UUID,
        prescription_id: UUID,
        payload: PrescriptionInput,
    ) -> Prescription:
        raise NotImplementedError

    @abstractmethod
    async def delete_prescription(self, encounter_id: UUID, prescription_id: UUID) -> None:
        raise NotImplementedError

    @abstractmethod
    async def validate_stock(self, encounter_id: UUID, drug_id: int, quantity: int) -> StockValidation:
        raise NotImplementedError

    @abstractmethod
    async def check_interactions(self, encounter_id: UUID, drug_id: int, patient_id: str) -> InteractionCheck:
        raise NotImplementedError

    @abstractmethod
    async def create_lab_order(self, encounter_id: UUID, payload: LabOrderInput) -> LabOrder:
        raise NotImplementedError

    @abstractmethod
    async def update_lab_order(
        self,
        encounter_id: UUID,
        lab_order_id: UUID,
        payload: LabOrderInput,
    ) -> LabOrder:
        raise NotImplementedError

    @abstractmethod
    async def delete_lab_order(self, encounter_id: UUID, lab_order_id: UUID) -> None:
        raise NotImplementedError

    @abstractmethod
    async def complete_encounter(self, encounter_id: UUID) -> CompletionResult:
        raise NotImplementedError


class HttpRecordServiceClient(RecordService):
    """httpx-based client for the record service JSON API.

    Responses are classified before they are parsed: anything that is not
    ``application/json`` (a login redirect, a proxy error page) is reported as
    ``SessionExpiredError``, structured error bodies become typed errors, and
    transport failures become ``TransientNetworkError``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Accept": "application/json", "X-Requested-With": "XMLHttpRequest"}
        if api_key:
            headers["X-API-Key"] = api_key

        if client is None:
            kwargs: Dict[str, Any] = {"base_url": base_url or settings.record_service_url, "headers": headers}
            if settings.record_service_timeout_seconds is not None:
                kwargs["timeout"] = settings.record_service_timeout_seconds
            client = httpx.AsyncClient(**kwargs)
            self._owns_client = True
        else:
            client.headers.update(headers)
            self._owns_client = False
        self._client = client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpRecordServiceClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Record service %s %s timed out", method, path)
            raise TransientNetworkError("The record service did not respond in time. Please try again.") from exc
        except httpx.TransportError as exc:
            logger.warning("Record service %s %s failed: %s", method, path, exc)
            raise TransientNetworkError("Network error while contacting the record service. Please try again.") from exc

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            logger.error(
                "Record service %s %s returned non-JSON response (status %s)",
                method,
                path,
                response.status_code,
            )
            raise SessionExpiredError(detail={"status_code": response.status_code})

        try:
            body = response.json()
        except ValueError as exc:
            logger.error("Record service %s %s returned malformed JSON", method, path)
            raise SessionExpiredError(detail={"status_code": response.status_code}) from exc

        if response.is_success:
            return body if isinstance(body, dict) else {"data": body}

        raise _error_from_response(response.status_code, body)

    # Encounter and note

    async def get_snapshot(self, encounter_id: UUID) -> EncounterSnapshot:
        body = await self._request("GET", f"/encounters/{encounter_id}")
        return EncounterSnapshot.model_validate(body["data"])

    async def save_note(
        self,
        encounter_id: UUID,
        fields: ClinicalNoteFields,
        *,
        final: bool = False,
    ) -> ClinicalNote:
        payload = fields.model_dump()
        payload["final"] = final
        body = await self._request("PUT", f"/encounters/{encounter_id}/note", json=payload)
        return ClinicalNote.model_validate(body["data"])

    # Prescriptions

    async def create_prescription(self, encounter_id: UUID, payload: PrescriptionInput) -> Prescription:
        body = await self._request(
            "POST",
            f"/encounters/{encounter_id}/prescriptions",
            json=payload.model_dump(mode="json"),
        )
        return Prescription.model_validate(body["data"])

    async def update_prescription(
        self,
        encounter_id: UUID,
        prescription_id: UUID,
        payload: PrescriptionInput,
    ) -> Prescription:
        body = await self._request(
            "PUT",
            f"/encounters/{encounter_id}/prescriptions/{prescription_id}",
            json=payload.model_dump(mode="json"),
        )
        return Prescription.model_validate(body["data"])

    async def delete_prescription(self, encounter_id: UUID, prescription_id: UUID) -> None:
        await self._request("DELETE", f"/encounters/{encounter_id}/prescriptions/{prescription_id}")

    async def validate_stock(self, encounter_id: UUID, drug_id: int, quantity: int) -> StockValidation:
        body = await self._request(
            "POST",
            f"/encounters/{encounter_id}/prescriptions/validate-stock",
            json={"drug_id": drug_id, "quantity": quantity},
        )
        return StockValidation(
            is_valid=bool(body.get("is_valid")),
            message=body.get("message") or "",
            quantity=quantity,
        )

    async def check_interactions(self, encounter_id: UUID, drug_id: int, patient_id: str) -> InteractionCheck:
        body = await self._request(
            "POST",
            f"/encounters/{encounter_id}/prescriptions/check",
            json={"drug_id": drug_id, "patient_id": patient_id},
        )
        return InteractionCheck(
            drug_id=drug_id,
            interactions=body.get("interactions") or [],
            allergy_conflict=bool(body.get("allergy_conflict")),
            allergy_message=body.get("allergy_message"),
        )

    # Lab orders

    async def create_lab_order(self, encounter_id: UUID, payload: LabOrderInput) -> LabOrder:
        body = await self._request(
            "POST",
            f"/encounters/{encounter_id}/lab-orders",
            json=payload.model_dump(mode="json"),
        )
        return LabOrder.model_validate(body["data"])

    async def update_lab_order(
        self,
        encounter_id: UUID,
        lab_order_id: UUID,
        payload: LabOrderInput,
    ) -> LabOrder:
        body = await self._request(
            "PUT",
            f"/encounters/{encounter_id}/lab-orders/{lab_order_id}",
            json=payload.model_dump(mode="json"),
        )
        return LabOrder.model_validate(body["data"])

    async def delete_lab_order(self, encounter_id: UUID, lab_order_id: UUID) -> None:
        await self._request("DELETE", f"/encounters/{encounter_id}/lab-orders/{lab_order_id}")

    # Completion

    async def complete_encounter(self, encounter_id: UUID) -> CompletionResult:
        body = await self._request("POST", f"/encounters/{encounter_id}/complete")
        return CompletionResult.model_validate(body["data"]["summary"])


def _error_from_response(status_code: int, body: Any) -> Exception:
    if not isinstance(body, dict):
        body = {}
    detail = body.get("detail")
    if isinstance(detail, dict):
        # FastAPI wraps HTTPException payloads in "detail".
        body = detail
        detail = None
    message = body.get("message") or (detail if isinstance(detail, str) else None) or "Request failed"
    code = body.get("code")
    errors = body.get("errors")

    if status_code in (401, 419):
        return SessionExpiredError()
    if status_code == 404:
        return RecordNotFoundError(message)
    if code == "ALLERGY_CONFLICT":
        return AllergyConflictError(message)
    if code == "INSUFFICIENT_STOCK":
        return InsufficientStockError(message)
    if 400 <= status_code < 500:
        return RemoteValidationError(message, errors=errors if isinstance(errors, dict) else None, code=code)
    return RemoteOperationError(message, status_code=status_code, code=code)
