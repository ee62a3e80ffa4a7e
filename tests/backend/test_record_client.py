from uuid import uuid4

import httpx
import pytest

from src.consultation.domain.models.encounter import ClinicalNoteFields
from src.consultation.domain.models.prescription import PrescriptionInput
from src.consultation.errors import (
    AllergyConflictError,
    InsufficientStockError,
    RecordNotFoundError,
    RemoteOperationError,
    RemoteValidationError,
    SessionExpiredError,
    TransientNetworkError,
)
from src.consultation.infra.record_client import HttpRecordServiceClient


def _client(handler) -> HttpRecordServiceClient:
    transport = httpx.MockTransport(handler)
    return HttpRecordServiceClient(client=httpx.AsyncClient(transport=transport, base_url="http://records/api/v1"))


async def test_html_login_page_means_session_expired():
    def handler(request):
        return httpx.Response(200, text="<html>Please log in</html>", headers={"content-type": "text/html"})

    client = _client(handler)
    with pytest.raises(SessionExpiredError) as excinfo:
        await client.save_note(uuid4(), ClinicalNoteFields(plan="x"))
    assert excinfo.value.message == "Session expired. Please refresh the page."


async def test_gateway_error_page_takes_the_same_path():
    def handler(request):
        return httpx.Response(502, text="Bad Gateway", headers={"content-type": "text/plain"})

    with pytest.raises(SessionExpiredError):
        await _client(handler).complete_encounter(uuid4())


async def test_json_401_is_session_expired():
    def handler(request):
        return httpx.Response(401, json={"message": "Unauthenticated."})

    with pytest.raises(SessionExpiredError):
        await _client(handler).get_snapshot(uuid4())


async def test_structured_errors_are_typed():
    responses = {
        "ALLERGY_CONFLICT": (422, AllergyConflictError),
        "INSUFFICIENT_STOCK": (422, InsufficientStockError),
        "VALIDATION_ERROR": (422, RemoteValidationError),
        "INTERNAL": (500, RemoteOperationError),
    }
    payload = PrescriptionInput(drug_id=1, dosage="500mg", frequency="Daily", duration=1, quantity=1)

    for code, (status_code, expected) in responses.items():

        def handler(request, code=code, status_code=status_code):
            return httpx.Response(
                status_code,
                json={"message": "Rejected", "code": code, "errors": {"dosage": "Dosage is required"}},
            )

        with pytest.raises(expected):
            await _client(handler).create_prescription(uuid4(), payload)


async def test_validation_errors_keep_field_messages():
    def handler(request):
        return httpx.Response(
            422,
            json={"message": "Validation failed", "code": "VALIDATION_ERROR", "errors": {"priority": "Required"}},
        )

    client = _client(handler)
    with pytest.raises(RemoteValidationError) as excinfo:
        await client.delete_lab_order(uuid4(), uuid4())
    assert excinfo.value.errors == {"priority": "Required"}


async def test_not_found_detail_is_unwrapped():
    def handler(request):
        return httpx.Response(404, json={"detail": {"message": "Prescription not found", "code": "NOT_FOUND"}})

    with pytest.raises(RecordNotFoundError) as excinfo:
        await _client(handler).delete_prescription(uuid4(), uuid4())
    assert excinfo.value.message == "Prescription not found"


async def test_transport_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientNetworkError) as excinfo:
        await _client(handler).save_note(uuid4(), ClinicalNoteFields())
    assert excinfo.value.retryable


async def test_note_save_sends_fields_and_final_flag():
    seen = {}
    encounter_id = uuid4()

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = request.read()
        return httpx.Response(
            200,
            json={
                "message": "SOAP notes saved successfully",
                "data": {"encounter_id": str(encounter_id), "plan": "Rest", "is_final": True},
            },
        )

    note = await _client(handler).save_note(encounter_id, ClinicalNoteFields(plan="Rest"), final=True)

    assert seen["path"] == f"/api/v1/encounters/{encounter_id}/note"
    assert b'"final":true' in seen["body"].replace(b" ", b"")
    assert note.is_final
    assert note.plan == "Rest"
