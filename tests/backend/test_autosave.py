import asyncio
from uuid import uuid4

import pytest

from src.consultation.domain.models.draft import Clean
from src.consultation.errors import RemoteOperationError, SessionExpiredError, TransientNetworkError
from src.consultation.services.autosave.pipeline import AutoSavePipeline
from src.consultation.services.drafts.store import DraftStore

DEBOUNCE = 0.05


def _pipeline(fake_client, **kwargs):
    store = DraftStore(uuid4())
    return store, AutoSavePipeline(store, fake_client, debounce_seconds=DEBOUNCE, **kwargs)


async def test_rapid_edits_coalesce_into_one_save(fake_client):
    store, pipeline = _pipeline(fake_client)

    for text in ("C", "Co", "Cough"):
        store.update(subjective=text)
        await asyncio.sleep(DEBOUNCE / 5)
    await asyncio.sleep(DEBOUNCE * 3)

    assert fake_client.calls == ["save_note"]
    assert fake_client.saved_notes[0][0].subjective == "Cough"
    assert isinstance(store.status, Clean)
    pipeline.close()


async def test_no_concurrent_flush_and_follow_up_after_in_flight(fake_client):
    store, pipeline = _pipeline(fake_client)
    fake_client.save_gate = asyncio.Event()

    store.update(subjective="Headache")
    await asyncio.sleep(DEBOUNCE * 1.6)
    assert pipeline.is_flushing

    store.update(subjective="Headache since Monday")
    await asyncio.sleep(DEBOUNCE * 2)
    # Timer fired while the first upsert was still pending.
    assert fake_client.calls == ["save_note"]

    fake_client.save_gate.set()
    await asyncio.sleep(DEBOUNCE * 4)

    assert fake_client.calls == ["save_note", "save_note"]
    assert fake_client.max_concurrent_saves == 1
    assert fake_client.saved_notes[-1][0].subjective == "Headache since Monday"
    assert not store.is_dirty
    pipeline.close()


async def test_background_failure_is_retried_after_quiet_period(fake_client):
    store, pipeline = _pipeline(fake_client)
    fake_client.save_errors = [TransientNetworkError("offline")]

    store.update(plan="Paracetamol PRN")
    await asyncio.sleep(DEBOUNCE * 1.6)
    assert store.is_dirty
    assert store.fields.plan == "Paracetamol PRN"

    await asyncio.sleep(DEBOUNCE * 3)
    assert fake_client.calls == ["save_note", "save_note"]
    assert not store.is_dirty
    pipeline.close()


async def test_force_save_on_clean_draft_makes_no_call(fake_client):
    _, pipeline = _pipeline(fake_client)
    await pipeline.force_save()
    await pipeline.force_save()
    assert fake_client.calls == []


async def test_force_save_cancels_timer_and_saves_once(fake_client):
    store, pipeline = _pipeline(fake_client)
    store.update(objective="BP 120/80")

    await pipeline.force_save()
    assert fake_client.calls == ["save_note"]
    assert not pipeline.has_pending_timer

    await asyncio.sleep(DEBOUNCE * 3)
    await pipeline.force_save()
    assert fake_client.calls == ["save_note"]
    pipeline.close()


async def test_force_save_waits_for_in_flight_flush(fake_client):
    store, pipeline = _pipeline(fake_client)
    fake_client.save_gate = asyncio.Event()

    store.update(assessment="Viral")
    await asyncio.sleep(DEBOUNCE * 1.6)
    store.update(assessment="Viral pharyngitis")

    task = asyncio.ensure_future(pipeline.force_save())
    await asyncio.sleep(DEBOUNCE / 5)
    assert not task.done()

    fake_client.save_gate.set()
    await task

    assert fake_client.calls == ["save_note", "save_note"]
    assert fake_client.max_concurrent_saves == 1
    assert fake_client.saved_notes[-1][0].assessment == "Viral pharyngitis"
    assert not store.is_dirty
    pipeline.close()


async def test_force_save_reports_failure_and_keeps_text(fake_client):
    store, pipeline = _pipeline(fake_client)
    fake_client.save_errors = [RemoteOperationError("Server error", status_code=500)]
    store.update(plan="Admit")

    with pytest.raises(RemoteOperationError):
        await pipeline.force_save()

    assert store.is_dirty
    assert store.fields.plan == "Admit"
    pipeline.close()


async def test_close_stops_scheduling(fake_client):
    store, pipeline = _pipeline(fake_client)
    store.update(subjective="Dizziness")
    pipeline.close()

    assert not pipeline.has_pending_timer
    store.update(subjective="Dizziness on standing")
    await asyncio.sleep(DEBOUNCE * 3)
    assert fake_client.calls == []


async def test_edits_during_force_save_are_saved_afterwards(fake_client):
    store, pipeline = _pipeline(fake_client)
    fake_client.save_gate = asyncio.Event()
    store.update(subjective="Chest pain")

    task = asyncio.ensure_future(pipeline.force_save())
    await asyncio.sleep(DEBOUNCE / 5)
    store.update(subjective="Chest pain radiating to left arm")

    fake_client.save_gate.set()
    await task
    assert store.is_dirty
    assert pipeline.has_pending_timer

    await asyncio.sleep(DEBOUNCE * 3)
    assert fake_client.calls == ["save_note", "save_note"]
    assert fake_client.saved_notes[-1][0].subjective == "Chest pain radiating to left arm"
    assert not store.is_dirty
    pipeline.close()


async def test_failed_force_save_is_retried_in_background(fake_client):
    store, pipeline = _pipeline(fake_client)
    fake_client.save_errors = [RemoteOperationError("Server error", status_code=500)]
    store.update(plan="Observe overnight")

    with pytest.raises(RemoteOperationError):
        await pipeline.force_save()
    assert pipeline.has_pending_timer

    await asyncio.sleep(DEBOUNCE * 3)
    assert fake_client.calls == ["save_note", "save_note"]
    assert not store.is_dirty
    assert pipeline.last_error is None
    pipeline.close()


async def test_expired_session_waits_for_next_edit(fake_client):
    store, pipeline = _pipeline(fake_client)
    fake_client.save_errors = [SessionExpiredError() for _ in range(10)]
    store.update(assessment="Migraine")

    await asyncio.sleep(DEBOUNCE * 10)
    assert fake_client.calls == ["save_note"]
    assert pipeline.session_expired
    assert not pipeline.has_pending_timer
    assert store.is_dirty

    fake_client.save_errors = []
    store.update(assessment="Migraine with aura")
    await asyncio.sleep(DEBOUNCE * 3)
    assert fake_client.calls == ["save_note", "save_note"]
    assert not pipeline.session_expired
    assert not store.is_dirty
    pipeline.close()


async def test_background_retries_are_capped(fake_client):
    store, pipeline = _pipeline(fake_client, max_retries=2)
    fake_client.save_errors = [TransientNetworkError("offline") for _ in range(10)]
    store.update(objective="SpO2 94%")

    await asyncio.sleep(DEBOUNCE * 12)
    assert fake_client.calls == ["save_note"] * 3
    assert isinstance(pipeline.last_error, TransientNetworkError)
    assert not pipeline.has_pending_timer
    assert store.fields.objective == "SpO2 94%"
    pipeline.close()
