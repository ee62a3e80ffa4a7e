from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from src.consultation.domain.models.draft import Clean, Dirty, Saving
from src.consultation.domain.models.encounter import ClinicalNoteFields
from src.consultation.domain.models.lab_order import LabPriority, expected_completion
from src.consultation.errors import EncounterReadOnlyError, FieldValidationError
from src.consultation.services.drafts.store import DraftStore


def test_update_marks_draft_dirty_and_notifies():
    store = DraftStore(uuid4(), ClinicalNoteFields(subjective="Fever"))
    notified = []
    store.subscribe(lambda: notified.append(True))

    store.update(objective="T 38.5")

    assert store.is_dirty
    assert isinstance(store.status, Dirty)
    assert store.fields.objective == "T 38.5"
    assert store.fields.subjective == "Fever"
    assert notified == [True]


def test_update_with_same_value_is_noop():
    store = DraftStore(uuid4(), ClinicalNoteFields(subjective="Fever"))
    notified = []
    store.subscribe(lambda: notified.append(True))

    store.update(subjective="Fever")

    assert not store.is_dirty
    assert notified == []


def test_reverting_to_persisted_text_is_clean_again():
    store = DraftStore(uuid4(), ClinicalNoteFields(plan="Rest"))
    store.update(plan="Rest and fluids")
    store.update(plan="Rest")
    assert isinstance(store.status, Clean)


def test_unknown_field_is_rejected():
    store = DraftStore(uuid4())
    with pytest.raises(FieldValidationError) as excinfo:
        store.update(history="n/a")
    assert "history" in excinfo.value.errors


def test_edits_during_save_keep_draft_dirty():
    store = DraftStore(uuid4())
    store.update(subjective="Cough")
    sent = store.mark_saving()
    assert isinstance(store.status, Saving)
    # Unacknowledged until the save resolves.
    assert store.is_dirty

    store.update(subjective="Cough for 3 days")
    assert store.is_dirty

    saved_at = datetime.now(timezone.utc)
    store.mark_saved(saved_at)
    assert sent.subjective == "Cough"
    assert isinstance(store.status, Dirty)
    assert store.last_saved_at == saved_at


def test_failed_save_returns_to_dirty():
    store = DraftStore(uuid4())
    store.update(assessment="URTI")
    store.mark_saving()
    store.mark_save_failed()
    assert isinstance(store.status, Dirty)
    assert store.fields.assessment == "URTI"


def test_second_mark_saving_is_refused():
    store = DraftStore(uuid4())
    store.update(plan="Review in 1 week")
    store.mark_saving()
    with pytest.raises(RuntimeError):
        store.mark_saving()


def test_locked_draft_rejects_edits():
    store = DraftStore(uuid4())
    store.lock()
    with pytest.raises(EncounterReadOnlyError):
        store.update(plan="too late")


def test_lab_priority_turnaround():
    ordered_at = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
    assert expected_completion(LabPriority.URGENT, ordered_at=ordered_at) == ordered_at + timedelta(hours=2)
    assert expected_completion(LabPriority.FAST, ordered_at=ordered_at) == ordered_at + timedelta(hours=6)
    assert expected_completion(LabPriority.NORMAL, ordered_at=ordered_at) == ordered_at + timedelta(hours=24)


def test_catalog_turnaround_never_exceeds_priority_sla():
    ordered_at = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
    urgent = expected_completion(LabPriority.URGENT, ordered_at=ordered_at, catalog_turnaround_hours=4)
    normal = expected_completion(LabPriority.NORMAL, ordered_at=ordered_at, catalog_turnaround_hours=4)
    assert urgent == ordered_at + timedelta(hours=2)
    assert normal == ordered_at + timedelta(hours=4)
