import asyncio

import pytest

from src.consultation.domain.models.encounter import EncounterStatus
from src.consultation.errors import RemoteOperationError
from src.consultation.services.commands.dispatcher import (
    CommandDispatcher,
    Intent,
    KeyEvent,
    KeyEventHub,
)
from src.consultation.services.completion.orchestrator import CompletionState
from src.consultation.session import ConsultationSession


def _dispatcher(read_only=False):
    fired = []
    dispatcher = CommandDispatcher(lambda: read_only)
    for intent in Intent:
        dispatcher.bind(intent, lambda intent=intent: fired.append(intent))
    return dispatcher, fired


def test_shortcuts_resolve_to_intents():
    dispatcher, fired = _dispatcher()

    assert dispatcher.handle_key(KeyEvent("s", ctrl=True)) == Intent.SAVE
    assert dispatcher.handle_key(KeyEvent("p", ctrl=True)) == Intent.ADD_PRESCRIPTION
    assert dispatcher.handle_key(KeyEvent("l", ctrl=True)) == Intent.ADD_LAB_ORDER
    assert dispatcher.handle_key(KeyEvent("Enter", ctrl=True)) == Intent.COMPLETE
    assert dispatcher.handle_key(KeyEvent("?", shift=True)) == Intent.HELP
    assert fired == [Intent.SAVE, Intent.ADD_PRESCRIPTION, Intent.ADD_LAB_ORDER, Intent.COMPLETE, Intent.HELP]


def test_cmd_key_counts_as_ctrl():
    dispatcher, fired = _dispatcher()
    assert dispatcher.handle_key(KeyEvent("S", meta=True)) == Intent.SAVE
    assert dispatcher.handle_key(KeyEvent("s")) is None
    assert fired == [Intent.SAVE]


def test_only_save_fires_inside_text_input():
    dispatcher, fired = _dispatcher()

    assert dispatcher.handle_key(KeyEvent("s", ctrl=True, in_text_input=True)) == Intent.SAVE
    assert dispatcher.handle_key(KeyEvent("p", ctrl=True, in_text_input=True)) is None
    assert dispatcher.handle_key(KeyEvent("Enter", ctrl=True, in_text_input=True)) is None
    assert dispatcher.handle_key(KeyEvent("?", in_text_input=True)) is None
    assert fired == [Intent.SAVE]


def test_read_only_encounter_only_allows_help():
    dispatcher, fired = _dispatcher(read_only=True)

    assert dispatcher.handle_key(KeyEvent("s", ctrl=True)) is None
    assert dispatcher.handle_key(KeyEvent("Enter", ctrl=True)) is None
    assert dispatcher.handle_key(KeyEvent("?")) == Intent.HELP
    assert fired == [Intent.HELP]


def test_help_listing_labels():
    dispatcher, _ = _dispatcher()
    assert dispatcher.shortcuts() == [
        ("Ctrl + S", "Save SOAP notes"),
        ("Ctrl + P", "Add prescription"),
        ("Ctrl + L", "Add lab order"),
        ("Ctrl + Enter", "Complete consultation"),
        ("?", "Show keyboard shortcuts help"),
    ]


def test_mount_registers_a_single_listener():
    dispatcher, fired = _dispatcher()
    hub = KeyEventHub()

    dispatcher.mount(hub)
    dispatcher.mount(hub)
    assert hub.listener_count == 1

    hub.emit(KeyEvent("l", ctrl=True))
    assert fired == [Intent.ADD_LAB_ORDER]

    with pytest.raises(RuntimeError):
        dispatcher.mount(KeyEventHub())

    dispatcher.unmount()
    assert hub.listener_count == 0
    hub.emit(KeyEvent("l", ctrl=True))
    assert fired == [Intent.ADD_LAB_ORDER]


async def test_save_shortcut_forces_save(snapshot, fake_client):
    hub = KeyEventHub()
    session = ConsultationSession(snapshot, fake_client, debounce_seconds=10)
    session.commands.mount(hub)
    session.edit_note(subjective="Chest pain")

    hub.emit(KeyEvent("s", ctrl=True, in_text_input=True))
    await asyncio.gather(*session.commands.pending_tasks)

    assert fake_client.calls == ["save_note"]
    assert not session.store.is_dirty

    hub.emit(KeyEvent("Enter", ctrl=True))
    assert session.completion.state == CompletionState.REVIEWING

    session.close()
    assert hub.listener_count == 0


async def test_session_binds_help_and_order_shortcuts(snapshot, fake_client):
    hub = KeyEventHub()
    session = ConsultationSession(snapshot, fake_client)
    session.commands.mount(hub)
    requested = []
    session.on_view_change(requested.append)

    assert session.commands.handle_key(KeyEvent("?")) == Intent.HELP
    assert session.help_visible
    assert session.help_entries()[0] == ("Ctrl + S", "Save SOAP notes")

    assert session.commands.handle_key(KeyEvent("p", ctrl=True)) == Intent.ADD_PRESCRIPTION
    assert session.active_dialog == Intent.ADD_PRESCRIPTION
    session.close_dialog()

    assert session.commands.handle_key(KeyEvent("l", ctrl=True)) == Intent.ADD_LAB_ORDER
    assert session.active_dialog == Intent.ADD_LAB_ORDER

    assert requested == [Intent.HELP, Intent.ADD_PRESCRIPTION, Intent.ADD_LAB_ORDER]
    assert fake_client.calls == []
    session.close()


async def test_completed_session_still_shows_help(snapshot, fake_client):
    snapshot.encounter.status = EncounterStatus.COMPLETED
    hub = KeyEventHub()
    session = ConsultationSession(snapshot, fake_client)
    session.commands.mount(hub)

    hub.emit(KeyEvent("p", ctrl=True))
    hub.emit(KeyEvent("?"))

    assert session.active_dialog is None
    assert session.help_visible
    session.close()


async def test_failed_save_shortcut_is_reported(snapshot, fake_client):
    fake_client.save_errors = [RemoteOperationError("Server error", status_code=500)]
    session = ConsultationSession(snapshot, fake_client, debounce_seconds=10)
    failures = []
    session.commands.on_error(lambda intent, exc: failures.append((intent, exc)))
    session.edit_note(plan="Chest X-ray")

    assert session.commands.handle_key(KeyEvent("s", ctrl=True)) == Intent.SAVE
    await asyncio.gather(*session.commands.pending_tasks, return_exceptions=True)
    await asyncio.sleep(0)

    assert isinstance(session.commands.last_error, RemoteOperationError)
    assert [intent for intent, _ in failures] == [Intent.SAVE]

    session.commands.handle_key(KeyEvent("s", ctrl=True))
    await asyncio.gather(*session.commands.pending_tasks)
    await asyncio.sleep(0)
    assert session.commands.last_error is None
    assert not session.store.is_dirty
    session.close()
