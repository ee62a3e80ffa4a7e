from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Tuple
from uuid import UUID

from src.consultation.domain.models.encounter import Encounter, EncounterSnapshot
from src.consultation.infra.record_client import RecordService
from src.consultation.services.autosave.pipeline import AutoSavePipeline
from src.consultation.services.commands.dispatcher import CommandDispatcher, Intent, KeyEventHub
from src.consultation.services.completion.orchestrator import CompletionOrchestrator
from src.consultation.services.context import EncounterContext
from src.consultation.services.drafts.store import DraftStore
from src.consultation.services.orders.lab_orders import LabOrderManager
from src.consultation.services.orders.prescriptions import PrescriptionManager


logger = logging.getLogger("consultation")


class ConsultationSession:
    """One clinician's editing session on one encounter.

    Owns every stateful component of the workflow: the draft store, its
    auto-save pipeline, both order managers, the completion orchestrator and
    the keyboard dispatcher. Sessions are created on workflow entry with
    :meth:`open` and must be closed on exit (or used as an async context
    manager); nothing outlives them.
    """

    def __init__(
        self,
        snapshot: EncounterSnapshot,
        client: RecordService,
        *,
        debounce_seconds: Optional[float] = None,
    ) -> None:
        encounter = snapshot.encounter
        self.store = DraftStore(
            encounter.id,
            snapshot.note,
            prescriptions=snapshot.prescriptions,
            lab_orders=snapshot.lab_orders,
            read_only=encounter.is_completed,
        )
        self.context = EncounterContext(encounter=encounter, client=client, store=self.store)
        self.autosave = AutoSavePipeline(self.store, client, debounce_seconds=debounce_seconds)
        self.prescriptions = PrescriptionManager(self.context)
        self.lab_orders = LabOrderManager(self.context)
        self.completion = CompletionOrchestrator(self.context, self.autosave)
        self.commands = CommandDispatcher(lambda: self.context.read_only)
        self.commands.bind(Intent.SAVE, self.autosave.force_save)
        self.commands.bind(Intent.COMPLETE, self._request_completion)
        self.commands.bind(Intent.ADD_PRESCRIPTION, lambda: self._open_dialog(Intent.ADD_PRESCRIPTION))
        self.commands.bind(Intent.ADD_LAB_ORDER, lambda: self._open_dialog(Intent.ADD_LAB_ORDER))
        self.commands.bind(Intent.HELP, self.toggle_help)
        # View state driven by the shortcuts; the view renders from these.
        self.help_visible = False
        self.active_dialog: Optional[Intent] = None
        self._view_listeners: List[Callable[[Intent], Any]] = []
        self._closed = False
        if encounter.is_completed:
            self.autosave.close()

    @classmethod
    async def open(
        cls,
        client: RecordService,
        encounter_id: UUID,
        *,
        hub: Optional[KeyEventHub] = None,
        debounce_seconds: Optional[float] = None,
    ) -> "ConsultationSession":
        """Enter the workflow: load the encounter snapshot and build the session."""

        snapshot = await client.get_snapshot(encounter_id)
        session = cls(snapshot, client, debounce_seconds=debounce_seconds)
        if hub is not None:
            session.commands.mount(hub)
        logger.info(
            "Opened consultation session for encounter %s (%s)",
            encounter_id,
            snapshot.encounter.status.value,
        )
        return session

    @property
    def encounter(self) -> Encounter:
        return self.context.encounter

    @property
    def read_only(self) -> bool:
        return self.context.read_only

    @property
    def closed(self) -> bool:
        return self._closed

    def edit_note(self, **fields: Any) -> None:
        self.store.update(**fields)

    def on_view_change(self, listener: Callable[[Intent], Any]) -> None:
        """Call ``listener`` with the intent whenever a shortcut changes view state."""

        self._view_listeners.append(listener)

    def help_entries(self) -> List[Tuple[str, str]]:
        return self.commands.shortcuts()

    def toggle_help(self) -> None:
        self.help_visible = not self.help_visible
        self._notify_view(Intent.HELP)

    def close_dialog(self) -> None:
        self.active_dialog = None

    def _open_dialog(self, intent: Intent) -> None:
        if self.completion.is_committing:
            return
        self.active_dialog = intent
        self._notify_view(intent)

    def _notify_view(self, intent: Intent) -> None:
        for listener in list(self._view_listeners):
            listener(intent)

    def _request_completion(self) -> None:
        if not self.completion.is_committing:
            self.completion.review()

    def close(self) -> None:
        """Tear the session down: stop auto-save timers and key listeners."""

        if self._closed:
            return
        self._closed = True
        self.autosave.close()
        self.commands.unmount()
        logger.info("Closed consultation session for encounter %s", self.context.encounter_id)

    async def __aenter__(self) -> "ConsultationSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
