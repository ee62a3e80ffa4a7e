from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import UUID

from src.consultation.domain.models.draft import Clean, Dirty, DraftStatus, Saving
from src.consultation.domain.models.encounter import NOTE_FIELDS, ClinicalNoteFields
from src.consultation.domain.models.lab_order import LabOrder
from src.consultation.domain.models.prescription import Prescription
from src.consultation.errors import EncounterReadOnlyError, FieldValidationError


ChangeListener = Callable[[], None]


class DraftStore:
    """In-memory projection of one encounter's editable state.

    Holds the SOAP note being typed together with the prescription and lab
    order lists last confirmed by the server. Only the note is drafted
    locally; orders are written through the order managers and mirrored here
    from their responses, so they never make the draft dirty.

    The store never performs I/O. The auto-save pipeline drives the
    ``mark_saving``/``mark_saved``/``mark_save_failed`` transitions.
    """

    def __init__(
        self,
        encounter_id: UUID,
        note: Optional[ClinicalNoteFields] = None,
        *,
        prescriptions: Optional[List[Prescription]] = None,
        lab_orders: Optional[List[LabOrder]] = None,
        read_only: bool = False,
    ) -> None:
        self.encounter_id = encounter_id
        initial = note.model_copy() if note is not None else ClinicalNoteFields()
        self._fields = initial
        # Last snapshot the server acknowledged.
        self._persisted = initial.model_copy()
        self._status: DraftStatus = Clean()
        self._prescriptions: List[Prescription] = list(prescriptions or [])
        self._lab_orders: List[LabOrder] = list(lab_orders or [])
        self._read_only = read_only
        self._listeners: List[ChangeListener] = []

    # Note state

    @property
    def fields(self) -> ClinicalNoteFields:
        return self._fields.model_copy()

    @property
    def status(self) -> DraftStatus:
        return self._status

    @property
    def is_dirty(self) -> bool:
        if isinstance(self._status, Saving):
            return self._fields != self._persisted
        return isinstance(self._status, Dirty)

    @property
    def is_saving(self) -> bool:
        return isinstance(self._status, Saving)

    @property
    def last_saved_at(self) -> Optional[datetime]:
        return self._status.last_saved_at

    @property
    def read_only(self) -> bool:
        return self._read_only

    def update(self, changes: Optional[Mapping[str, Any]] = None, **fields: Any) -> None:
        """Merge a partial note into the local draft and mark it dirty.

        Accepts either a mapping or keyword arguments. Never touches the
        network; registered listeners are notified so a save can be scheduled.
        """

        if self._read_only:
            raise EncounterReadOnlyError()

        merged: Dict[str, Any] = dict(changes or {})
        merged.update(fields)
        unknown = sorted(set(merged) - set(NOTE_FIELDS))
        if unknown:
            raise FieldValidationError({name: "Unknown note field" for name in unknown})

        updated = self._fields.model_copy(update={k: "" if v is None else str(v) for k, v in merged.items()})
        if updated == self._fields:
            return
        self._fields = updated

        if not isinstance(self._status, Saving):
            if self._fields == self._persisted:
                self._status = Clean(last_saved_at=self._status.last_saved_at)
            else:
                self._status = Dirty(last_saved_at=self._status.last_saved_at)

        for listener in list(self._listeners):
            listener()

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener`` for note edits; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # Transitions driven by the auto-save pipeline

    def mark_saving(self) -> ClinicalNoteFields:
        if isinstance(self._status, Saving):
            raise RuntimeError("A save is already in flight for this draft")
        sent = self._fields.model_copy()
        self._status = Saving(sent=sent, last_saved_at=self._status.last_saved_at)
        return sent

    def mark_saved(self, at: datetime) -> None:
        status = self._status
        if not isinstance(status, Saving):
            raise RuntimeError("mark_saved called without a save in flight")
        self._persisted = status.sent
        if self._fields == status.sent:
            self._status = Clean(last_saved_at=at)
        else:
            # Edits landed while the request was in flight.
            self._status = Dirty(last_saved_at=at)

    def mark_save_failed(self) -> None:
        status = self._status
        if not isinstance(status, Saving):
            raise RuntimeError("mark_save_failed called without a save in flight")
        if self._fields == self._persisted:
            self._status = Clean(last_saved_at=status.last_saved_at)
        else:
            self._status = Dirty(last_saved_at=status.last_saved_at)

    # Orders mirrored from the server

    @property
    def prescriptions(self) -> List[Prescription]:
        return list(self._prescriptions)

    @property
    def lab_orders(self) -> List[LabOrder]:
        return list(self._lab_orders)

    def put_prescription(self, prescription: Prescription) -> None:
        for index, existing in enumerate(self._prescriptions):
            if existing.id == prescription.id:
                self._prescriptions[index] = prescription
                return
        self._prescriptions.append(prescription)

    def remove_prescription(self, prescription_id: UUID) -> None:
        self._prescriptions = [p for p in self._prescriptions if p.id != prescription_id]

    def put_lab_order(self, lab_order: LabOrder) -> None:
        for index, existing in enumerate(self._lab_orders):
            if existing.id == lab_order.id:
                self._lab_orders[index] = lab_order
                return
        self._lab_orders.append(lab_order)

    def remove_lab_order(self, lab_order_id: UUID) -> None:
        self._lab_orders = [o for o in self._lab_orders if o.id != lab_order_id]

    def lock(self) -> None:
        """Make the draft read-only once the encounter is completed."""

        self._read_only = True
        self._listeners.clear()
