from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from src.consultation.domain.models.encounter import Encounter, EncounterStatus
from src.consultation.errors import EncounterReadOnlyError
from src.consultation.infra.record_client import RecordService
from src.consultation.services.drafts.store import DraftStore


@dataclass
class EncounterContext:
    """State shared by every component working on one encounter.

    Created when the workflow is entered and handed explicitly to the order
    managers and the completion orchestrator; there is no module-level
    instance.
    """

    encounter: Encounter
    client: RecordService
    store: DraftStore

    @property
    def encounter_id(self) -> UUID:
        return self.encounter.id

    @property
    def patient_id(self) -> str:
        return self.encounter.patient_id

    @property
    def read_only(self) -> bool:
        return self.encounter.is_completed or self.store.read_only

    def ensure_open(self) -> None:
        if self.read_only:
            raise EncounterReadOnlyError()

    def mark_completed(self, at: datetime) -> None:
        self.encounter = self.encounter.model_copy(
            update={"status": EncounterStatus.COMPLETED, "completed_at": at}
        )
        self.store.lock()
