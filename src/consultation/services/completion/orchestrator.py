from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from src.consultation.domain.models.completion import CompletionResult, CompletionSummary
from src.consultation.errors import CompletionError, CompletionInProgressError, CompletionStep
from src.consultation.services.audit.service import audit_service
from src.consultation.services.autosave.pipeline import AutoSavePipeline
from src.consultation.services.context import EncounterContext


logger = logging.getLogger("completion")

CompletionCallback = Callable[[CompletionResult], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompletionState(str, Enum):
    IDLE = "IDLE"
    REVIEWING = "REVIEWING"
    COMMITTING = "COMMITTING"
    DONE = "DONE"
    FAILED = "FAILED"


class CompletionOrchestrator:
    """Drives an encounter from "open" to the terminal, read-only state.

    ``review()`` builds the confirmation summary locally. ``commit()`` then
    runs strictly in order:

    1. force-save the draft note (pending auto-save is drained first),
    2. persist the note as the final record,
    3. ask the server to complete the encounter, which reserves and dispenses
       stock, submits lab orders and creates billing items in one atomic
       operation.

    A failure at any step stops the sequence, leaves the encounter OPEN and the
    draft untouched, and raises ``CompletionError`` naming the step. Retrying
    starts again from the summary; nothing from a failed attempt is reused.
    """

    def __init__(
        self,
        context: EncounterContext,
        pipeline: AutoSavePipeline,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._context = context
        self._pipeline = pipeline
        self._clock = clock
        self._callbacks: List[CompletionCallback] = []
        self.state = CompletionState.IDLE
        self.summary: Optional[CompletionSummary] = None
        self.result: Optional[CompletionResult] = None
        self.last_error: Optional[CompletionError] = None

    @property
    def is_committing(self) -> bool:
        return self.state == CompletionState.COMMITTING

    def on_completed(self, callback: CompletionCallback) -> None:
        """Register a callback run once the encounter is completed (e.g. navigate away)."""

        self._callbacks.append(callback)

    def review(self) -> CompletionSummary:
        if self.is_committing:
            raise CompletionInProgressError()
        self._context.ensure_open()
        store = self._context.store
        self.summary = CompletionSummary.build(store.prescriptions, store.lab_orders)
        self.state = CompletionState.REVIEWING
        return self.summary

    def cancel_review(self) -> None:
        if self.state in (CompletionState.REVIEWING, CompletionState.FAILED):
            self.state = CompletionState.IDLE
            self.summary = None

    async def commit(self) -> CompletionResult:
        """Run the completion sequence after the clinician confirmed the summary."""

        if self.is_committing:
            raise CompletionInProgressError()
        if self.state != CompletionState.REVIEWING:
            self.review()
        self._context.ensure_open()

        self.state = CompletionState.COMMITTING
        self.last_error = None
        encounter_id = self._context.encounter_id
        client = self._context.client
        step = CompletionStep.FORCE_SAVE
        try:
            await self._pipeline.force_save()

            step = CompletionStep.PERSIST_NOTE
            await client.save_note(encounter_id, self._context.store.fields, final=True)

            step = CompletionStep.COMPLETE_ENCOUNTER
            result = await client.complete_encounter(encounter_id)
        except Exception as exc:
            error = CompletionError(step, exc)
            self.last_error = error
            self.state = CompletionState.FAILED
            logger.warning("Completion of encounter %s failed at %s: %s", encounter_id, step.value, exc)
            audit_service.log_event(
                action="complete_encounter_failed",
                resource_type="encounter",
                resource_id=str(encounter_id),
                subject=self._context.encounter.clinician_id,
                extra={"step": step.value, "error": getattr(exc, "code", exc.__class__.__name__)},
            )
            raise error from exc
        except BaseException:
            # Cancelled while awaiting; the encounter stays open and completion may be retried.
            self.state = CompletionState.FAILED
            raise

        self._context.mark_completed(self._clock())
        self._pipeline.close()
        self.result = result
        self.state = CompletionState.DONE

        logger.info(
            "Encounter %s completed: %s prescriptions processed, %s lab orders submitted",
            encounter_id,
            result.prescriptions_processed,
            result.lab_orders_submitted,
        )
        audit_service.log_event(
            action="complete_encounter",
            resource_type="encounter",
            resource_id=str(encounter_id),
            subject=self._context.encounter.clinician_id,
            extra={
                "prescriptions_processed": result.prescriptions_processed,
                "lab_orders_submitted": result.lab_orders_submitted,
            },
        )
        for callback in list(self._callbacks):
            callback(result)
        return result
