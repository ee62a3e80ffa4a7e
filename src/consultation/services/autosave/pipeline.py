from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from src.consultation.config import settings
from src.consultation.errors import SessionExpiredError
from src.consultation.infra.record_client import RecordService
from src.consultation.services.drafts.store import DraftStore


logger = logging.getLogger("autosave")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutoSavePipeline:
    """Debounced background persistence of a draft note.

    Every edit restarts a single trailing timer; when the timer fires the
    current fields are sent with one note upsert. At most one upsert is in
    flight per draft. Edits that arrive meanwhile are picked up by a follow-up
    flush once the in-flight one resolves.

    Background failures are logged and retried after the next quiet period,
    up to ``max_retries`` times in a row. Errors that are not retryable, such
    as an expired session, wait for the next edit instead. Only
    ``force_save`` reports failures to its caller; the latest one is kept in
    ``last_error``.
    """

    def __init__(
        self,
        store: DraftStore,
        client: RecordService,
        *,
        debounce_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._client = client
        self._debounce = settings.autosave_debounce_seconds if debounce_seconds is None else debounce_seconds
        self._max_retries = settings.autosave_max_retries if max_retries is None else max_retries
        self._clock = clock
        self._timer: Optional[asyncio.TimerHandle] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._force_lock = asyncio.Lock()
        self._forcing = False
        self._closed = False
        self._failures = 0
        self._last_error: Optional[Exception] = None
        self._unsubscribe = store.subscribe(self._on_edit)

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    @property
    def is_flushing(self) -> bool:
        return self._in_flight is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_error(self) -> Optional[Exception]:
        """The error of the most recent failed upsert, cleared by the next success."""

        return self._last_error

    @property
    def session_expired(self) -> bool:
        return isinstance(self._last_error, SessionExpiredError)

    def _on_edit(self) -> None:
        self._failures = 0
        self.schedule()

    def schedule(self) -> None:
        """(Re)start the debounce timer. Called on every draft edit."""

        if self._closed or self._forcing:
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self._closed or self._forcing:
            return
        if self._in_flight is not None:
            # The in-flight flush re-checks dirtiness when it resolves.
            return
        if not self._store.is_dirty:
            return
        self._start_flush()

    def _start_flush(self) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._flush())
        self._in_flight = task
        task.add_done_callback(self._on_flush_done)
        return task

    async def _flush(self) -> None:
        encounter_id = self._store.encounter_id
        sent = self._store.mark_saving()
        try:
            await self._client.save_note(encounter_id, sent)
        except BaseException as exc:
            if not self._closed:
                self._store.mark_save_failed()
            if isinstance(exc, Exception):
                self._last_error = exc
            raise
        self._last_error = None
        self._failures = 0
        if self._closed:
            logger.info("Ignoring auto-save result for closed session of encounter %s", encounter_id)
            return
        self._store.mark_saved(self._clock())
        logger.debug("Draft note for encounter %s saved", encounter_id)

    def _on_flush_done(self, task: asyncio.Task) -> None:
        if self._in_flight is task:
            self._in_flight = None
        if task.cancelled() or self._forcing:
            return
        exc = task.exception()
        if exc is not None and not self._should_retry(exc):
            return
        if not self._closed and self._store.is_dirty:
            self.schedule()

    def _should_retry(self, exc: BaseException) -> bool:
        encounter_id = self._store.encounter_id
        if not getattr(exc, "retryable", False):
            logger.warning("Auto-save for encounter %s failed, waiting for next edit: %s", encounter_id, exc)
            return False
        self._failures += 1
        if self._failures > self._max_retries:
            logger.warning(
                "Auto-save for encounter %s failed %d times, waiting for next edit: %s",
                encounter_id,
                self._failures,
                exc,
            )
            return False
        logger.warning("Auto-save for encounter %s failed, will retry: %s", encounter_id, exc)
        return True

    async def force_save(self) -> None:
        """Persist any pending edits now.

        Cancels the debounce timer, waits for an in-flight flush to settle
        (never aborting it) and then sends one final upsert if the draft is
        still dirty. Returns immediately without a network call when there is
        nothing to save. Raises the record service error if the final upsert
        fails.
        """

        async with self._force_lock:
            self._forcing = True
            try:
                self._cancel_timer()
                while self._in_flight is not None:
                    in_flight = self._in_flight
                    try:
                        await asyncio.shield(in_flight)
                    except asyncio.CancelledError:
                        if not in_flight.cancelled():
                            raise
                    except Exception as exc:
                        # The draft is dirty again; the final flush below
                        # decides the outcome.
                        logger.warning(
                            "Auto-save for encounter %s failed before forced save: %s",
                            self._store.encounter_id,
                            exc,
                        )
                    if self._in_flight is in_flight:
                        self._in_flight = None
                self._cancel_timer()
                if self._closed or not self._store.is_dirty:
                    return
                await self._start_flush()
            finally:
                self._forcing = False
                # Edits made while forcing were not scheduled.
                if not self._closed and self._store.is_dirty:
                    if self._last_error is None or getattr(self._last_error, "retryable", False):
                        self.schedule()

    def close(self) -> None:
        """Tear down: cancel the timer and stop listening to the draft.

        An in-flight upsert is left to finish so no write is cut off midway;
        its result is ignored.
        """

        if self._closed:
            return
        self._closed = True
        self._cancel_timer()
        self._unsubscribe()
