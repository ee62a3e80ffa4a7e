from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from src.consultation.errors import OrderOperationPendingError
from src.consultation.services.context import EncounterContext


class OrderManager:
    """Common plumbing for the prescription and lab order managers.

    Mutations are written straight to the record service and mirrored into the
    draft store only from the server's response. One operation runs at a time
    per manager; a second one started while the first is pending is refused,
    the same way the UI disables its buttons.
    """

    entity_label = "order"

    def __init__(self, context: EncounterContext) -> None:
        self._context = context
        self._pending = False

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def read_only(self) -> bool:
        return self._context.read_only

    @contextmanager
    def _operation(self) -> Iterator[None]:
        if self._pending:
            raise OrderOperationPendingError(f"Another {self.entity_label} operation is still in progress")
        self._pending = True
        try:
            yield
        finally:
            self._pending = False
