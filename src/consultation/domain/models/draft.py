from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from src.consultation.domain.models.encounter import ClinicalNoteFields


@dataclass(frozen=True)
class Clean:
    """Local fields match the last persisted snapshot."""

    last_saved_at: Optional[datetime] = None


@dataclass(frozen=True)
class Dirty:
    """Local fields have changes the server has not acknowledged."""

    last_saved_at: Optional[datetime] = None


@dataclass(frozen=True)
class Saving:
    """A flush is in flight carrying ``sent``.

    Fields may keep changing while a save is in flight; the draft only becomes
    clean again if the acknowledged ``sent`` fields still equal the local ones.
    """

    sent: ClinicalNoteFields
    last_saved_at: Optional[datetime] = None


DraftStatus = Union[Clean, Dirty, Saving]
