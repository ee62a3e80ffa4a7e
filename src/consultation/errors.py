"""
Exception hierarchy for the consultation workflow.

Every error raised by the draft store, the order managers, the completion
orchestrator or the record service client derives from ``ConsultationError``
and carries:

- message: human readable description, safe to show to the clinician
- code:    stable machine identifier (e.g. ``ALLERGY_CONFLICT``)
- detail:  optional extra payload (field errors, server body, ...)

Callers decide how to present an error by its class, never by parsing the
message.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ConsultationError(Exception):
    """Base class for all consultation workflow errors."""

    code = "CONSULTATION_ERROR"
    # Whether the user can retry the same operation without changing input.
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, detail: Any = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(message)


# Local (pre-network) failures


class FieldValidationError(ConsultationError):
    """One or more form fields are invalid. Shown inline, immediately recoverable."""

    code = "VALIDATION_ERROR"

    def __init__(self, errors: Dict[str, str], message: str = "Validation failed") -> None:
        self.errors = dict(errors)
        super().__init__(message, detail=self.errors)


class InsufficientStockError(FieldValidationError):
    """Stock validation for an instant-dispensing prescription came back negative.

    Reported on the ``stock`` field; the prescriber may lower the quantity and
    resubmit.
    """

    code = "INSUFFICIENT_STOCK"

    def __init__(self, message: str) -> None:
        super().__init__({"stock": message}, message=message)


class BusinessRuleError(ConsultationError):
    code = "BUSINESS_RULE"


class AllergyConflictError(BusinessRuleError):
    """The patient is allergic to the selected drug. There is no override path."""

    code = "ALLERGY_CONFLICT"


class EncounterReadOnlyError(ConsultationError):
    code = "ENCOUNTER_COMPLETED"

    def __init__(self, message: str = "Cannot modify completed consultation") -> None:
        super().__init__(message)


class OrderOperationPendingError(ConsultationError):
    code = "OPERATION_PENDING"


# Record service failures


class RecordServiceError(ConsultationError):
    """Any failure talking to the remote record service."""

    code = "RECORD_SERVICE_ERROR"


class SessionExpiredError(RecordServiceError):
    """The service answered with something other than a structured JSON body.

    In practice this is a login redirect after the session or CSRF token went
    stale, and occasionally a gateway error page. Neither heals by retrying, so
    the user is asked to refresh.
    """

    code = "SESSION_EXPIRED"

    def __init__(self, message: str = "Session expired. Please refresh the page.", detail: Any = None) -> None:
        super().__init__(message, detail=detail)


class TransientNetworkError(RecordServiceError):
    code = "NETWORK_ERROR"
    retryable = True


class RemoteValidationError(RecordServiceError):
    """The service rejected the payload with a structured error body."""

    code = "REMOTE_VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        errors: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ) -> None:
        self.errors = dict(errors or {})
        super().__init__(message, code=code, detail=self.errors)


class RecordNotFoundError(RecordServiceError):
    code = "NOT_FOUND"


class RemoteOperationError(RecordServiceError):
    """The service reported a structured server-side failure (5xx)."""

    code = "REMOTE_OPERATION_FAILED"
    retryable = True

    def __init__(self, message: str, status_code: int, code: Optional[str] = None) -> None:
        self.status_code = status_code
        super().__init__(message, code=code)


# Completion


class CompletionStep(str, Enum):
    FORCE_SAVE = "force_save"
    PERSIST_NOTE = "persist_note"
    COMPLETE_ENCOUNTER = "complete_encounter"


class CompletionError(ConsultationError):
    """Completion stopped at ``step``; the encounter is still open."""

    code = "COMPLETION_FAILED"
    retryable = True

    def __init__(self, step: CompletionStep, cause: Exception) -> None:
        self.step = step
        self.cause = cause
        message = getattr(cause, "message", None) or str(cause) or cause.__class__.__name__
        super().__init__(_COMPLETION_MESSAGES[step].format(message=message), detail={"step": step.value})


_COMPLETION_MESSAGES = {
    CompletionStep.FORCE_SAVE: "Unsaved changes could not be saved: {message}",
    CompletionStep.PERSIST_NOTE: "The clinical note could not be saved: {message}",
    CompletionStep.COMPLETE_ENCOUNTER: "Failed to complete consultation: {message}",
}


class CompletionInProgressError(ConsultationError):
    code = "COMPLETION_IN_PROGRESS"

    def __init__(self, message: str = "Completion is already in progress") -> None:
        super().__init__(message)
