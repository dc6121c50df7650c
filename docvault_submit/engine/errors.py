"""Error taxonomy for the submission engine.

SubmissionError
  SchemaFetchError     — form schema missing or structurally invalid (fatal to start)
  ValidationError      — one field-level problem; returned in lists, never sent over the wire
  ValidationFailed     — raised when a non-empty ValidationError list blocks a commit
  PatchApplyError      — backend rejected a section's operation batch
  FileTransferError    — one file attach/detach failed; collected, not raised
  WorkflowSubmitError  — license grant or review enqueue failed during submit
  AbandonCleanupError  — best-effort draft delete failed; logged only
  InvalidTransition    — draft state machine used out of order

Transport failures surface as docvault_submit.client.RepositoryError and are
wrapped by the engine only where the taxonomy above needs the distinction.
"""

from __future__ import annotations


class SubmissionError(Exception):
    """Base class for every error raised by the submission engine."""


class SchemaFetchError(SubmissionError):
    """The form schema for a context could not be loaded or was malformed.

    section_id: Section whose configuration was at fault, when known.
    """

    def __init__(self, message: str, section_id: str | None = None) -> None:
        if section_id:
            message = f"section '{section_id}': {message}"
        super().__init__(message)
        self.section_id = section_id


class ValidationError(SubmissionError):
    """A single field failed a mandatory or shape constraint.

    Instances are plain values: ValidationGate returns them in a list and the
    caller decides how to display them.
    """

    def __init__(
        self,
        metadata_key: str,
        message: str,
        label: str = "",
        section_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.metadata_key = metadata_key
        self.message = message
        self.label = label
        self.section_id = section_id

    def __repr__(self) -> str:
        return f"ValidationError({self.metadata_key!r}, {self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ValidationError):
            return NotImplemented
        return (self.metadata_key, self.message, self.section_id) == (
            other.metadata_key, other.message, other.section_id,
        )

    def __hash__(self) -> int:
        return hash((self.metadata_key, self.message, self.section_id))


class ValidationFailed(SubmissionError):
    """Raised when local validation blocks a commit or submit.

    errors: the ValidationError list that blocked the operation.
    """

    def __init__(self, errors: list[ValidationError]) -> None:
        super().__init__("; ".join(e.message for e in errors))
        self.errors = errors


class PatchApplyError(SubmissionError):
    """The backend rejected a batch of patch operations for one section."""

    def __init__(
        self,
        section_id: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(f"section '{section_id}' rejected: {message}")
        self.section_id = section_id
        self.status_code = status_code


class FileTransferError(SubmissionError):
    """One file upload or removal failed.

    action: "upload" or "remove".
    target: file name for uploads, file id for removals.
    """

    def __init__(self, action: str, target: str, message: str) -> None:
        super().__init__(f"{action} of '{target}' failed: {message}")
        self.action = action
        self.target = target


class WorkflowSubmitError(SubmissionError):
    """A submit sub-step failed; the draft stays editable.

    step: "commit", "license" or "enqueue".
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"submit failed at {step}: {message}")
        self.step = step


class AbandonCleanupError(SubmissionError):
    """Deleting an abandoned draft failed. Never propagated to callers."""

    def __init__(self, draft_id: str, message: str) -> None:
        super().__init__(f"cleanup of draft {draft_id} failed: {message}")
        self.draft_id = draft_id


class InvalidTransition(SubmissionError):
    """A workflow operation was invoked from a state that does not allow it."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"cannot {requested} while draft is {current}")
        self.current = current
        self.requested = requested
