"""Dynamic submission engine: schema, proposed/committed state, patch and workflow."""

from docvault_submit.engine.errors import (
    AbandonCleanupError,
    FileTransferError,
    InvalidTransition,
    PatchApplyError,
    SchemaFetchError,
    SubmissionError,
    ValidationError,
    ValidationFailed,
    WorkflowSubmitError,
)
from docvault_submit.engine.loader import SchemaLoader
from docvault_submit.engine.model import (
    ContextRef,
    DraftState,
    FileBlob,
    FileRef,
    MetadataValue,
    RecordDraft,
    parse_draft,
)
from docvault_submit.engine.notify import LoggingNotifier, Notifier, RecordingNotifier
from docvault_submit.engine.patch import PatchKind, PatchOperation, PatchReconciler, PendingChangeSet
from docvault_submit.engine.schema import (
    FieldDescriptor,
    FormSchema,
    InputKind,
    RowDescriptor,
    SchemaParser,
    SectionDescriptor,
    SectionKind,
)
from docvault_submit.engine.store import FieldValueStore
from docvault_submit.engine.transaction import CommitOutcome, TransactionCoordinator
from docvault_submit.engine.validation import UploadPolicy, ValidationGate
from docvault_submit.engine.workflow import WorkflowOrchestrator

__all__ = [
    "AbandonCleanupError",
    "CommitOutcome",
    "ContextRef",
    "DraftState",
    "FieldDescriptor",
    "FieldValueStore",
    "FileBlob",
    "FileRef",
    "FileTransferError",
    "FormSchema",
    "InputKind",
    "InvalidTransition",
    "LoggingNotifier",
    "MetadataValue",
    "Notifier",
    "PatchApplyError",
    "PatchKind",
    "PatchOperation",
    "PatchReconciler",
    "PendingChangeSet",
    "RecordDraft",
    "RecordingNotifier",
    "RowDescriptor",
    "SchemaFetchError",
    "SchemaLoader",
    "SchemaParser",
    "SectionDescriptor",
    "SectionKind",
    "SubmissionError",
    "TransactionCoordinator",
    "UploadPolicy",
    "ValidationError",
    "ValidationFailed",
    "ValidationGate",
    "WorkflowOrchestrator",
    "WorkflowSubmitError",
    "parse_draft",
]
