"""Two-layer (proposed / committed) edit transaction for one draft.

The committed layer is the last RecordDraft the server acknowledged. The
proposed layer is the FieldValueStore plus staged file actions. prepare()
turns the difference into a PendingChangeSet; commit() sends it; discard()
drops the proposed layer without any network call.

commit() runs strictly in this order:

  1. metadata   one PATCH per section; the first rejected batch aborts the
                commit with PatchApplyError and the unapplied remainder of
                the change set is retained for retry
  2. removals   file detaches, concurrently; failures collected
  3. uploads    file attaches, one at a time; failures collected
  4. reload     canonical draft re-read; becomes the new committed layer

Applied patches are never rolled back when a later step fails.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from docvault_submit.client import RepositoryError
from docvault_submit.engine.errors import (
    FileTransferError,
    PatchApplyError,
    ValidationError,
    ValidationFailed,
)
from docvault_submit.engine.model import FileBlob, RecordDraft, Snapshot, parse_draft
from docvault_submit.engine.patch import PatchReconciler, PendingChangeSet, ops_to_wire
from docvault_submit.engine.schema import FormSchema
from docvault_submit.engine.store import FieldValueStore
from docvault_submit.engine.validation import UploadPolicy, ValidationGate

logger = logging.getLogger("docvault_submit.engine.transaction")


@dataclass
class CommitOutcome:
    """Result of a commit that got past the metadata step.

    applied_sections: sections whose operation batch the backend accepted.
    failed_removals / failed_uploads: per-file errors; those files stay
        pending and are sent again by the next save.
    """

    draft: RecordDraft
    applied_sections: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    failed_removals: list[FileTransferError] = field(default_factory=list)
    failed_uploads: list[FileTransferError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.failed_removals or self.failed_uploads)

    @property
    def file_errors(self) -> list[FileTransferError]:
        return self.failed_removals + self.failed_uploads


class TransactionCoordinator:
    """Batches and commits the proposed changes of one draft."""

    def __init__(
        self,
        client: Any,
        schema: FormSchema,
        draft: RecordDraft,
        store: FieldValueStore | None = None,
        reconciler: PatchReconciler | None = None,
        gate: ValidationGate | None = None,
        policy: UploadPolicy | None = None,
    ) -> None:
        self._client = client
        self._schema = schema
        self._committed = draft
        self._store = store or FieldValueStore(schema)
        self._store.bind(schema)
        self._store.load(draft.metadata_snapshot)
        self._reconciler = reconciler or PatchReconciler()
        self._gate = gate or ValidationGate()
        self._policy = policy or UploadPolicy()
        self._pending_files: list[FileBlob] = []
        self._pending_removals: list[str] = []
        # change set of the last failed commit, and the store state it was built from
        self._retained: PendingChangeSet | None = None
        self._retained_from: Snapshot | None = None

    @property
    def store(self) -> FieldValueStore:
        return self._store

    @property
    def schema(self) -> FormSchema:
        return self._schema

    @property
    def committed(self) -> RecordDraft:
        return self._committed

    @property
    def pending_files(self) -> list[FileBlob]:
        return list(self._pending_files)

    @property
    def pending_removals(self) -> list[str]:
        return list(self._pending_removals)

    @property
    def has_changes(self) -> bool:
        return not self.prepare().is_empty

    # ------------------------------------------------------------------
    # Proposed layer
    # ------------------------------------------------------------------

    def stage_file(self, blob: FileBlob) -> None:
        """Queue a local file for upload on the next commit.

        Raises FileTransferError when the upload policy rejects the file.
        """
        problems = self._policy.check(blob)
        if problems:
            raise FileTransferError("upload", blob.name, "; ".join(problems))
        self._pending_files.append(blob)

    def unstage_file(self, name: str) -> bool:
        for i, blob in enumerate(self._pending_files):
            if blob.name == name:
                del self._pending_files[i]
                return True
        return False

    def mark_file_removed(self, file_id: str) -> None:
        """Queue an attached file for removal on the next commit."""
        if not any(f.id == file_id for f in self._committed.attached_files):
            raise KeyError(f"file {file_id} is not attached to draft {self._committed.id}")
        if file_id not in self._pending_removals:
            self._pending_removals.append(file_id)

    def mark_license_granted(self) -> None:
        self._committed.license_granted = True

    def validate(self) -> list[ValidationError]:
        """Field and file validation of the proposed layer (no network)."""
        errors = self._gate.validate(self._schema, self._store)
        errors += self._gate.validate_files(
            self._schema,
            self._committed.attached_files,
            self._pending_files,
            self._pending_removals,
        )
        return errors

    def prepare(self) -> PendingChangeSet:
        """Build the change set for the proposed layer.

        After a failed commit the retained change set is returned as long as
        the store has not been edited since, so a retry sends identical
        operations.
        """
        if self._retained is not None and self._store.snapshot() == self._retained_from:
            return PendingChangeSet(
                operations=list(self._retained.operations),
                file_adds=list(self._pending_files),
                file_removals=list(self._pending_removals),
            )
        ops = self._reconciler.diff_all(self._committed.metadata_snapshot, self._store, self._schema)
        return PendingChangeSet(
            operations=ops,
            file_adds=list(self._pending_files),
            file_removals=list(self._pending_removals),
        )

    def discard(self) -> None:
        """Drop every proposed change and restore the committed snapshot."""
        self._store.load(self._committed.metadata_snapshot)
        self._pending_files = []
        self._pending_removals = []
        self._retained = None
        self._retained_from = None
        logger.debug("Discarded pending changes for draft %s", self._committed.id)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def save(self) -> CommitOutcome:
        """Validate, prepare and commit. Raises ValidationFailed without network calls."""
        errors = self.validate()
        if errors:
            raise ValidationFailed(errors)
        change_set = self.prepare()
        if change_set.is_empty:
            return CommitOutcome(draft=self._committed)
        return await self.commit(self._committed.id, change_set)

    async def commit(self, draft_id: str, change_set: PendingChangeSet) -> CommitOutcome:
        outcome = CommitOutcome(draft=self._committed)
        proposed = self._store.snapshot()

        # 1. metadata, one batch per section
        for section_id, ops in change_set.by_section().items():
            try:
                raw = await self._client.apply_operations(draft_id, ops_to_wire(ops))
            except RepositoryError as e:
                self._retained = change_set.without_sections(set(outcome.applied_sections))
                self._retained_from = proposed
                if e.status_code is None:
                    # no response: the batch was never judged by the backend
                    logger.error(
                        "Draft %s: section %s not delivered; %d ops retained: %s",
                        draft_id, section_id, len(self._retained.operations), e,
                    )
                    raise
                logger.error(
                    "Draft %s: section %s rejected (%d ops); %d ops retained",
                    draft_id, section_id, len(ops), len(self._retained.operations),
                )
                raise PatchApplyError(section_id, e.detail or str(e), e.status_code) from e
            outcome.applied_sections.append(section_id)
            if raw:
                self._accept(parse_draft(raw, state=self._committed.state))
        self._retained = None
        self._retained_from = None

        # 2. removals, independent of each other
        results = await asyncio.gather(
            *[self._remove(file_id) for file_id in change_set.file_removals],
            return_exceptions=True,
        )
        for file_id, result in zip(change_set.file_removals, results):
            if isinstance(result, FileTransferError):
                outcome.failed_removals.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome.removed.append(file_id)
                self._pending_removals = [f for f in self._pending_removals if f != file_id]

        # 3. uploads, one at a time against the same draft
        for blob in change_set.file_adds:
            try:
                await self._client.attach_file(draft_id, blob.name, blob.content, blob.mime_type)
            except RepositoryError as e:
                logger.warning("Draft %s: upload of %s failed: %s", draft_id, blob.name, e)
                outcome.failed_uploads.append(FileTransferError("upload", blob.name, e.detail or str(e)))
                continue
            outcome.uploaded.append(blob.name)
            if blob in self._pending_files:
                self._pending_files.remove(blob)

        # 4. reload the canonical state
        raw = await self._client.get_draft(draft_id)
        self._accept(parse_draft(raw, state=self._committed.state))
        self._store.load(self._committed.metadata_snapshot)
        outcome.draft = self._committed

        logger.info(
            "Draft %s committed: %d sections, %d removed, %d uploaded, %d file failures",
            draft_id, len(outcome.applied_sections), len(outcome.removed),
            len(outcome.uploaded), len(outcome.file_errors),
        )
        return outcome

    async def _remove(self, file_id: str) -> None:
        try:
            await self._client.detach_file(file_id)
        except RepositoryError as e:
            logger.warning("Removal of file %s failed: %s", file_id, e)
            raise FileTransferError("remove", file_id, e.detail or str(e)) from e

    def _accept(self, draft: RecordDraft) -> None:
        # PATCH responses may omit the definition; keep the one we have
        if draft.definition is None:
            draft.definition = self._committed.definition
        if self._committed.license_granted and not draft.license_granted:
            draft.license_granted = True
        self._committed = draft
