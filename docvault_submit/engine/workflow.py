"""End-to-end creation workflow for one draft at a time.

State machine (DraftState):

  start()          None/terminal -> CREATED -> EDITING   (once the schema is loaded)
  resume()         None/terminal -> EDITING              (existing draft)
  save()           EDITING, no state change
  submit()         EDITING -> SUBMITTING -> SUBMITTED    (any failure -> EDITING)
  change_context() EDITING -> ABANDONED, then start() on the new context
  cancel()         any non-terminal -> ABANDONED

SUBMITTED and ABANDONED are terminal. Abandoning a draft schedules a
best-effort delete that is never awaited by the caller; its failure is
logged as AbandonCleanupError and otherwise ignored.

A cancel during SUBMITTING stops submit() at its next step boundary with
WorkflowSubmitError, and the delete is issued then. A cancel that lands
after the enqueue request was sent loses: the draft ends SUBMITTED.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from docvault_submit.client import RepositoryError
from docvault_submit.engine.errors import (
    AbandonCleanupError,
    InvalidTransition,
    SchemaFetchError,
    ValidationFailed,
    WorkflowSubmitError,
)
from docvault_submit.engine.loader import SchemaLoader
from docvault_submit.engine.model import ContextRef, DraftState, RecordDraft, parse_draft
from docvault_submit.engine.notify import LoggingNotifier, Notifier
from docvault_submit.engine.schema import FormSchema
from docvault_submit.engine.store import FieldValueStore
from docvault_submit.engine.transaction import CommitOutcome, TransactionCoordinator
from docvault_submit.engine.validation import UploadPolicy
from docvault_submit.settings import SubmissionSettings

logger = logging.getLogger("docvault_submit.engine.workflow")

_FORWARD: dict[DraftState, set[DraftState]] = {
    DraftState.CREATED: {DraftState.EDITING},
    DraftState.EDITING: {DraftState.SUBMITTING},
    # the one backward edge: a failed submit returns the draft for editing
    DraftState.SUBMITTING: {DraftState.EDITING, DraftState.SUBMITTED},
}


class WorkflowOrchestrator:
    """Drives create → populate → license → upload → submit for a draft.

    client:   RepositoryClient (or anything with the same coroutines).
    notifier: outcome sink; defaults to LoggingNotifier.
    settings: upload limits and the default record type.
    """

    def __init__(
        self,
        client: Any,
        notifier: Notifier | None = None,
        settings: SubmissionSettings | None = None,
        loader: SchemaLoader | None = None,
    ) -> None:
        self._client = client
        self._notifier = notifier or LoggingNotifier()
        self._settings = settings or SubmissionSettings()
        self._loader = loader or SchemaLoader(client)
        self._state: DraftState | None = None
        self._tx: TransactionCoordinator | None = None
        self._context: ContextRef | None = None
        self._cleanup_tasks: set[asyncio.Task] = set()
        # draft created by start() whose schema is still loading
        self._creating: RecordDraft | None = None
        self._abandoned: set[str] = set()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> DraftState | None:
        return self._state

    @property
    def context(self) -> ContextRef | None:
        return self._context

    @property
    def draft(self) -> RecordDraft | None:
        return self._tx.committed if self._tx else None

    @property
    def transaction(self) -> TransactionCoordinator:
        return self._session("edit")

    @property
    def schema(self) -> FormSchema:
        return self._session("edit").schema

    @property
    def store(self) -> FieldValueStore:
        return self._session("edit").store

    def context_for(self, collection_id: str) -> ContextRef:
        return ContextRef(collection_id=collection_id, record_type=self._settings.default_record_type)

    # ------------------------------------------------------------------
    # Session start
    # ------------------------------------------------------------------

    async def start(self, context: ContextRef) -> RecordDraft:
        """Create a draft in context and load its schema."""
        self._require_idle("start")
        raw = await self._client.create_draft(context.collection_id)
        try:
            draft = parse_draft(raw, state=DraftState.CREATED)
        except SchemaFetchError as e:
            if isinstance(raw, dict) and raw.get("id") not in (None, ""):
                self._abandon(str(raw["id"]))
            self._notifier.error(f"Could not create a draft in collection {context.collection_id}", e)
            raise
        self._tx = None
        self._creating = draft
        self._state = DraftState.CREATED
        self._context = context
        logger.info("Draft %s created in collection %s", draft.id, context.collection_id)

        try:
            schema = await self._loader.load(context, draft.definition)
        except (SchemaFetchError, RepositoryError) as e:
            if self._creating is draft:
                # the draft is unusable without a schema
                self._creating = None
                self._state = DraftState.ABANDONED
                self._abandon(draft.id)
            draft.state = DraftState.ABANDONED
            self._notifier.error(f"Could not load the form for collection {context.collection_id}", e)
            raise

        if self._creating is not draft:
            # cancelled while the schema was loading; cancel() already scheduled the delete
            draft.state = DraftState.ABANDONED
            logger.info("Draft %s cancelled before editing began", draft.id)
            return draft
        self._creating = None

        self._open(schema, draft)
        self._transition(DraftState.EDITING, "edit")
        self._notifier.success(f"Draft {draft.id} created")
        return self._tx.committed  # type: ignore[union-attr]

    async def resume(self, draft_id: str) -> RecordDraft:
        """Reopen an existing unfinished draft for editing."""
        self._require_idle("resume")
        raw = await self._client.get_draft(draft_id)
        draft = parse_draft(raw, state=DraftState.EDITING)
        if draft.definition is None and not draft.collection_id:
            raise SchemaFetchError(f"draft {draft_id} carries neither a definition nor a collection")
        context = self.context_for(draft.collection_id or "")
        schema = await self._loader.load(context, draft.definition)
        self._context = context
        self._open(schema, draft)
        self._state = DraftState.EDITING
        logger.info("Draft %s resumed", draft_id)
        return draft

    async def change_context(self, context: ContextRef) -> RecordDraft:
        """Abandon the current draft (without waiting for its deletion) and start over."""
        tx = self._session("change context")
        if self._state is not DraftState.EDITING:
            raise InvalidTransition(self._state_name(), "change context")
        old_id = tx.committed.id
        self._abandon(old_id)
        self._transition(DraftState.ABANDONED, "change context")
        logger.info("Context changed: draft %s abandoned", old_id)
        return await self.start(context)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    async def save(self) -> CommitOutcome:
        """Commit pending changes; the draft stays in EDITING."""
        tx = self._session("save")
        if self._state is not DraftState.EDITING:
            raise InvalidTransition(self._state_name(), "save")
        try:
            outcome = await tx.save()
        except ValidationFailed as e:
            self._notifier.error("Please fix the highlighted fields", e)
            raise
        except Exception as e:
            self._notifier.error(f"Saving draft {tx.committed.id} failed", e)
            raise
        for err in outcome.file_errors:
            self._notifier.error(str(err))
        self._notifier.success(f"Draft {tx.committed.id} saved")
        return outcome

    def discard(self) -> None:
        self._session("discard").discard()

    # ------------------------------------------------------------------
    # Submit / cancel
    # ------------------------------------------------------------------

    async def submit(self) -> RecordDraft:
        """Commit outstanding changes, grant the license and enqueue for review.

        Validation failures raise ValidationFailed before any network call.
        Any other failure returns the draft to EDITING and re-raises, so
        the caller can retry; steps already done are skipped next time.
        """
        tx = self._session("submit")
        self._transition(DraftState.SUBMITTING, "submit")

        errors = tx.validate()
        if errors:
            self._transition(DraftState.EDITING, "submit")
            self._notifier.error("Please fix the highlighted fields", ValidationFailed(errors))
            raise ValidationFailed(errors)

        try:
            await self._run_submit(tx)
        except Exception as e:
            if self._state is DraftState.SUBMITTING:
                self._transition(DraftState.EDITING, "submit")
                self._notifier.error(f"Submission of draft {tx.committed.id} failed", e)
            else:
                # cancelled mid-submit: the deferred delete is due now
                self._abandon(tx.committed.id)
            raise

        if self._state is DraftState.ABANDONED:
            # cancel() arrived while the enqueue request was in flight; the draft is with reviewers
            logger.warning("Draft %s was cancelled after it had been enqueued; cancel ignored", tx.committed.id)
            self._state = DraftState.SUBMITTED
            tx.committed.state = DraftState.SUBMITTED
        else:
            self._transition(DraftState.SUBMITTED, "submit")
        self._notifier.success(f"Draft {tx.committed.id} submitted for review")
        return tx.committed

    async def _run_submit(self, tx: TransactionCoordinator) -> None:
        draft_id = tx.committed.id

        self._stop_if_cancelled(draft_id, "commit")
        change_set = tx.prepare()
        if not change_set.is_empty:
            try:
                outcome = await tx.commit(draft_id, change_set)
            except RepositoryError as e:
                raise WorkflowSubmitError("commit", str(e)) from e
            if outcome.file_errors:
                raise WorkflowSubmitError("commit", "; ".join(str(e) for e in outcome.file_errors))

        self._stop_if_cancelled(draft_id, "license")
        if not tx.committed.license_granted:
            try:
                await self._client.grant_license(draft_id)
            except RepositoryError as e:
                raise WorkflowSubmitError("license", str(e)) from e
            tx.mark_license_granted()
            logger.info("Draft %s: license granted", draft_id)
        else:
            logger.debug("Draft %s: license already granted", draft_id)

        self._stop_if_cancelled(draft_id, "enqueue")
        try:
            await self._client.submit_for_review(draft_id)
        except RepositoryError as e:
            raise WorkflowSubmitError("enqueue", str(e)) from e
        logger.info("Draft %s enqueued for review", draft_id)

    def _stop_if_cancelled(self, draft_id: str, step: str) -> None:
        # cancel() during SUBMITTING defers the delete to here, so it never
        # races a request that is still in flight
        if self._state is DraftState.ABANDONED:
            self._abandon(draft_id)
            raise WorkflowSubmitError(step, f"draft {draft_id} was cancelled")

    def cancel(self) -> None:
        """Abandon the current draft; deletion runs in the background.

        Allowed from any non-terminal state. While the schema of a new draft
        is still loading, start() stops short of EDITING. While a submit is
        in flight, the delete is issued by submit() at its next step
        boundary. Must be called on the running event loop.
        """
        creating = self._creating if self._state is DraftState.CREATED else None
        if creating is not None:
            draft_id = creating.id
        else:
            draft_id = self._session("cancel").committed.id
        if self._state is not DraftState.SUBMITTING:
            # schedule first: without a running loop this raises and the state is left as is
            self._abandon(draft_id)
        self._transition(DraftState.ABANDONED, "cancel")
        self._creating = None
        self._notifier.success(f"Draft {draft_id} discarded")

    async def wait_for_cleanup(self) -> None:
        """Await any pending abandonment deletes (e.g. before the loop closes)."""
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open(self, schema: FormSchema, draft: RecordDraft) -> None:
        self._tx = TransactionCoordinator(
            self._client,
            schema,
            draft,
            policy=UploadPolicy(self._settings),
        )

    def _abandon(self, draft_id: str) -> None:
        if draft_id in self._abandoned:
            return
        # fire and forget; keep a reference so the task is not garbage collected
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._delete_draft(draft_id), name=f"abandon-{draft_id[:8]}")
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        self._abandoned.add(draft_id)

    async def _delete_draft(self, draft_id: str) -> None:
        try:
            await self._client.delete_draft(draft_id)
        except RepositoryError as e:
            logger.warning("%s", AbandonCleanupError(draft_id, str(e)))
            self._abandoned.discard(draft_id)
            return
        logger.info("Abandoned draft %s deleted", draft_id)

    def _transition(self, new: DraftState, requested: str) -> None:
        current = self._state
        if current is None or current.terminal:
            raise InvalidTransition(self._state_name(), requested)
        if not new.terminal and new not in _FORWARD.get(current, set()):
            raise InvalidTransition(self._state_name(), requested)
        logger.debug("Draft state %s -> %s", current.value, new.value)
        self._state = new
        if self._tx is not None:
            self._tx.committed.state = new

    def _session(self, requested: str) -> TransactionCoordinator:
        if self._tx is None or self._state is None or self._state.terminal:
            raise InvalidTransition(self._state_name(), requested)
        return self._tx

    def _require_idle(self, requested: str) -> None:
        if self._state is not None and not self._state.terminal:
            raise InvalidTransition(self._state_name(), requested)

    def _state_name(self) -> str:
        return self._state.value if self._state else "idle"
