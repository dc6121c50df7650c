"""WorkflowOrchestrator: state machine, submit retries and abandonment."""

from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import FakeRepository, value_obj
from docvault_submit.client import RepositoryError
from docvault_submit.engine import (
    ContextRef,
    DraftState,
    FileBlob,
    InvalidTransition,
    PatchApplyError,
    RecordingNotifier,
    SchemaFetchError,
    ValidationFailed,
    WorkflowOrchestrator,
    WorkflowSubmitError,
)


def _orchestrator(repo: FakeRepository) -> tuple[WorkflowOrchestrator, RecordingNotifier]:
    notifier = RecordingNotifier()
    return WorkflowOrchestrator(repo, notifier=notifier), notifier


def _fill_mandatory(orch: WorkflowOrchestrator) -> None:
    orch.store.set("dc.title", "Report")
    orch.store.set("dc.date.issued", "2024")


# ---------------------------------------------------------------------------
# Start / resume
# ---------------------------------------------------------------------------


class TestStart:

    @pytest.mark.asyncio
    async def test_start_creates_draft_and_enters_editing(self, fake_repo):
        orch, notifier = _orchestrator(fake_repo)
        assert orch.state is None

        draft = await orch.start(ContextRef("col-1"))

        assert orch.state is DraftState.EDITING
        assert draft.state is DraftState.EDITING
        assert fake_repo.names() == ["create_draft", "get_form_config"]
        assert orch.schema.find_field("dc.title") is not None
        assert notifier.successes == [f"Draft {draft.id} created"]

    @pytest.mark.asyncio
    async def test_definition_looked_up_when_not_embedded(self):
        repo = FakeRepository(embed_definition=False)
        orch, _ = _orchestrator(repo)
        await orch.start(ContextRef("col-1"))
        assert repo.names() == ["create_draft", "find_submission_definition", "get_form_config"]

    @pytest.mark.asyncio
    async def test_schema_failure_abandons_new_draft(self):
        repo = FakeRepository(forms={})
        orch, notifier = _orchestrator(repo)

        with pytest.raises(SchemaFetchError):
            await orch.start(ContextRef("col-1"))
        await orch.wait_for_cleanup()

        assert orch.state is DraftState.ABANDONED
        assert repo.names().count("delete_draft") == 1
        assert repo.drafts == {}
        assert len(notifier.errors) == 1

    @pytest.mark.asyncio
    async def test_start_while_editing_is_invalid(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        with pytest.raises(InvalidTransition):
            await orch.start(ContextRef("col-1"))

    @pytest.mark.asyncio
    async def test_resume_existing_draft(self, fake_repo):
        draft_id = fake_repo.seed_draft({"dc.title": [value_obj("Existing")]})
        orch, _ = _orchestrator(fake_repo)

        draft = await orch.resume(draft_id)

        assert draft.id == draft_id
        assert orch.state is DraftState.EDITING
        assert orch.store.get("dc.title") == "Existing"
        assert orch.context == ContextRef("col-1")


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------


class TestSubmit:

    @pytest.mark.asyncio
    async def test_validation_blocks_all_network_calls(self, fake_repo):
        orch, notifier = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        orch.store.set("dc.date.issued", "2024")
        fake_repo.calls.clear()

        with pytest.raises(ValidationFailed) as exc_info:
            await orch.submit()

        assert [e.metadata_key for e in exc_info.value.errors] == ["dc.title"]
        assert fake_repo.calls == []
        assert orch.state is DraftState.EDITING
        assert notifier.errors

    @pytest.mark.asyncio
    async def test_submit_happy_path_order(self, fake_repo):
        orch, notifier = _orchestrator(fake_repo)
        draft = await orch.start(ContextRef("col-1"))
        _fill_mandatory(orch)
        orch.transaction.stage_file(FileBlob("paper.pdf", b"%PDF"))
        fake_repo.calls.clear()

        result = await orch.submit()

        assert fake_repo.names() == [
            "apply_operations", "attach_file", "get_draft", "grant_license", "submit_for_review",
        ]
        assert orch.state is DraftState.SUBMITTED
        assert result.state is DraftState.SUBMITTED
        assert fake_repo.submitted == [draft.id]
        assert notifier.successes[-1] == f"Draft {draft.id} submitted for review"

    @pytest.mark.asyncio
    async def test_enqueue_failure_then_retry_skips_done_steps(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        _fill_mandatory(orch)
        fake_repo.fail("submit_for_review", status=503)

        with pytest.raises(WorkflowSubmitError) as exc_info:
            await orch.submit()
        assert exc_info.value.step == "enqueue"
        assert orch.state is DraftState.EDITING

        fake_repo.calls.clear()
        await orch.submit()

        # metadata already committed and license already granted
        assert fake_repo.names() == ["submit_for_review"]
        assert orch.state is DraftState.SUBMITTED

    @pytest.mark.asyncio
    async def test_license_failure_stays_editing(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        _fill_mandatory(orch)
        fake_repo.fail("grant_license")

        with pytest.raises(WorkflowSubmitError) as exc_info:
            await orch.submit()

        assert exc_info.value.step == "license"
        assert orch.state is DraftState.EDITING
        assert "submit_for_review" not in fake_repo.names()

        fake_repo.calls.clear()
        await orch.submit()
        assert fake_repo.names() == ["grant_license", "submit_for_review"]

    @pytest.mark.asyncio
    async def test_rejected_patch_propagates_and_stays_editing(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        _fill_mandatory(orch)
        fake_repo.fail("apply_operations")

        with pytest.raises(PatchApplyError):
            await orch.submit()

        assert orch.state is DraftState.EDITING
        assert "grant_license" not in fake_repo.names()
        assert orch.store.get("dc.title") == "Report"

    @pytest.mark.asyncio
    async def test_failed_upload_blocks_submission(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        _fill_mandatory(orch)
        orch.transaction.stage_file(FileBlob("paper.pdf", b"%PDF"))
        fake_repo.fail("attach_file")

        with pytest.raises(WorkflowSubmitError) as exc_info:
            await orch.submit()

        assert exc_info.value.step == "commit"
        assert orch.state is DraftState.EDITING
        assert [b.name for b in orch.transaction.pending_files] == ["paper.pdf"]

    @pytest.mark.asyncio
    async def test_submitted_is_terminal(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        _fill_mandatory(orch)
        await orch.submit()

        with pytest.raises(InvalidTransition):
            await orch.submit()
        with pytest.raises(InvalidTransition):
            orch.cancel()

    @pytest.mark.asyncio
    async def test_submit_without_session(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        with pytest.raises(InvalidTransition):
            await orch.submit()


# ---------------------------------------------------------------------------
# Abandonment
# ---------------------------------------------------------------------------


class TestAbandon:

    @pytest.mark.asyncio
    async def test_change_context_does_not_wait_for_delete(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        old = await orch.start(ContextRef("col-1"))
        fake_repo.delete_gate = asyncio.Event()

        new = await orch.change_context(ContextRef("col-2"))
        await asyncio.sleep(0)

        assert new.id != old.id
        assert orch.state is DraftState.EDITING
        assert orch.context == ContextRef("col-2")
        deletes = [args for name, args in fake_repo.calls if name == "delete_draft"]
        assert deletes == [(old.id,)]
        # delete is still blocked, yet the new session is already usable
        assert old.id in fake_repo.drafts

        fake_repo.delete_gate.set()
        await orch.wait_for_cleanup()
        assert old.id not in fake_repo.drafts

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_logged_only(self, fake_repo, caplog):
        orch, notifier = _orchestrator(fake_repo)
        draft = await orch.start(ContextRef("col-1"))
        fake_repo.fail("delete_draft", status=500)

        with caplog.at_level(logging.WARNING, logger="docvault_submit.engine.workflow"):
            orch.cancel()
            await orch.wait_for_cleanup()

        assert orch.state is DraftState.ABANDONED
        assert f"cleanup of draft {draft.id} failed" in caplog.text
        assert notifier.errors == []

    @pytest.mark.asyncio
    async def test_change_context_requires_editing(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        with pytest.raises(InvalidTransition):
            await orch.change_context(ContextRef("col-2"))

    @pytest.mark.asyncio
    async def test_new_session_after_cancel(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        orch.cancel()
        await orch.wait_for_cleanup()

        await orch.start(ContextRef("col-1"))
        assert orch.state is DraftState.EDITING


# ---------------------------------------------------------------------------
# Cancel in transient states
# ---------------------------------------------------------------------------


async def _until(predicate) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition not reached")


class TestCancelInFlight:

    @pytest.mark.asyncio
    async def test_cancel_while_schema_loads(self, fake_repo):
        orch, _ = _orchestrator(fake_repo)
        fake_repo.form_delay = 0.05

        starting = asyncio.create_task(orch.start(ContextRef("col-1")))
        await _until(lambda: fake_repo.in_flight > 0)
        assert orch.state is DraftState.CREATED

        orch.cancel()
        draft = await starting
        await orch.wait_for_cleanup()

        assert orch.state is DraftState.ABANDONED
        assert draft.state is DraftState.ABANDONED
        assert fake_repo.names().count("delete_draft") == 1
        assert fake_repo.drafts == {}
        with pytest.raises(InvalidTransition):
            orch.store

    @pytest.mark.asyncio
    async def test_cancel_during_submit_stops_before_next_step(self, fake_repo):
        orch, notifier = _orchestrator(fake_repo)
        draft = await orch.start(ContextRef("col-1"))
        _fill_mandatory(orch)
        fake_repo.license_gate = asyncio.Event()

        submitting = asyncio.create_task(orch.submit())
        await _until(lambda: "grant_license" in fake_repo.names())
        assert orch.state is DraftState.SUBMITTING

        orch.cancel()
        assert orch.state is DraftState.ABANDONED
        # no delete while the license request is still in flight
        assert "delete_draft" not in fake_repo.names()

        fake_repo.license_gate.set()
        with pytest.raises(WorkflowSubmitError) as exc_info:
            await submitting
        await orch.wait_for_cleanup()

        assert exc_info.value.step == "enqueue"
        assert orch.state is DraftState.ABANDONED
        names = fake_repo.names()
        assert "submit_for_review" not in names
        assert names.index("grant_license") < names.index("delete_draft")
        assert names.count("delete_draft") == 1
        assert draft.id not in fake_repo.drafts
        assert notifier.successes[-1] == f"Draft {draft.id} discarded"

    @pytest.mark.asyncio
    async def test_transport_failure_on_save_reraised(self, fake_repo):
        orch, notifier = _orchestrator(fake_repo)
        await orch.start(ContextRef("col-1"))
        _fill_mandatory(orch)
        fake_repo.fail("apply_operations", status=None)

        with pytest.raises(RepositoryError):
            await orch.save()

        assert orch.state is DraftState.EDITING
        assert notifier.errors

    @pytest.mark.asyncio
    async def test_unreadable_create_response_deletes_draft(self):
        class BrokenCreate(FakeRepository):
            async def create_draft(self, collection_id):
                payload = await super().create_draft(collection_id)
                payload["sections"] = "not an object"
                return payload

        repo = BrokenCreate()
        orch, notifier = _orchestrator(repo)

        with pytest.raises(SchemaFetchError):
            await orch.start(ContextRef("col-1"))
        await orch.wait_for_cleanup()

        assert [args for name, args in repo.calls if name == "delete_draft"] == [("1",)]
        assert repo.drafts == {}
        assert orch.state is None
        assert len(notifier.errors) == 1


def test_cancel_outside_event_loop_leaves_state(fake_repo):
    orch, _ = _orchestrator(fake_repo)
    asyncio.run(orch.start(ContextRef("col-1")))

    with pytest.raises(RuntimeError):
        orch.cancel()

    assert orch.state is DraftState.EDITING
    assert "delete_draft" not in fake_repo.names()
