"""Shared fixtures: an in-memory repository that records every collaborator call."""

from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any

import pytest

from docvault_submit.client import RepositoryError

# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def make_field(
    key: str,
    label: str | None = None,
    input_type: str = "onebox",
    mandatory: bool = False,
    repeatable: bool = False,
    mandatory_message: str | None = None,
    regex: str | None = None,
    hints: str = "",
) -> dict[str, Any]:
    return {
        "input": {"type": input_type, "regex": regex},
        "label": label or key,
        "mandatory": mandatory,
        "repeatable": repeatable,
        "hints": hints,
        "mandatoryMessage": mandatory_message,
        "selectableMetadata": [{"metadata": key, "label": None, "closed": False}],
    }


def make_form(*fields: dict[str, Any], form_id: str = "traditionalpageone") -> dict[str, Any]:
    return {"id": form_id, "name": form_id, "rows": [{"fields": [f]} for f in fields]}


def make_section(
    section_id: str,
    section_type: str = "submission-form",
    mandatory: bool = True,
    config: str | None = None,
) -> dict[str, Any]:
    section: dict[str, Any] = {
        "id": section_id,
        "header": f"submit.progressbar.{section_id}",
        "mandatory": mandatory,
        "sectionType": section_type,
        "_links": {},
    }
    if section_type == "submission-form":
        section["_links"] = {"config": {"href": config or section_id}}
    return section


def make_definition(*sections: dict[str, Any], definition_id: str = "traditional") -> dict[str, Any]:
    return {
        "id": definition_id,
        "name": definition_id,
        "_embedded": {"sections": {"_embedded": {"sections": list(sections)}}},
    }


def value_obj(value: str, place: int = 0, **extra: Any) -> dict[str, Any]:
    return {
        "value": value,
        "language": extra.get("language"),
        "authority": extra.get("authority"),
        "confidence": extra.get("confidence", -1),
        "place": place,
    }


STANDARD_FORM = make_form(
    make_field(
        "dc.title", "Title", mandatory=True,
        mandatory_message="You must enter a main title for this item.",
    ),
    make_field("dc.contributor.author", "Authors", repeatable=True),
    make_field("dc.date.issued", "Date of Issue", input_type="date", mandatory=True),
    make_field("dc.subject", "Subject Keywords", repeatable=True),
    make_field("dc.description.abstract", "Abstract", input_type="textarea"),
    make_field("dc.type", "Type", input_type="dropdown"),
)

STANDARD_DEFINITION = make_definition(
    make_section("traditionalpageone"),
    make_section("upload", "upload", mandatory=False),
    make_section("license", "license"),
)


# ---------------------------------------------------------------------------
# Fake repository
# ---------------------------------------------------------------------------


class FakeRepository:
    """In-memory stand-in for RepositoryClient.

    Every coroutine call is appended to ``calls`` as (name, args). Failures
    are injected with fail(name, times=N); matching calls raise RepositoryError.
    """

    def __init__(
        self,
        definition: dict[str, Any] | None = None,
        forms: dict[str, Any] | None = None,
        embed_definition: bool = True,
    ) -> None:
        self.definition = definition if definition is not None else copy.deepcopy(STANDARD_DEFINITION)
        self.forms = forms if forms is not None else {"traditionalpageone": copy.deepcopy(STANDARD_FORM)}
        self.embed_definition = embed_definition
        self.drafts: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.submitted: list[str] = []
        self.form_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.delete_gate: asyncio.Event | None = None
        self.license_gate: asyncio.Event | None = None
        self.closed = False
        self._failures: dict[str, list[int]] = {}
        self._fail_match: dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._file_ids = itertools.count(1)

    # -- helpers --------------------------------------------------------

    def fail(
        self,
        name: str,
        times: int = 1,
        status: int = 422,
        match: Any = None,
        after: int = 0,
    ) -> None:
        """Make the next `times` matching calls fail, after letting `after` through."""
        self._failures[name] = [times, status, after]
        self._fail_match[name] = match

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def network_calls(self) -> int:
        return len(self.calls)

    def seed_draft(self, metadata: dict[str, list[dict[str, Any]]] | None = None, files: int = 0) -> str:
        draft_id = str(next(self._ids))
        self.drafts[draft_id] = {
            "collection": "col-1",
            "metadata": copy.deepcopy(metadata or {}),
            "files": [],
            "granted": False,
        }
        for i in range(files):
            self._add_file(draft_id, f"seed-{i}.pdf", b"%PDF")
        return draft_id

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        pending = self._failures.get(name)
        if pending and pending[0] > 0:
            match = self._fail_match.get(name)
            if match is None or match in args:
                if pending[2] > 0:
                    pending[2] -= 1
                    return
                pending[0] -= 1
                raise RepositoryError("X", name, pending[1], f"injected {name} failure")

    def _payload(self, draft_id: str) -> dict[str, Any]:
        d = self.drafts[draft_id]
        embedded: dict[str, Any] = {
            "item": {"uuid": f"item-{draft_id}", "metadata": copy.deepcopy(d["metadata"])},
            "collection": {"uuid": d["collection"]},
        }
        if self.embed_definition:
            embedded["submissionDefinition"] = copy.deepcopy(self.definition)
        return {
            "id": int(draft_id),
            "lastModified": "2024-01-01T00:00:00Z",
            "sections": {
                "upload": {"files": copy.deepcopy(d["files"])},
                "license": {"granted": d["granted"]},
            },
            "_embedded": embedded,
            "type": "workspaceitem",
        }

    def _add_file(self, draft_id: str, name: str, content: bytes) -> dict[str, Any]:
        f = {
            "uuid": f"file-{next(self._file_ids)}",
            "sizeBytes": len(content),
            "metadata": {"dc.title": [value_obj(name)]},
            "checkSum": {"checkSumAlgorithm": "MD5", "value": "abc"},
        }
        self.drafts[draft_id]["files"].append(f)
        return f

    def _apply(self, draft_id: str, op: dict[str, Any]) -> None:
        d = self.drafts[draft_id]
        parts = op["path"].strip("/").split("/")
        if parts[:3] == ["sections", "license", "granted"]:
            d["granted"] = str(op["value"]).lower() == "true"
            return
        key = parts[2]
        values = d["metadata"].setdefault(key, [])
        target = parts[3] if len(parts) > 3 else None
        match op["op"], target:
            case "add", None:
                d["metadata"][key] = copy.deepcopy(op["value"])
            case "add", "-":
                values.append(copy.deepcopy(op["value"]))
            case "replace", _ if target is not None:
                values[int(target)] = copy.deepcopy(op["value"])
            case "remove", None:
                d["metadata"].pop(key, None)
            case "remove", _:
                del values[int(target)]
            case _:
                raise AssertionError(f"unsupported op {op}")
        if key in d["metadata"]:
            if not d["metadata"][key]:
                del d["metadata"][key]
            else:
                for i, v in enumerate(d["metadata"][key]):
                    v["place"] = i

    # -- collaborator surface --------------------------------------------

    async def find_submission_definition(self, collection_id: str) -> Any:
        self._record("find_submission_definition", collection_id)
        return copy.deepcopy(self.definition)

    async def get_form_config(self, config_ref: str) -> Any:
        self._record("get_form_config", config_ref)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.form_delay)
        finally:
            self.in_flight -= 1
        if config_ref not in self.forms:
            raise RepositoryError("GET", f"/config/submissionforms/{config_ref}", 404, "Not Found")
        return copy.deepcopy(self.forms[config_ref])

    async def create_draft(self, collection_id: str) -> Any:
        self._record("create_draft", collection_id)
        draft_id = self.seed_draft()
        self.drafts[draft_id]["collection"] = collection_id
        return self._payload(draft_id)

    async def get_draft(self, draft_id: str) -> Any:
        self._record("get_draft", draft_id)
        if draft_id not in self.drafts:
            raise RepositoryError("GET", f"/submission/workspaceitems/{draft_id}", 404, "Not Found")
        return self._payload(draft_id)

    async def apply_operations(self, draft_id: str, operations: list[dict[str, Any]]) -> Any:
        self._record("apply_operations", draft_id, operations)
        for op in operations:
            self._apply(draft_id, op)
        return self._payload(draft_id)

    async def delete_draft(self, draft_id: str) -> Any:
        self._record("delete_draft", draft_id)
        if self.delete_gate is not None:
            await self.delete_gate.wait()
        self.drafts.pop(draft_id, None)
        return {}

    async def attach_file(self, draft_id: str, name: str, content: bytes, mime_type: str = "") -> Any:
        self._record("attach_file", draft_id, name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        self._add_file(draft_id, name, content)
        return self._payload(draft_id)

    async def detach_file(self, file_id: str) -> Any:
        self._record("detach_file", file_id)
        for d in self.drafts.values():
            d["files"] = [f for f in d["files"] if f["uuid"] != file_id]
        return {}

    async def grant_license(self, draft_id: str) -> Any:
        self._record("grant_license", draft_id)
        if self.license_gate is not None:
            await self.license_gate.wait()
        self.drafts[draft_id]["granted"] = True
        return self._payload(draft_id)

    async def submit_for_review(self, draft_id: str) -> Any:
        self._record("submit_for_review", draft_id)
        self.submitted.append(draft_id)
        return {"id": 100 + int(draft_id)}

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_repo() -> FakeRepository:
    return FakeRepository()
