"""Patch operations and the reconciler that derives them from edits.

A PatchOperation is one JSON-Patch instruction against a workspace item:

  add     /sections/{section}/{key}          whole field, value = list of value objects
  add     /sections/{section}/{key}/-        append one value object
  replace /sections/{section}/{key}/{place}  overwrite one value object
  remove  /sections/{section}/{key}          drop the whole field
  remove  /sections/{section}/{key}/{place}  drop one value

PatchReconciler.diff() compares the committed snapshot with the proposed
FieldValueStore field by field and position by position, and emits only what
changed. Fields whose values are identical emit nothing, so editing one field
of ten yields one operation.

The reconciler is deterministic: same inputs, same operation list.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any

from docvault_submit.engine.model import FileBlob, MetadataValue, Snapshot, reindexed
from docvault_submit.engine.schema import FormSchema, SectionDescriptor
from docvault_submit.engine.store import FieldValueStore


# ---------------------------------------------------------------------------
# Operation types
# ---------------------------------------------------------------------------


class PatchKind(str, enum.Enum):
    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"


@dataclass(frozen=True)
class PatchOperation:
    """One patch instruction.

    section_id / metadata_key are bookkeeping for batching and are not sent.
    value is a list of wire value objects for whole-field adds, a single wire
    value object for element add/replace, and None for removes.
    """

    kind: PatchKind
    path: str
    value: Any = None
    section_id: str = ""
    metadata_key: str = ""

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {"op": self.kind.value, "path": self.path}
        if self.kind is not PatchKind.REMOVE:
            out["value"] = self.value
        return out


def field_path(section_id: str, metadata_key: str) -> str:
    return f"/sections/{section_id}/{metadata_key}"


def ops_to_wire(ops: list[PatchOperation]) -> list[dict[str, Any]]:
    return [op.to_wire() for op in ops]


def ops_to_json(ops: list[PatchOperation]) -> str:
    """Pretty-printed wire form of ops (for logs and dry runs)."""
    return json.dumps(ops_to_wire(ops), indent=2)


@dataclass
class PendingChangeSet:
    """Everything a Save would send: metadata operations plus file actions."""

    operations: list[PatchOperation] = field(default_factory=list)
    file_adds: list[FileBlob] = field(default_factory=list)
    file_removals: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.operations or self.file_adds or self.file_removals)

    def by_section(self) -> dict[str, list[PatchOperation]]:
        """Operations grouped per section, in first-appearance order."""
        grouped: dict[str, list[PatchOperation]] = {}
        for op in self.operations:
            grouped.setdefault(op.section_id, []).append(op)
        return grouped

    def without_sections(self, section_ids: set[str]) -> PendingChangeSet:
        return PendingChangeSet(
            operations=[op for op in self.operations if op.section_id not in section_ids],
            file_adds=list(self.file_adds),
            file_removals=list(self.file_removals),
        )


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class PatchReconciler:
    """Computes the minimal operation list between committed and proposed values."""

    def diff(
        self,
        original: Snapshot,
        current: FieldValueStore,
        section: SectionDescriptor,
    ) -> list[PatchOperation]:
        ops: list[PatchOperation] = []
        for f in section.fields():
            before = reindexed(original.get(f.metadata_key, []))
            after = current.values(f.metadata_key)
            ops.extend(self._diff_field(section.id, f.metadata_key, before, after))
        return ops

    def diff_all(
        self,
        original: Snapshot,
        current: FieldValueStore,
        schema: FormSchema,
    ) -> list[PatchOperation]:
        ops: list[PatchOperation] = []
        for section in schema.form_sections():
            ops.extend(self.diff(original, current, section))
        return ops

    @staticmethod
    def _diff_field(
        section_id: str,
        key: str,
        before: list[MetadataValue],
        after: list[MetadataValue],
    ) -> list[PatchOperation]:
        path = field_path(section_id, key)

        if not before and not after:
            return []
        if not before:
            return [PatchOperation(
                PatchKind.ADD, path, [v.to_wire() for v in after], section_id, key,
            )]
        if not after:
            return [PatchOperation(PatchKind.REMOVE, path, None, section_id, key)]

        ops: list[PatchOperation] = []
        shared = min(len(before), len(after))
        for i in range(shared):
            if before[i].content() != after[i].content():
                ops.append(PatchOperation(
                    PatchKind.REPLACE, f"{path}/{i}", after[i].to_wire(), section_id, key,
                ))
        for v in after[shared:]:
            ops.append(PatchOperation(
                PatchKind.ADD, f"{path}/-", v.to_wire(), section_id, key,
            ))
        # highest place first so earlier removals do not shift later targets
        for i in reversed(range(shared, len(before))):
            ops.append(PatchOperation(
                PatchKind.REMOVE, f"{path}/{i}", None, section_id, key,
            ))
        return ops
