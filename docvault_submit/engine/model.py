"""Record model for the submission engine.

MetadataValue — one value of a metadata field, with its position (place)
RecordDraft   — server-acknowledged state of a workspace item
FileRef       — a file already attached to a draft
FileBlob      — a local file waiting to be uploaded
ContextRef    — the (record type, owning collection) a draft is created in

parse_draft() is the single entry point from raw workspace-item JSON into
RecordDraft. The payload shape is checked with pydantic and a mismatch raises
SchemaFetchError instead of silently defaulting to empty values.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from docvault_submit.engine.errors import SchemaFetchError

Snapshot = dict[str, list["MetadataValue"]]


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


@dataclass
class MetadataValue:
    """One metadata value.

    place: 0-based order within the field's value list. Kept contiguous by
           FieldValueStore; never trusted from the caller.
    confidence: authority confidence; -1 means "no authority control".
    """

    value: str
    language: str | None = None
    authority: str | None = None
    confidence: int = -1
    place: int = 0
    # presentation only; the server echoes the value here when none was sent
    display: str | None = field(default=None, compare=False)

    def content(self) -> tuple[Any, ...]:
        """Everything except place; two values with equal content are the same edit-wise."""
        return (self.value, self.language, self.authority, self.confidence)

    def to_wire(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "language": self.language,
            "authority": self.authority,
            "confidence": self.confidence,
            "display": self.display if self.display is not None else self.value,
            "place": self.place,
            "otherInformation": None,
        }


def reindexed(values: list[MetadataValue]) -> list[MetadataValue]:
    """Return copies of values with places rewritten to 0..n-1 in list order."""
    out: list[MetadataValue] = []
    for i, v in enumerate(values):
        out.append(MetadataValue(v.value, v.language, v.authority, v.confidence, i, v.display))
    return out


def copy_snapshot(snapshot: Snapshot) -> Snapshot:
    """Deep-enough copy of a snapshot: new lists, new value objects, no empty lists."""
    return {k: reindexed(vs) for k, vs in snapshot.items() if vs}


@dataclass(frozen=True)
class FileRef:
    id: str
    name: str
    size_bytes: int = 0
    checksum: str | None = None


@dataclass(frozen=True)
class FileBlob:
    name: str
    content: bytes = field(repr=False)
    mime_type: str = "application/octet-stream"

    @property
    def size_bytes(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class ContextRef:
    """Where a new draft is created.

    collection_id: owning collection UUID; selects the submission definition.
    record_type:   the kind of record being described (almost always "item").
    """

    collection_id: str
    record_type: str = "item"


class DraftState(str, enum.Enum):
    CREATED = "created"
    EDITING = "editing"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (DraftState.SUBMITTED, DraftState.ABANDONED)


@dataclass
class RecordDraft:
    """Committed (server-acknowledged) view of a workspace item."""

    id: str
    metadata_snapshot: Snapshot = field(default_factory=dict)
    attached_files: list[FileRef] = field(default_factory=list)
    license_granted: bool = False
    state: DraftState = DraftState.CREATED
    collection_id: str | None = None
    item_id: str | None = None
    last_modified: str | None = None
    definition: dict[str, Any] | None = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Wire shapes
# ---------------------------------------------------------------------------


class _RawValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    value: str
    language: str | None = None
    authority: str | None = None
    confidence: int = -1
    place: int | None = None
    display: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def stringify(cls, v: object) -> str:
        if v is None:
            raise ValueError("value must not be null")
        return str(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def default_confidence(cls, v: object) -> int:
        return -1 if v is None else int(v)  # type: ignore[arg-type]


class _RawItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    uuid: str | None = None
    metadata: dict[str, list[_RawValue]] = Field(default_factory=dict)


class _RawCollection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    uuid: str | None = None


class _RawEmbedded(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item: _RawItem | None = None
    collection: _RawCollection | None = None
    submissionDefinition: dict[str, Any] | None = None


class _RawFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uuid: str
    sizeBytes: int = 0
    metadata: dict[str, list[_RawValue]] = Field(default_factory=dict)
    checkSum: dict[str, Any] | None = None


class _RawDraft(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    lastModified: str | None = None
    sections: dict[str, Any] = Field(default_factory=dict)
    embedded: _RawEmbedded = Field(default_factory=_RawEmbedded, alias="_embedded")

    @field_validator("id", mode="before")
    @classmethod
    def id_to_str(cls, v: object) -> str:
        if v is None or v == "":
            raise ValueError("workspace item id is required")
        return str(v)

    @field_validator("sections", "embedded", mode="before")
    @classmethod
    def none_to_empty(cls, v: object) -> object:
        return {} if v is None else v


def _to_values(raw: list[_RawValue]) -> list[MetadataValue]:
    ordered = sorted(
        enumerate(raw),
        key=lambda pair: (pair[1].place if pair[1].place is not None else pair[0], pair[0]),
    )
    return [
        MetadataValue(r.value, r.language, r.authority, r.confidence, i, r.display)
        for i, (_, r) in enumerate(ordered)
    ]


def _looks_like_metadata(key: str, value: Any) -> bool:
    return (
        "." in key
        and isinstance(value, list)
        and all(isinstance(v, dict) and "value" in v for v in value)
    )


def _snapshot_from_sections(sections: dict[str, Any]) -> Snapshot:
    merged: dict[str, list[_RawValue]] = {}
    for body in sections.values():
        if not isinstance(body, dict):
            continue
        for key, values in body.items():
            if _looks_like_metadata(key, values):
                merged.setdefault(key, []).extend(_RawValue.model_validate(v) for v in values)
    return {k: _to_values(v) for k, v in merged.items() if v}


def _files_from_sections(sections: dict[str, Any]) -> list[FileRef]:
    files: list[FileRef] = []
    for body in sections.values():
        if not isinstance(body, dict) or not isinstance(body.get("files"), list):
            continue
        for raw in body["files"]:
            f = _RawFile.model_validate(raw)
            titles = f.metadata.get("dc.title") or []
            name = titles[0].value if titles else f.uuid
            checksum = (f.checkSum or {}).get("value")
            files.append(FileRef(id=f.uuid, name=name, size_bytes=f.sizeBytes, checksum=checksum))
    return files


def _license_from_sections(sections: dict[str, Any]) -> bool:
    for body in sections.values():
        if isinstance(body, dict) and "granted" in body:
            granted = body["granted"]
            if isinstance(granted, str):
                return granted.lower() == "true"
            return bool(granted)
    return False


def parse_draft(raw: Any, state: DraftState = DraftState.CREATED) -> RecordDraft:
    """Convert a workspace-item payload into a RecordDraft.

    Metadata comes from the embedded item when the backend embeds it, else
    from the form sections. Files come from whichever section lists "files"
    and the license flag from whichever section carries "granted".
    """
    if not isinstance(raw, dict):
        raise SchemaFetchError(f"malformed draft payload: expected object, got {type(raw).__name__}")
    try:
        parsed = _RawDraft.model_validate(raw)
        item = parsed.embedded.item
        if item is not None and item.metadata:
            snapshot = {k: _to_values(v) for k, v in item.metadata.items() if v}
        else:
            snapshot = _snapshot_from_sections(parsed.sections)
        files = _files_from_sections(parsed.sections)
    except PydanticValidationError as e:
        raise SchemaFetchError(f"malformed draft payload: {e}") from e

    collection = parsed.embedded.collection
    return RecordDraft(
        id=parsed.id,
        metadata_snapshot=snapshot,
        attached_files=files,
        license_granted=_license_from_sections(parsed.sections),
        state=state,
        collection_id=(collection.uuid or collection.id) if collection else None,
        item_id=(item.uuid or item.id) if item else None,
        last_modified=parsed.lastModified,
        definition=parsed.embedded.submissionDefinition,
    )
