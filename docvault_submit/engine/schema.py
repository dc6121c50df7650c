"""Form schema descriptors and the parser that builds them from wire payloads.

A FormSchema is a tree: sections → rows → fields. Only FORM sections carry
rows; UPLOAD and LICENSE sections are steps of the workflow with no fields.

Raw payloads come in two documents:
  submission definition — the ordered section index for a collection
  form configuration    — the rows/fields of one FORM section

Both are validated with pydantic before conversion. Structural problems raise
SchemaFetchError; an unrecognised input type is tolerated and rendered as TEXT
so that new backend input types do not break existing clients.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from docvault_submit.engine.errors import SchemaFetchError

logger = logging.getLogger("docvault_submit.engine.schema")


# ---------------------------------------------------------------------------
# Descriptor types
# ---------------------------------------------------------------------------


class InputKind(str, enum.Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    DATE = "date"
    DROPDOWN = "dropdown"
    REPEATABLE_TEXT = "repeatable_text"


class SectionKind(str, enum.Enum):
    FORM = "form"
    UPLOAD = "upload"
    LICENSE = "license"


@dataclass(frozen=True)
class FieldDescriptor:
    """One input bound to a metadata key.

    metadata_key:      Qualified key the field writes (e.g. "dc.contributor.author").
    input_kind:        Closed set of renderable kinds; see InputKind.
    repeatable:        True when the field holds an ordered list of values.
    mandatory_message: Backend-configured message shown when a mandatory field
                       is empty. May be None; ValidationGate then generates one.
    regex:             Optional pattern every value must fully match.
    vocabulary:        Controlled vocabulary name for DROPDOWN fields.
    """

    metadata_key: str
    label: str
    input_kind: InputKind = InputKind.TEXT
    mandatory: bool = False
    repeatable: bool = False
    hint: str | None = None
    mandatory_message: str | None = None
    regex: str | None = None
    vocabulary: str | None = None


@dataclass(frozen=True)
class RowDescriptor:
    fields: tuple[FieldDescriptor, ...] = ()


@dataclass(frozen=True)
class SectionDescriptor:
    id: str
    kind: SectionKind
    header: str = ""
    mandatory: bool = False
    rows: tuple[RowDescriptor, ...] = ()
    config_ref: str | None = None

    def fields(self) -> Iterator[FieldDescriptor]:
        for row in self.rows:
            yield from row.fields

    def field(self, metadata_key: str) -> FieldDescriptor | None:
        return next((f for f in self.fields() if f.metadata_key == metadata_key), None)


@dataclass(frozen=True)
class FormSchema:
    record_type: str
    sections: tuple[SectionDescriptor, ...] = ()
    definition_id: str | None = None

    def section(self, section_id: str) -> SectionDescriptor | None:
        return next((s for s in self.sections if s.id == section_id), None)

    def form_sections(self) -> list[SectionDescriptor]:
        return [s for s in self.sections if s.kind is SectionKind.FORM]

    def sections_of(self, kind: SectionKind) -> list[SectionDescriptor]:
        return [s for s in self.sections if s.kind is kind]

    def fields(self) -> Iterator[tuple[SectionDescriptor, FieldDescriptor]]:
        for section in self.form_sections():
            for f in section.fields():
                yield section, f

    def find_field(self, metadata_key: str) -> FieldDescriptor | None:
        return next((f for _, f in self.fields() if f.metadata_key == metadata_key), None)

    def metadata_keys(self) -> set[str]:
        return {f.metadata_key for _, f in self.fields()}


# ---------------------------------------------------------------------------
# Wire shapes
# ---------------------------------------------------------------------------


class _RawSelectable(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: str
    label: str | None = None
    closed: bool = False
    controlledVocabulary: str | None = None


class _RawInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    regex: str | None = None


class _RawField(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input: _RawInput
    label: str | None = None
    mandatory: bool = False
    repeatable: bool = False
    hints: str | None = None
    mandatoryMessage: str | None = None
    selectableMetadata: list[_RawSelectable] = Field(default_factory=list)


class _RawRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    fields: list[_RawField] = Field(default_factory=list)


class _RawFormConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str | None = None
    rows: list[_RawRow]


class _RawLink(BaseModel):
    model_config = ConfigDict(extra="ignore")

    href: str


class _RawSectionLinks(BaseModel):
    model_config = ConfigDict(extra="ignore")

    config: _RawLink | None = None


class _RawSection(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    header: str | None = None
    mandatory: bool = False
    sectionType: str
    links: _RawSectionLinks = Field(default_factory=_RawSectionLinks, alias="_links")


_SECTION_TYPES: dict[str, SectionKind] = {
    "submission-form": SectionKind.FORM,
    "upload": SectionKind.UPLOAD,
    "license": SectionKind.LICENSE,
}


def _input_kind(raw_type: str, repeatable: bool) -> InputKind:
    match raw_type.lower():
        case "onebox":
            return InputKind.REPEATABLE_TEXT if repeatable else InputKind.TEXT
        case "textarea":
            return InputKind.TEXTAREA
        case "date":
            return InputKind.DATE
        case "dropdown" | "list":
            return InputKind.DROPDOWN
        case _:
            logger.debug("Unknown input type %r rendered as text", raw_type)
            return InputKind.TEXT


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class SchemaParser:
    """Converts raw schema documents into descriptors, rejecting malformed shapes."""

    def parse_index(self, definition: Any) -> list[SectionDescriptor]:
        """Parse a submission definition into row-less section descriptors.

        Accepts the definition object itself (sections under
        ``_embedded.sections._embedded.sections``) or a bare list of sections.
        Section types other than form/upload/license are skipped.
        """
        raw_sections = _extract_sections(definition)
        out: list[SectionDescriptor] = []
        seen: set[str] = set()
        for i, raw in enumerate(raw_sections):
            try:
                s = _RawSection.model_validate(raw)
            except PydanticValidationError as e:
                raise SchemaFetchError(f"malformed section entry #{i}: {e}") from e
            if s.id in seen:
                raise SchemaFetchError("duplicate section id", section_id=s.id)
            seen.add(s.id)
            kind = _SECTION_TYPES.get(s.sectionType)
            if kind is None:
                logger.debug("Skipping unsupported section %s (%s)", s.id, s.sectionType)
                continue
            config_ref = s.links.config.href if s.links.config else None
            if kind is SectionKind.FORM and not config_ref:
                raise SchemaFetchError("form section has no config link", section_id=s.id)
            out.append(SectionDescriptor(
                id=s.id,
                kind=kind,
                header=s.header or s.id,
                mandatory=s.mandatory,
                config_ref=config_ref,
            ))
        return out

    def parse(self, raw: Any, section: SectionDescriptor) -> SectionDescriptor:
        """Parse one form configuration into a populated SectionDescriptor.

        Raises SchemaFetchError when a field lacks a metadata key or an input
        type, or when two fields of the section share a metadata key.
        """
        if not isinstance(raw, dict):
            raise SchemaFetchError("form config is not an object", section_id=section.id)
        try:
            config = _RawFormConfig.model_validate(raw)
        except PydanticValidationError as e:
            raise SchemaFetchError(f"malformed form config: {e}", section_id=section.id) from e

        seen: set[str] = set()
        rows: list[RowDescriptor] = []
        for r, raw_row in enumerate(config.rows):
            fields: list[FieldDescriptor] = []
            for c, raw_field in enumerate(raw_row.fields):
                where = f"rows[{r}].fields[{c}]"
                fields.append(self._parse_field(raw_field, section.id, where, seen))
            rows.append(RowDescriptor(fields=tuple(fields)))

        return SectionDescriptor(
            id=section.id,
            kind=section.kind,
            header=section.header,
            mandatory=section.mandatory,
            rows=tuple(rows),
            config_ref=section.config_ref,
        )

    @staticmethod
    def _parse_field(
        raw: _RawField,
        section_id: str,
        where: str,
        seen: set[str],
    ) -> FieldDescriptor:
        if not raw.selectableMetadata or not raw.selectableMetadata[0].metadata.strip():
            raise SchemaFetchError(f"{where}: metadata key is required", section_id=section_id)
        if not raw.input.type.strip():
            raise SchemaFetchError(f"{where}: input type is required", section_id=section_id)

        binding = raw.selectableMetadata[0]
        key = binding.metadata.strip()
        if key in seen:
            raise SchemaFetchError(f"{where}: duplicate metadata key '{key}'", section_id=section_id)
        seen.add(key)

        return FieldDescriptor(
            metadata_key=key,
            label=raw.label or binding.label or key,
            input_kind=_input_kind(raw.input.type, raw.repeatable),
            mandatory=raw.mandatory,
            repeatable=raw.repeatable,
            hint=raw.hints or None,
            mandatory_message=raw.mandatoryMessage or None,
            regex=raw.input.regex or None,
            vocabulary=binding.controlledVocabulary,
        )


def _extract_sections(definition: Any) -> list[Any]:
    if isinstance(definition, list):
        return definition
    if not isinstance(definition, dict):
        raise SchemaFetchError("submission definition is not an object")
    embedded = definition.get("_embedded")
    if not isinstance(embedded, dict) or "sections" not in embedded:
        raise SchemaFetchError("submission definition has no embedded sections")
    sections = embedded["sections"]
    if isinstance(sections, list):
        return sections
    if isinstance(sections, dict):
        inner = sections.get("_embedded")
        if isinstance(inner, dict) and isinstance(inner.get("sections"), list):
            return inner["sections"]
    raise SchemaFetchError("submission definition sections have an unexpected shape")


def schema_to_dict(schema: FormSchema) -> dict[str, Any]:
    """JSON-safe rendering of a schema (used by the CLI)."""
    return {
        "record_type": schema.record_type,
        "definition_id": schema.definition_id,
        "sections": [
            {
                "id": s.id,
                "kind": s.kind.value,
                "header": s.header,
                "mandatory": s.mandatory,
                "rows": [
                    [
                        {
                            "metadata_key": f.metadata_key,
                            "label": f.label,
                            "input_kind": f.input_kind.value,
                            "mandatory": f.mandatory,
                            "repeatable": f.repeatable,
                            "hint": f.hint,
                        }
                        for f in row.fields
                    ]
                    for row in s.rows
                ],
            }
            for s in schema.sections
        ],
    }
