"""Local, synchronous checks that gate every mutating call.

ValidationGate.validate() never touches the network and returns a list of
ValidationError values in schema order; an empty list means the store may be
committed. UploadPolicy screens local files before they are staged.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from pathlib import PurePath
from typing import assert_never

from docvault_submit.engine.errors import ValidationError
from docvault_submit.engine.model import FileBlob, FileRef
from docvault_submit.engine.schema import FieldDescriptor, FormSchema, InputKind, SectionKind
from docvault_submit.engine.store import FieldValueStore
from docvault_submit.settings import SubmissionSettings

logger = logging.getLogger("docvault_submit.engine.validation")

_DATE_RE = re.compile(r"^(\d{4})(?:-(\d{2})(?:-(\d{2}))?)?$")


def _is_valid_date(value: str) -> bool:
    """Accept YYYY, YYYY-MM or YYYY-MM-DD with real calendar ranges."""
    m = _DATE_RE.match(value.strip())
    if not m:
        return False
    year, month, day = m.groups()
    try:
        date(int(year), int(month or 1), int(day or 1))
    except ValueError:
        return False
    return True


def _compile(pattern: str) -> re.Pattern[str] | None:
    # backend patterns are sometimes written in /.../ literal form
    if len(pattern) > 1 and pattern.startswith("/") and pattern.endswith("/"):
        pattern = pattern[1:-1]
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning("Ignoring invalid field regex %r: %s", pattern, e)
        return None


class ValidationGate:
    """Checks mandatory and shape constraints of a schema against a store."""

    def validate(self, schema: FormSchema, store: FieldValueStore) -> list[ValidationError]:
        errors: list[ValidationError] = []
        for section, f in schema.fields():
            values = [v.value for v in store.values(f.metadata_key) if v.value.strip()]
            if not values:
                if f.mandatory:
                    errors.append(ValidationError(
                        f.metadata_key,
                        f.mandatory_message or f"{f.label} is required",
                        label=f.label,
                        section_id=section.id,
                    ))
                continue
            for problem in self._shape_problems(f, values):
                errors.append(ValidationError(
                    f.metadata_key, problem, label=f.label, section_id=section.id,
                ))
        return errors

    def validate_files(
        self,
        schema: FormSchema,
        attached: list[FileRef],
        pending: list[FileBlob],
        removed: list[str] | None = None,
    ) -> list[ValidationError]:
        """A mandatory upload section needs at least one file after pending changes."""
        gone = set(removed or [])
        remaining = [f for f in attached if f.id not in gone]
        if remaining or pending:
            return []
        return [
            ValidationError("", f"{s.header} requires at least one file", label=s.header, section_id=s.id)
            for s in schema.sections_of(SectionKind.UPLOAD)
            if s.mandatory
        ]

    @staticmethod
    def _shape_problems(f: FieldDescriptor, values: list[str]) -> list[str]:
        problems: list[str] = []
        match f.input_kind:
            case InputKind.DATE:
                for v in values:
                    if not _is_valid_date(v):
                        problems.append(f"{f.label}: '{v}' is not a valid date (YYYY, YYYY-MM or YYYY-MM-DD)")
            case InputKind.TEXT | InputKind.TEXTAREA | InputKind.DROPDOWN | InputKind.REPEATABLE_TEXT:
                pass
            case _ as unreachable:
                assert_never(unreachable)

        if f.regex:
            pattern = _compile(f.regex)
            if pattern is not None:
                for v in values:
                    if not pattern.fullmatch(v):
                        problems.append(f"{f.label}: '{v}' does not match the required format")
        return problems


class UploadPolicy:
    """Size and extension limits for local files, from SubmissionSettings."""

    def __init__(self, settings: SubmissionSettings | None = None) -> None:
        self._settings = settings or SubmissionSettings()

    def check(self, blob: FileBlob) -> list[str]:
        """Return the reasons blob may not be uploaded (empty when acceptable)."""
        problems: list[str] = []
        if not blob.name.strip():
            problems.append("file name is required")
        if blob.size_bytes == 0:
            problems.append("file is empty")
        max_size = self._settings.max_file_size
        if blob.size_bytes > max_size:
            problems.append(f"file size exceeds {max_size / (1024 * 1024):.0f} MB limit")
        ext = PurePath(blob.name).suffix.lower()
        allowed = self._settings.allowed_extensions
        if allowed and ext not in allowed:
            problems.append(f"file type '{ext or '(none)'}' is not allowed")
        return problems
