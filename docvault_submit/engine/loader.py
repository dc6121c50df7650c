"""Runtime loading of the form schema for a submission context.

The section index is read first (from the draft payload when the backend
embedded it, else from the collection's submission definition). Then one
form configuration per FORM section is fetched concurrently, and the schema
is assembled only after every fetch has finished. A single failed fetch fails
the whole load: callers never see a partial schema.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from docvault_submit.client import RepositoryError
from docvault_submit.engine.errors import SchemaFetchError
from docvault_submit.engine.model import ContextRef
from docvault_submit.engine.schema import FormSchema, SchemaParser, SectionDescriptor, SectionKind

logger = logging.getLogger("docvault_submit.engine.loader")


class SchemaLoader:
    """Fetches and assembles a FormSchema through the schema collaborator.

    client: anything exposing ``find_submission_definition(collection_id)``
            and ``get_form_config(config_ref)`` coroutines (RepositoryClient).
    """

    def __init__(self, client: Any, parser: SchemaParser | None = None) -> None:
        self._client = client
        self._parser = parser or SchemaParser()

    async def load(self, context: ContextRef, definition: Any = None) -> FormSchema:
        if definition is None:
            definition = await self._fetch_definition(context)

        index = self._parser.parse_index(definition)
        if not index:
            raise SchemaFetchError(
                f"no supported sections in submission definition for collection {context.collection_id}"
            )

        form_sections = [s for s in index if s.kind is SectionKind.FORM]
        results = await asyncio.gather(
            *[self._fetch_section(s) for s in form_sections],
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.error(
                "Schema load for collection %s failed: %d of %d form sections",
                context.collection_id, len(failures), len(form_sections),
            )
            raise failures[0]

        parsed: dict[str, SectionDescriptor] = {s.id: s for s in results}  # type: ignore[union-attr]
        sections = tuple(parsed.get(s.id, s) for s in index)
        definition_id = definition.get("id") if isinstance(definition, dict) else None
        schema = FormSchema(
            record_type=context.record_type,
            sections=sections,
            definition_id=str(definition_id) if definition_id is not None else None,
        )
        logger.info(
            "Loaded schema %s for collection %s: %d sections, %d fields",
            schema.definition_id, context.collection_id,
            len(schema.sections), len(schema.metadata_keys()),
        )
        return schema

    async def _fetch_definition(self, context: ContextRef) -> Any:
        try:
            return await self._client.find_submission_definition(context.collection_id)
        except RepositoryError as e:
            if e.not_found:
                raise SchemaFetchError(
                    f"no submission definition for collection {context.collection_id}"
                ) from e
            raise

    async def _fetch_section(self, section: SectionDescriptor) -> SectionDescriptor:
        try:
            raw = await self._client.get_form_config(section.config_ref)
        except RepositoryError as e:
            if e.not_found:
                raise SchemaFetchError("form config not found", section_id=section.id) from e
            raise
        return self._parser.parse(raw, section)
