"""Command-line client for the submission engine.

Usage:
    docvault-submit schema --collection <uuid>
    docvault-submit create --collection <uuid> --set dc.title="Report" \\
        --append dc.subject=Physics --file paper.pdf --submit
    docvault-submit discard-draft <workspace-item-id>

Connection settings come from DOCVAULT_* environment variables (or .env).
"""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import os
import sys
from argparse import ArgumentParser, Namespace
from pathlib import Path

from docvault_submit.client import RepositoryClient, RepositoryError, Session, Settings
from docvault_submit.engine import (
    ContextRef,
    FileBlob,
    SchemaLoader,
    SubmissionError,
    ValidationFailed,
    WorkflowOrchestrator,
)
from docvault_submit.engine.schema import schema_to_dict
from docvault_submit.settings import SubmissionSettings


def _load_env() -> None:
    try:
        from dotenv import load_dotenv
        load_dotenv()
    except ImportError:
        pass


def _make_client(settings: Settings) -> RepositoryClient:
    session = Session(auth_token=os.getenv("DOCVAULT_AUTH_TOKEN", ""))
    return RepositoryClient(settings, session=session)


def _split_pairs(pairs: list[str], flag: str) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"{flag} expects KEY=VALUE, got {pair!r}")
        out.append((key.strip(), value))
    return out


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_schema(args: Namespace, settings: Settings) -> int:
    client = _make_client(settings)
    try:
        context = ContextRef(args.collection, SubmissionSettings().default_record_type)
        schema = await SchemaLoader(client).load(context)
    except (SubmissionError, RepositoryError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()
    print(json.dumps(schema_to_dict(schema), indent=2))
    return 0


async def _cmd_create(args: Namespace, settings: Settings) -> int:
    try:
        sets = _split_pairs(args.set or [], "--set")
        appends = _split_pairs(args.append or [], "--append")
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    client = _make_client(settings)
    orchestrator = WorkflowOrchestrator(client, settings=SubmissionSettings())
    try:
        draft = await orchestrator.start(orchestrator.context_for(args.collection))
        print(f"Draft: {draft.id}")

        unknown = _populate(orchestrator, sets, appends)
        if unknown:
            print(f"error: not in the form: {', '.join(unknown)}", file=sys.stderr)
            orchestrator.cancel()
            return 1

        for path in args.file or []:
            p = Path(path)
            mime, _ = mimetypes.guess_type(p.name)
            orchestrator.transaction.stage_file(
                FileBlob(p.name, p.read_bytes(), mime or "application/octet-stream")
            )

        if args.submit:
            await orchestrator.submit()
            print(f"Submitted: {draft.id}")
        else:
            outcome = await orchestrator.save()
            if not outcome.ok:
                for err in outcome.file_errors:
                    print(f"error: {err}", file=sys.stderr)
                return 1
            print(f"Saved: {draft.id}")
        return 0
    except ValidationFailed as e:
        for err in e.errors:
            print(f"invalid: {err.metadata_key or err.section_id}: {err.message}", file=sys.stderr)
        return 1
    except (SubmissionError, RepositoryError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await orchestrator.wait_for_cleanup()
        await client.close()


def _populate(
    orchestrator: WorkflowOrchestrator,
    sets: list[tuple[str, str]],
    appends: list[tuple[str, str]],
) -> list[str]:
    """Apply --set/--append pairs to the store; returns keys missing from the schema."""
    schema = orchestrator.schema
    store = orchestrator.store
    unknown = [k for k, _ in sets + appends if schema.find_field(k) is None]
    if unknown:
        return sorted(set(unknown))

    grouped: dict[str, list[str]] = {}
    for key, value in sets:
        grouped.setdefault(key, []).append(value)
    for key, values in grouped.items():
        if store.is_repeatable(key):
            store.set(key, values)
        else:
            store.set(key, values[-1])
    for key, value in appends:
        store.append_to_list(key, value)
    return []


async def _cmd_discard(args: Namespace, settings: Settings) -> int:
    client = _make_client(settings)
    try:
        await client.delete_draft(args.draft_id)
    except RepositoryError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()
    print(f"Deleted: {args.draft_id}")
    return 0


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="docvault-submit",
        description="Create, populate and submit repository drafts from the terminal",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    schema_p = sub.add_parser("schema", help="Print the submission form for a collection")
    schema_p.add_argument("--collection", required=True, metavar="UUID")

    create_p = sub.add_parser("create", help="Create and populate a draft, optionally submit it")
    create_p.add_argument("--collection", required=True, metavar="UUID")
    create_p.add_argument("--set", action="append", metavar="KEY=VALUE",
                          help="Set a field; repeat for several values of a repeatable field")
    create_p.add_argument("--append", action="append", metavar="KEY=VALUE",
                          help="Append one value to a repeatable field")
    create_p.add_argument("--file", action="append", metavar="PATH", help="Attach a file")
    create_p.add_argument("--submit", action="store_true", help="Submit for review after saving")

    discard_p = sub.add_parser("discard-draft", help="Delete an unfinished draft")
    discard_p.add_argument("draft_id", metavar="DRAFT_ID")

    return parser


def main(argv: list[str] | None = None) -> None:
    _load_env()
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s: %(message)s")

    parser = build_parser()
    args = parser.parse_args(argv)

    match args.command:
        case "schema":
            code = asyncio.run(_cmd_schema(args, settings))
        case "create":
            code = asyncio.run(_cmd_create(args, settings))
        case "discard-draft":
            code = asyncio.run(_cmd_discard(args, settings))
        case _:
            parser.print_help()
            code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
