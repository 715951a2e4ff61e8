from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict
from typing import Any, Dict, Sequence

from ..domain.errors import PermissionRequired, VoiceListingError, describe
from ..domain.models import Entry
from ..extraction.model import SOURCE_PATTERN
from ..logging import get_logger, set_level
from ..orchestrator import (
    ImportedRecordingDevice,
    build_pipeline,
    build_pipeline_config,
    log_environment_banner,
)
from ..orchestrator.flow import build_extractor

LOG = get_logger("cli-main")

# CLI option -> entry field for the edit subcommand.
EDITABLE_OPTIONS = {
    "title": "title",
    "brand": "brand",
    "color": "color",
    "description": "item_description",
    "unisex": "is_unisex",
    "length": "measurement_length",
    "width": "measurement_width",
    "price": "price",
    "size": "size",
    "status": "status",
}


def _entry_json(entry: Entry) -> Dict[str, Any]:
    data = asdict(entry)
    data["creation_date"] = entry.creation_date.isoformat()
    data["last_email_sent_date"] = entry.last_email_sent_date.isoformat() if entry.last_email_sent_date else None
    return data


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _add_config_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--db", help="Entry database path (default: var/entries/entries.sqlite3 at repo root)")
    p.add_argument("--recipient", help="Override listing recipient (defaults to env/.env)")
    p.add_argument("--outbox", help="Write .eml drafts to this directory instead of using the mail API")
    p.add_argument("--backend", choices=["ollama", "openai", "none"], help="Extraction backend override")
    p.add_argument("--ollama-url", help="Override Ollama base URL (defaults to env/.env)")
    p.add_argument("--ollama-model", help="Override Ollama model name (defaults to env/.env)")
    p.add_argument("--openai-model", help="Override OpenAI model name (defaults to env/.env)")
    p.add_argument("--timeout", type=int, default=60, help="HTTP timeout in seconds for the mail API")


def _open_pipeline(args: argparse.Namespace, device=None):
    return build_pipeline(build_pipeline_config(args, script_dir=os.getcwd()), device)


def _handle_record(args: argparse.Namespace) -> int:
    log_environment_banner()
    config = build_pipeline_config(args, script_dir=os.getcwd())
    device = ImportedRecordingDevice(args.audio, config.recordings_dir)
    pipeline = build_pipeline(config, device)

    if not pipeline.request_permissions():
        LOG.error(describe(PermissionRequired()))
        return 2

    session = pipeline.new_session()
    session.start()
    result = session.stop()

    if result.entry is not None:
        _print_json(_entry_json(result.entry))
    if result.extraction_source == SOURCE_PATTERN:
        LOG.info("Fields extracted with pattern matching")
    if result.warning:
        LOG.warning(result.warning)
    if not result.ok:
        LOG.error(result.message)
        return 1
    return 0


def _handle_extract(args: argparse.Namespace) -> int:
    config = build_pipeline_config(args, script_dir=os.getcwd())
    extractor = build_extractor(config)
    fields = extractor.extract(args.text)
    _print_json({"source": extractor.last_source, "fields": fields.as_dict()})
    return 0


def _handle_list(args: argparse.Namespace) -> int:
    entries = _open_pipeline(args).list_entries()
    for entry in entries:
        sent = "sent" if entry.email_sent else "not sent"
        print(f"{entry.id}\t{entry.creation_date.isoformat()}\t{entry.title or '-'}\t{sent}")
    LOG.info(f"{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
    return 0


def _handle_show(args: argparse.Namespace) -> int:
    entry = _open_pipeline(args).get_entry(args.id)
    if entry is None:
        LOG.error(f"No entry with id {args.id}")
        return 1
    _print_json(_entry_json(entry))
    return 0


def _handle_edit(args: argparse.Namespace) -> int:
    changes = {
        field: getattr(args, option)
        for option, field in EDITABLE_OPTIONS.items()
        if getattr(args, option) is not None
    }
    if not changes:
        LOG.error("Nothing to edit; pass at least one field option")
        return 2
    entry = _open_pipeline(args).edit(args.id, **changes)
    _print_json(_entry_json(entry))
    return 0


def _handle_resend(args: argparse.Namespace) -> int:
    result = _open_pipeline(args).resend(args.id)
    if not result.ok:
        LOG.error(describe(result.error) if result.error else "Email not sent")
        return 1
    LOG.info(f"Email for {args.id} delivered ({result.outcome.value})")
    return 0


def _handle_delete(args: argparse.Namespace) -> int:
    _open_pipeline(args).delete_entry(args.id)
    LOG.info(f"Deleted {args.id}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.info(f"Voice listing CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="voice-listing",
        description="Turn dictated voice notes into structured listings and email them.",
    )
    parser.add_argument("--log-level", help="Log level for this run (overrides LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    record = subparsers.add_parser(
        "record",
        help="Import an audio note and run the full pipeline.",
        description="Transcribe, extract fields, save the entry and send the listing email.",
    )
    record.add_argument("--audio", required=True, help="Path to the recorded voice note")
    record.add_argument("--locale", help="Recognition locale (defaults to TRANSCRIPTION_LOCALE or fr-FR)")
    _add_config_args(record)
    record.set_defaults(handler=_handle_record)

    extract_cmd = subparsers.add_parser("extract", help="Extract listing fields from text and print them.")
    extract_cmd.add_argument("--text", required=True)
    _add_config_args(extract_cmd)
    extract_cmd.set_defaults(handler=_handle_extract)

    list_cmd = subparsers.add_parser("list", help="List saved entries, newest first.")
    _add_config_args(list_cmd)
    list_cmd.set_defaults(handler=_handle_list)

    show = subparsers.add_parser("show", help="Print one entry as JSON.")
    show.add_argument("id")
    _add_config_args(show)
    show.set_defaults(handler=_handle_show)

    edit = subparsers.add_parser("edit", help="Edit structured fields of an entry.")
    edit.add_argument("id")
    for option in EDITABLE_OPTIONS:
        edit.add_argument(f"--{option}")
    _add_config_args(edit)
    edit.set_defaults(handler=_handle_edit)

    resend = subparsers.add_parser("resend", help="Send the listing email for an entry again.")
    resend.add_argument("id")
    _add_config_args(resend)
    resend.set_defaults(handler=_handle_resend)

    delete = subparsers.add_parser("delete", help="Delete an entry.")
    delete.add_argument("id")
    _add_config_args(delete)
    delete.set_defaults(handler=_handle_delete)

    args = parser.parse_args(provided)
    if args.log_level:
        set_level(args.log_level)
    try:
        code = args.handler(args)
    except VoiceListingError as exc:
        LOG.error(describe(exc))
        code = 1
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
