"""audience-sync command line.

Usage:
  # Full or incremental sync from a configured source
  python cli.py sync hubspot --type incremental
  python cli.py sync google_sheets --spreadsheet-id 1AbC... --sheet-name Leads

  # Import a CSV file as an upload batch
  python cli.py upload contacts.csv --name "Trade show 2026"

  # Inspect jobs and segments
  python cli.py status <job-id>
  python cli.py jobs --source hubspot
  python cli.py segments

  # Check credentials and browse what a source offers
  python cli.py check google_sheets --spreadsheet-id 1AbC...
  python cli.py lists
  python cli.py sheet-info 1AbC...

  # Search contacts and show totals
  python cli.py contacts jane --filters '{"source": "hubspot"}'
  python cli.py stats

  # Export a segment to a file (large segments print a chunk manifest)
  python cli.py export <segment-id> --format tsv --output callable.tsv

  # Run the HTTP API
  python cli.py serve --port 8000
"""
import argparse
import asyncio
import csv
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import settings
from db.connection import dispose_engine, get_session_factory, session_scope
from export.streamer import BulkExportStreamer, DirectExport
from segments import engine as segment_engine
from sync import sources
from sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def _print_json(model) -> None:
    print(json.dumps(model.model_dump(mode="json", by_alias=True), indent=2))


async def run_sync(source: str, sync_type: str, config: dict) -> None:
    orchestrator = SyncOrchestrator(get_session_factory())
    try:
        job_id = await orchestrator.start_sync(source, sync_type, config)
        print(f"Started {sync_type} sync of {source}: job {job_id}")
        await orchestrator.wait(job_id)
        _print_json(await orchestrator.get_job_status(job_id))
    finally:
        await dispose_engine()


async def run_upload(path: Path, name: Optional[str], delimiter: str) -> None:
    with path.open(newline="", encoding="utf-8-sig") as f:
        reader = csv.reader(f, delimiter=delimiter)
        headers = next(reader, [])
        rows = list(reader)
    print(f"Read {len(rows)} rows ({len(headers)} columns) from {path}")

    orchestrator = SyncOrchestrator(get_session_factory())
    try:
        job_id = await orchestrator.start_upload(headers, rows, name=name or path.stem)
        await orchestrator.wait(job_id)
        _print_json(await orchestrator.get_job_status(job_id))
    finally:
        await dispose_engine()


async def run_status(job_id: str) -> None:
    try:
        _print_json(await SyncOrchestrator(get_session_factory()).get_job_status(job_id))
    finally:
        await dispose_engine()


async def run_jobs(page: int, limit: int, source: Optional[str]) -> None:
    try:
        jobs = await SyncOrchestrator(get_session_factory()).list_jobs(page, limit, source)
    finally:
        await dispose_engine()
    print(f"{jobs.total} jobs (page {page})")
    for job in jobs.jobs:
        print(
            f"  {job.id}  {job.source:<20} {job.type:<12} {job.status:<10} "
            f"{job.processed_records}/{job.total_records}  errors={job.error_count}"
        )


async def run_segments(initialize: bool) -> None:
    try:
        async with session_scope(get_session_factory()) as session:
            if initialize:
                created = await segment_engine.initialize_system_segments(session)
                print(f"System segments ready: {len(created)}")
            segments = await segment_engine.list_segments(session)
    finally:
        await dispose_engine()
    for segment in segments:
        marker = "*" if segment.is_system else " "
        print(f" {marker} {segment.id}  {segment.name:<32} {segment.contact_count:>8}")


async def run_check(source: str, spreadsheet_id: Optional[str]) -> None:
    result = await sources.check_connection(source, spreadsheet_id)
    print(json.dumps(result, indent=2))
    if not result.get("connected"):
        sys.exit(1)


async def run_lists() -> None:
    for item in await sources.hubspot_lists():
        kind = "dynamic" if item["dynamic"] else "static"
        print(f"  {item['id']:>8}  {item['name']:<40} {item['size']:>8}  {kind}")


async def run_sheet_info(spreadsheet_id: str) -> None:
    info = await sources.spreadsheet_info(spreadsheet_id)
    print(f"{info['title']} ({info['spreadsheet_id']})")
    for sheet in info["sheets"]:
        print(f"  {sheet['title']:<32} {sheet['row_count']:>8} rows  {sheet['column_count']:>4} columns")


async def run_contacts(filters: dict, query: Optional[str], page: int, limit: int) -> None:
    try:
        async with session_scope(get_session_factory()) as session:
            result = await segment_engine.search_contacts(session, filters, page, limit, query=query)
    finally:
        await dispose_engine()
    print(f"{result.total_records} contacts (page {page} of {result.total_pages})")
    for contact in result.contacts:
        name = " ".join(p for p in (contact.first_name, contact.last_name) if p)
        print(f"  {contact.id}  {name:<28} {contact.email:<36} {contact.source}")


async def run_stats() -> None:
    try:
        async with session_scope(get_session_factory()) as session:
            _print_json(await segment_engine.contact_stats(session))
    finally:
        await dispose_engine()


async def run_export(segment_id: str, fmt: str, chunk: Optional[int], output: Optional[Path]) -> None:
    streamer = BulkExportStreamer(get_session_factory())
    try:
        result = await streamer.export_segment(segment_id, fmt, chunk)
        if not isinstance(result, DirectExport):
            print(f"{result.total} contacts; fetch {result.total_chunks} chunks with --chunk N")
            _print_json(result)
            return
        target = output or Path(result.filename)
        with target.open("w", newline="", encoding="utf-8") as f:
            async for piece in result.body:
                f.write(piece)
        progress = streamer.progress.get(result.run_id)
        print(f"Export {result.run_id}: {progress.status}, {progress.processed} rows -> {target}")
        if progress.error:
            print(f"  error: {progress.error}")
    finally:
        await dispose_engine()


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Contact sync, segmentation and bulk export"
    )
    sub = parser.add_subparsers(dest="command")

    sync = sub.add_parser("sync", help="Run a sync job for a source and wait for it")
    sync.add_argument("source", choices=["hubspot", "google_sheets"])
    sync.add_argument("--type", default="full", help="full or incremental")
    sync.add_argument("--spreadsheet-id", help="Spreadsheet id or URL (google_sheets)")
    sync.add_argument("--sheet-name", help="Single sheet to read (default: all sheets)")
    sync.add_argument("--list-id", help="HubSpot list id (default: all contacts)")
    sync.add_argument("--list-name", help="HubSpot list name, used for the batch segment")
    sync.add_argument(
        "--prune-missing",
        action="store_true",
        default=False,
        help="Soft-delete contacts of the source that the full sync did not see",
    )

    upload = sub.add_parser("upload", help="Import a CSV file as an upload batch")
    upload.add_argument("path", type=Path)
    upload.add_argument("--name", help="Upload name (default: file name)")
    upload.add_argument("--delimiter", default=",")

    status = sub.add_parser("status", help="Show one sync job")
    status.add_argument("job_id")

    jobs = sub.add_parser("jobs", help="List sync jobs, newest first")
    jobs.add_argument("--page", type=int, default=1)
    jobs.add_argument("--limit", type=int, default=20)
    jobs.add_argument("--source")

    sub.add_parser("segments", help="List segments with live counts")
    sub.add_parser("init-segments", help="Create or refresh the system segments")

    export = sub.add_parser("export", help="Export a segment to a delimited file")
    export.add_argument("segment_id")
    export.add_argument("--format", default="csv", choices=["csv", "tsv"])
    export.add_argument("--chunk", type=int, help="1-based chunk of a large export")
    export.add_argument("--output", type=Path)

    check = sub.add_parser("check", help="Check the credentials for a source")
    check.add_argument("source", choices=["hubspot", "google_sheets"])
    check.add_argument("--spreadsheet-id", help="Spreadsheet id or URL (google_sheets)")

    sub.add_parser("lists", help="List the HubSpot contact lists")

    sheet_info = sub.add_parser("sheet-info", help="Show a spreadsheet's sheets and sizes")
    sheet_info.add_argument("spreadsheet_id")

    contacts = sub.add_parser("contacts", help="Search contacts")
    contacts.add_argument("query", nargs="?", help="Text matched against name, email and company")
    contacts.add_argument("--filters", type=json.loads, default={}, help="Filter map as JSON")
    contacts.add_argument("--page", type=int, default=1)
    contacts.add_argument("--limit", type=int, default=50)

    sub.add_parser("stats", help="Contact counts by source, stage and DNC status")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    return parser


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    parser = _build_arg_parser()
    args = parser.parse_args()

    if args.command == "sync":
        config = {
            "spreadsheet_id": args.spreadsheet_id,
            "sheet_name": args.sheet_name,
            "list_id": args.list_id,
            "list_name": args.list_name,
            "prune_missing": args.prune_missing,
        }
        asyncio.run(run_sync(args.source, args.type, {k: v for k, v in config.items() if v is not None}))

    elif args.command == "upload":
        asyncio.run(run_upload(args.path, args.name, args.delimiter))

    elif args.command == "status":
        asyncio.run(run_status(args.job_id))

    elif args.command == "jobs":
        asyncio.run(run_jobs(args.page, args.limit, args.source))

    elif args.command == "segments":
        asyncio.run(run_segments(initialize=False))

    elif args.command == "init-segments":
        asyncio.run(run_segments(initialize=True))

    elif args.command == "export":
        asyncio.run(run_export(args.segment_id, args.format, args.chunk, args.output))

    elif args.command == "check":
        asyncio.run(run_check(args.source, args.spreadsheet_id))

    elif args.command == "lists":
        asyncio.run(run_lists())

    elif args.command == "sheet-info":
        asyncio.run(run_sheet_info(args.spreadsheet_id))

    elif args.command == "contacts":
        asyncio.run(run_contacts(args.filters, args.query, args.page, args.limit))

    elif args.command == "stats":
        asyncio.run(run_stats())

    elif args.command == "serve":
        import uvicorn

        uvicorn.run(
            "api:app",
            host=args.host,
            port=args.port,
            timeout_keep_alive=settings.EXPORT_TIMEOUT_SECONDS,
        )

    else:
        parser.print_help()
        sys.exit(1)
