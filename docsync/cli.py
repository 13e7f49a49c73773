"""
CLI interface for document sync.

Usage:
    docsync upload ./Q4_Tax_Return.pdf --category "Tax Returns" --wait
    docsync list --category Receipts --search 2024
    docsync chat "Which deductions apply to my home office?"
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .config import get_default_store_path, load_or_create_config, save_config
from .errors import DocSyncError, log_exception
from .kvstore import KeyValueStore
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode
from .orchestrator import SyncOrchestrator
from .storage import NativeFsBackend
from .types import ALL_CATEGORIES, DEFAULT_CATEGORIES, DocumentRecord, UploadFile


# Configure quiet mode by default (suppress verbose library output)
# Set DOCSYNC_VERBOSE=1 to enable debug mode via environment
if os.environ.get("DOCSYNC_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


app = typer.Typer(
    name="docsync",
    help="Upload documents to the advisory assistant and track their processing.",
    no_args_is_help=True,
)

# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value.expanduser()
    return value


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="DOCSYNC_STORE_PATH",
        help="Store directory (default: ~/.docsync)",
        callback=_store_callback,
    )] = None,
):
    """Document sync for the financial advisory assistant."""


def _store_path() -> Path:
    return _store_override or get_default_store_path()


def _run(command: str, coro_fn):
    """Run an async command against a fresh orchestrator, reporting errors cleanly."""
    store_path = _store_path()
    try:
        config = load_or_create_config(store_path)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: invalid config in {store_path}: {e}", err=True)
        raise typer.Exit(1)
    configure_ops_log(store_path)

    async def runner():
        async with SyncOrchestrator.from_config(config) as sync:
            return await coro_fn(sync)

    try:
        return asyncio.run(runner())
    except DocSyncError as e:
        log_path = log_exception(e, context=command, store_path=store_path)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GB"


def _print_record(record: DocumentRecord) -> None:
    line = (
        f"{record.id}  {record.status.value:<10}  {record.category:<20}  "
        f"{_format_size(record.size_bytes):>8}  {record.name}"
    )
    if record.processing_message:
        line += f"  ({record.processing_message})"
    typer.echo(line)


def _print_records(records: list[DocumentRecord]) -> None:
    if _json_output:
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        typer.echo("No documents.", err=True)
        return
    for record in records:
        _print_record(record)


@app.command()
def upload(
    path: Annotated[Path, typer.Argument(
        exists=True, dir_okay=False, readable=True,
        help="File to upload",
    )],
    category: Annotated[str, typer.Option("--category", "-c", help="Document category")] = "Other",
    wait: Annotated[bool, typer.Option("--wait", "-w", help="Wait until processing finishes")] = False,
    timeout: Annotated[Optional[float], typer.Option(help="Seconds to wait with --wait")] = None,
):
    """Upload a document and start tracking its processing."""
    file = UploadFile.from_path(path)

    async def go(sync: SyncOrchestrator):
        if not await sync.upload_document(file, category):
            return None
        record = next(iter(sync.registry))
        if wait:
            try:
                record = await sync.wait_until_settled(record.id, timeout)
            except TimeoutError:
                typer.echo(
                    f"Timed out after {timeout}s; {record.id} is still {record.status.value}",
                    err=True,
                )
        return record

    record = _run("upload", go)
    if record is None:
        typer.echo(f"Upload of {path.name} was rejected by the service.", err=True)
        raise typer.Exit(1)
    _print_records([record])


@app.command("list")
def list_cmd(
    category: Annotated[str, typer.Option("--category", "-c", help="Category filter")] = ALL_CATEGORIES,
    search: Annotated[str, typer.Option("--search", "-q", help="Name contains (case-insensitive)")] = "",
):
    """List documents known to the service."""
    async def go(sync: SyncOrchestrator):
        await sync.refresh_documents(resume_polling=False)
        return sync.get_filtered_documents(category, search)

    _print_records(_run("list", go))


@app.command()
def status(
    document_id: Annotated[str, typer.Argument(help="Document id")],
):
    """Show the processing status of a document."""
    async def go(sync: SyncOrchestrator):
        await sync.refresh_documents(resume_polling=False)
        if document_id not in sync.registry:
            return None
        return await sync.check_status(document_id)

    record = _run("status", go)
    if record is None:
        typer.echo(f"Not found: {document_id}", err=True)
        raise typer.Exit(1)
    _print_records([record])


@app.command()
def delete(
    document_id: Annotated[str, typer.Argument(help="Document id")],
):
    """Delete a document from the service and local storage."""
    async def go(sync: SyncOrchestrator):
        await sync.refresh_documents(resume_polling=False)
        deleted = await sync.delete_document(document_id)
        return deleted, list(sync.inconsistencies)

    deleted, inconsistencies = _run("delete", go)
    if not deleted:
        typer.echo(f"Could not delete {document_id}", err=True)
        raise typer.Exit(1)
    for item in inconsistencies:
        typer.echo(f"Warning: local copy {item.storage_ref} could not be removed", err=True)
    typer.echo(f"Deleted {document_id}")


@app.command()
def download(
    document_id: Annotated[str, typer.Argument(help="Document id")],
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help="Write to this file (default: stdout)")] = None,
):
    """Download a document (local copy first, then the service)."""
    async def go(sync: SyncOrchestrator):
        await sync.refresh_documents(resume_polling=False)
        return await sync.download_document(document_id)

    data = _run("download", go)
    if output is None:
        sys.stdout.buffer.write(data)
    else:
        output.write_bytes(data)
        typer.echo(f"Wrote {_format_size(len(data))} to {output}", err=True)


@app.command()
def grant(
    directory: Annotated[Path, typer.Argument(file_okay=False, help="Directory to store documents in")],
):
    """Grant docsync a directory for native document storage."""
    store_path = _store_path()
    config = load_or_create_config(store_path)
    kv = KeyValueStore(config.kv_path)
    try:
        handle = NativeFsBackend(kv).grant(directory)
    finally:
        kv.close()
    if handle is None:
        typer.echo(f"Error: {directory} is not a writable directory", err=True)
        raise typer.Exit(1)
    if config.storage.backend == "fallback":
        config.storage.backend = "auto"
        save_config(config)
    typer.echo(f"Documents will be stored in {handle.path}")


@app.command()
def chat(
    message: Annotated[str, typer.Argument(help="Message to send")],
):
    """Send a message in the current conversation."""
    async def go(sync: SyncOrchestrator):
        return await sync.send_message(message)

    reply = _run("chat", go)
    if _json_output:
        typer.echo(json.dumps({
            "success": reply.success,
            "response": reply.response,
            "sessionId": reply.session_id,
            "error": reply.error,
        }, indent=2))
        return
    if not reply.success:
        typer.echo(f"Error: {reply.error or 'chat request failed'}", err=True)
        raise typer.Exit(1)
    typer.echo(reply.response)


@app.command()
def reset():
    """Archive the current conversation and start a new one."""
    async def go(sync: SyncOrchestrator):
        return sync.clear_conversation()

    conversation = _run("reset", go)
    if conversation is None:
        typer.echo("Started a new conversation.")
    else:
        typer.echo(f"Archived \"{conversation.title}\"; started a new conversation.")


@app.command()
def history(
    search: Annotated[str, typer.Argument(help="Title contains (case-insensitive)")] = "",
):
    """List archived conversations."""
    async def go(sync: SyncOrchestrator):
        return sync.history.search(search)

    conversations = _run("history", go)
    if _json_output:
        typer.echo(json.dumps([
            {"id": c.id, "title": c.title, "timestamp": c.timestamp, "messages": len(c.messages)}
            for c in conversations
        ], indent=2))
        return
    if not conversations:
        typer.echo("No conversations.", err=True)
        return
    for c in conversations:
        typer.echo(f"{c.id}  {c.timestamp}  {c.title}  [{len(c.messages)} messages]")


@app.command()
def categories():
    """List document categories."""
    for category in DEFAULT_CATEGORIES:
        typer.echo(category.name)


if __name__ == "__main__":
    app()
