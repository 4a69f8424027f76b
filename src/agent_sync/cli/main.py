#!/usr/bin/env python3
"""
agent-sync CLI

Command-line interface for inspecting and syncing wrapped agent sessions.

Commands:
- agent-sync sync <session-id>: Run the processor chain for one session (or --all)
- agent-sync status <session-id>: Cursor state, pending counts, lock holder
- agent-sync sessions: Table of known sessions
- agent-sync replay <session-id>: Print the last successful conversation payload
- agent-sync config: Show or update configuration
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax

from .. import __version__
from ..api.client import RemoteSender
from ..settings.models import AuthMode, SyncSettings
from ..settings.storage import SettingsStorage
from ..state.delta_store import DeltaStore
from ..state.jsonl_reader import read_jsonl
from ..state.lock_manager import SessionLockManager
from ..state.payload_log import PayloadLog
from ..state.session_store import SessionStore
from ..sync.base import ProcessingContext
from ..sync.orchestrator import SessionSyncer
from ..sync.registry import create_default_registry
from .output import OutputManager, format_ms

app = typer.Typer(
    name="agent-sync",
    help="agent-sync - Sync coding-agent sessions to the ingestion API",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()
output = OutputManager(console)

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _load_settings() -> tuple:
    storage = SettingsStorage()
    return storage, storage.load()


def _build_syncer(settings: SyncSettings) -> SessionSyncer:
    paths = settings.session_paths()

    def sender_factory(context: ProcessingContext) -> RemoteSender:
        return RemoteSender.from_context(
            context,
            timeout=settings.retry.timeout_seconds,
            retry_delays=settings.retry.delays,
        )

    return SessionSyncer(
        create_default_registry(),
        paths=paths,
        lock_manager=SessionLockManager(paths, ttl_seconds=settings.effective_lock_ttl(), agent="agent-sync"),
        sender_factory=sender_factory,
    )


def _load_transcript(path: str) -> List[Dict[str, Any]]:
    return [r for r in read_jsonl(path) if isinstance(r, dict)]


@app.command()
def sync(
    session_id: Optional[str] = typer.Argument(None, help="Session to sync"),
    all_sessions: bool = typer.Option(False, "--all", "-a", help="Catch up every matched session"),
    live: bool = typer.Option(False, "--live", help="Read the correlated agent transcript and sync new messages"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run every state transition without network calls"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Sync pending metrics and conversation history.

    Examples:
        agent-sync sync 3f1c... --dry-run
        agent-sync sync 3f1c... --live
        agent-sync sync --all
    """
    _setup_logging(verbose)
    storage, settings = _load_settings()
    context = storage.build_context(settings, dry_run=dry_run or None)
    syncer = _build_syncer(settings)

    if all_sessions:
        results = asyncio.run(syncer.sync_all(context))
        if not results:
            output.print_info("No sessions to sync")
        for sid, result in results.items():
            output.sync_result(sid, result)
        if any(not r.success for r in results.values()):
            raise typer.Exit(code=1)
        return

    if not session_id:
        output.print_error("Provide a session id or --all")
        raise typer.Exit(code=2)

    messages = None
    if live:
        metadata = syncer.store.load(session_id)
        transcript = metadata.correlation.agent_session_file if metadata else None
        if not transcript:
            output.print_error(f"No correlated transcript for session {session_id}")
            raise typer.Exit(code=1)
        messages = _load_transcript(transcript)
        logger.debug(f"Loaded {len(messages)} transcript records from {transcript}")

    result = asyncio.run(syncer.sync(session_id, context, messages=messages))
    output.sync_result(session_id, result)
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session to inspect"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show cursor state, pending counts and lock holder of a session."""
    _setup_logging(verbose)
    _, settings = _load_settings()
    paths = settings.session_paths()
    store = SessionStore(paths)

    session = store.load(session_id)
    if session is None:
        output.print_error(f"Session not found: {session_id}")
        raise typer.Exit(code=1)

    agent = create_default_registry().get(session.agent_name)
    agent_label = agent.display_name if agent else f"{session.agent_name} (unsupported agent)"
    output.print_header(f"Session {session_id}", f"{agent_label} in {session.working_directory or '-'}")

    lock = SessionLockManager(paths, ttl_seconds=settings.effective_lock_ttl()).read_lock(session_id)
    output.key_value_panel({
        "Activity": store.activity_status(session).value,
        "Correlation": session.correlation.status.value,
        "Branch": session.git_branch,
        "Started": format_ms(session.start_time),
        "Ended": format_ms(session.end_time),
        "Lock": f"pid {lock.pid} on {lock.hostname}" if lock else None,
    }, title="Session")

    metrics = session.sync.metrics
    delta_stats = DeltaStore(session_id, paths).stats()
    output.key_value_panel({
        "Deltas (pending/synced)": f"{delta_stats['pending']}/{delta_stats['synced']}",
        "Total synced": metrics.total_synced,
        "Total failed": metrics.total_failed,
        "Last sync": format_ms(metrics.last_sync_at),
        "Last error": metrics.last_sync_error,
        "Final sent": metrics.final_sent,
    }, title="Metrics")

    conversations = session.sync.conversations
    payload_stats = PayloadLog(session_id, paths).get_sync_stats()
    output.key_value_panel({
        "Conversation ID": conversations.conversation_id,
        "History index": conversations.last_synced_history_index,
        "Last message": conversations.last_synced_message_uuid,
        "Messages synced": conversations.total_messages_synced,
        "Payloads (pending/success/failed)": (
            f"{payload_stats['pending']}/{payload_stats['success']}/{payload_stats['failed']}"
        ),
        "Last sync": format_ms(conversations.last_sync_at),
        "Last error": conversations.last_sync_error,
    }, title="Conversations")


@app.command()
def sessions(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List known sessions with their activity status."""
    _setup_logging(verbose)
    _, settings = _load_settings()
    paths = settings.session_paths()
    store = SessionStore(paths)

    found = store.list_sessions()
    if not found:
        output.print_info(f"No sessions in {paths.sessions_dir}")
        return

    rows = [
        {
            "session": session,
            "activity": store.activity_status(session),
            "pending": DeltaStore(session.session_id, paths).stats()["pending"],
        }
        for session in sorted(found, key=lambda s: s.start_time, reverse=True)
    ]
    output.sessions_table(rows)


@app.command()
def replay(
    session_id: str = typer.Argument(..., help="Session whose conversation to print"),
):
    """Print the history of the last successfully sent conversation payload."""
    _, settings = _load_settings()
    record = PayloadLog(session_id, settings.session_paths()).last_successful()
    if record is None:
        output.print_warning(f"No successful conversation payload for session {session_id}")
        raise typer.Exit(code=1)

    output.print_header(
        f"Conversation {record.conversation_id}",
        f"{record.message_count} entries, sent {format_ms(record.timestamp)}",
    )
    console.print(Syntax(json.dumps(record.history, indent=2, ensure_ascii=False), "json", word_wrap=True))


@app.command()
def config(
    show: bool = typer.Option(False, "--show", help="Show current configuration"),
    api_url: Optional[str] = typer.Option(None, "--api-url", help="Set the ingestion API base URL"),
    auth_mode: Optional[AuthMode] = typer.Option(None, "--auth-mode", help="Set the auth mode"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Store the API key in the keyring"),
    cookies: Optional[str] = typer.Option(None, "--cookies", help="Store SSO cookies in the keyring"),
):
    """
    Configuration management.

    Examples:
        agent-sync config --show
        agent-sync config --api-url https://ingest.example.com --auth-mode api-key --api-key KEY
    """
    storage, settings = _load_settings()

    if api_url or auth_mode:
        if api_url:
            settings.api_base_url = api_url
            output.print_success(f"API URL set to: {api_url}")
        if auth_mode:
            settings.auth_mode = auth_mode
            output.print_success(f"Auth mode set to: {auth_mode.value}")
        storage.save(settings)
    if api_key:
        storage.set_api_key(api_key)
        output.print_success("API key stored in keyring")
    if cookies:
        storage.set_cookies(cookies)
        output.print_success("SSO cookies stored in keyring")

    if show or not (api_url or auth_mode or api_key or cookies):
        output.config_display({
            "Version": __version__,
            "Config file": storage.config_file,
            "Data dir": settings.session_paths().sessions_dir,
            "API URL": settings.api_base_url,
            "Auth mode": settings.auth_mode.value,
            "Client type": settings.client_type,
            "Agents": ", ".join(create_default_registry().list_agents()),
            "Timeout (s)": settings.retry.timeout_seconds,
            "Retry delays (s)": ", ".join(f"{d:g}" for d in settings.retry.delays),
            "Lock TTL (s)": settings.effective_lock_ttl(),
            "Dry run": settings.dry_run,
        })


@app.command()
def version():
    """Show the agent-sync version."""
    console.print(f"agent-sync {__version__}")


def main():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
