"""CLI - Terminal consumer for the sync layer."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from typing import Any, List, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from .client import RequestClient
from .config import DEFAULT_CONFIG_PATH, SyncConfig, env_overrides, load_config, load_raw_config
from .config_validator import Severity, has_errors, validate_config
from .errors import ApiError
from .events import RATE_LIMIT_EVENT, SERVICE_UNAVAILABLE_EVENT, SIGNED_OUT_EVENT, EventBus
from .notifications import Notification, NotificationStore
from .observability import SyncObserver
from .storage import KeyValueStore, TokenStorage, open_durable_store
from .stream import StreamEvent, StreamHandlers, StreamSubscription

console = Console()

TYPE_STYLES = {
    "info": "cyan",
    "success": "green",
    "warning": "yellow",
    "error": "red",
    "rateLimit": "magenta",
}


@dataclass
class CliContext:
    config: SyncConfig
    store: KeyValueStore
    events: EventBus
    observer: SyncObserver
    client: RequestClient


def _print_signed_out(payload: Any) -> None:
    if payload.get("reason") != "user":
        console.print(f"🔒 Session expired. Sign in again ({payload.get('redirect')}).", style="red")


def build_context(config: SyncConfig) -> CliContext:
    observer = SyncObserver(verbose=config.verbose)
    store = open_durable_store(config.resolved_storage_path)
    events = EventBus()
    tokens = TokenStorage(store, events=events)
    client = RequestClient(config, token_storage=tokens, events=events, observer=observer)

    events.subscribe(RATE_LIMIT_EVENT, lambda p: console.print(f"⏳ {p.get('message')}", style="yellow"))
    events.subscribe(SERVICE_UNAVAILABLE_EVENT, lambda p: console.print(f"🚧 {p.get('message')}", style="yellow"))
    events.subscribe(SIGNED_OUT_EVENT, _print_signed_out)
    return CliContext(config=config, store=store, events=events, observer=observer, client=client)


def render_notifications(notifications: List[Notification], unread: int, total: int) -> Table:
    table = Table(title=f"🔔 Notifications ({unread} unread / {total})", show_header=True, header_style="bold cyan")
    table.add_column("", width=2)
    table.add_column("Type", width=10)
    table.add_column("Title", style="bold", no_wrap=False)
    table.add_column("Message", no_wrap=False)
    table.add_column("Created", style="dim", width=20)
    table.add_column("ID", style="dim", width=26)

    for n in notifications:
        table.add_row(
            "" if n.read else "●",
            f"[{TYPE_STYLES.get(n.type.value, 'white')}]{n.type.value}[/]",
            n.title,
            n.message,
            n.created_at[:19],
            n.id,
        )
    return table


async def run_notifications(ctx: CliContext, watch: bool, limit: int, use_stream: bool) -> int:
    store = NotificationStore.from_config(ctx.client, ctx.config, ctx.store)
    try:
        if not watch:
            await store.fetch(limit=limit)
            if store.last_error:
                console.print(f"❌ {store.last_error.message}", style="red")
                return 1
            console.print(render_notifications(store.notifications, store.unread_count, store.total_count))
            return 0

        def redraw(state) -> None:
            if not state.is_loading:
                console.print(render_notifications(state.notifications, state.unread_count, state.total_count))

        store.subscribe(redraw)
        await store.connect(stream=use_stream)
        console.print(f"👀 Watching notifications (stream: {store.stream_state or 'polling'}). Ctrl+C to stop.", style="dim")
        await asyncio.Event().wait()
    finally:
        await store.aclose()
        await ctx.client.aclose()
    return 0


async def run_stream(ctx: CliContext, url: str, method: str, body: Any) -> int:
    outcome = {"code": 0}

    with Progress(TextColumn("{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"), console=console) as progress:
        task_id = progress.add_task("Connecting...", total=100)

        def on_progress(data: Any) -> None:
            if isinstance(data, dict):
                progress.update(
                    task_id,
                    completed=data.get("progress", 0),
                    description=data.get("message") or "Working...",
                )

        def on_message(event: StreamEvent) -> None:
            progress.console.print(f"[dim]{event.event}[/dim] {json.dumps(event.data, ensure_ascii=False)}")

        def on_complete(data: Any) -> None:
            progress.update(task_id, completed=100, description="Done")
            progress.console.print_json(data=data)

        def on_error(error: ApiError) -> None:
            outcome["code"] = 1
            progress.console.print(f"❌ {error.message}", style="red")

        subscription = StreamSubscription(
            ctx.client,
            url,
            method=method,
            body=body,
            handlers=StreamHandlers(
                on_message=on_message,
                on_progress=on_progress,
                on_complete=on_complete,
                on_error=on_error,
            ),
            observer=ctx.observer,
        )
        subscription.start()
        try:
            await subscription.wait()
        finally:
            await subscription.aclose()
            await ctx.client.aclose()
    return outcome["code"]


def run_check_config(config_path: str) -> int:
    raw_config = load_raw_config(config_path)
    raw_config = raw_config.get("sync", raw_config) if isinstance(raw_config, dict) else raw_config
    if isinstance(raw_config, dict):
        raw_config = {**raw_config, **env_overrides()}
    issues = validate_config(raw_config)
    if not issues:
        console.print("✅ Configuration looks good.", style="green")
        return 0
    for issue in issues:
        icon = "❌" if issue.severity == Severity.ERROR else "⚠️"
        style = "red" if issue.severity == Severity.ERROR else "yellow"
        console.print(f"  {icon} [{issue.field}] {issue.message}", style=style)
    return 1 if has_errors(issues) else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resume-sync",
        description="Resume Sync - notifications and live progress from the resume service",
    )
    parser.add_argument(
        "--config", "-c",
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file (config.yaml is used as the base)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log requests, refreshes and stream state changes",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    notifications = subparsers.add_parser("notifications", help="List notifications")
    notifications.add_argument("--watch", "-w", action="store_true", help="Keep running and show live updates")
    notifications.add_argument("--limit", type=int, default=50, help="Page size (default: 50)")
    notifications.add_argument("--no-stream", action="store_true", help="Poll instead of opening the live stream")

    stream = subparsers.add_parser("stream", help="Follow a progress stream (e.g. a generation job)")
    stream.add_argument("url", help="Stream path relative to the API base")
    stream.add_argument("--body", help="JSON request body; implies POST")
    stream.add_argument("--method", choices=["GET", "POST"], help="HTTP method (default: GET, or POST with --body)")

    login = subparsers.add_parser("login", help="Store an access token")
    login.add_argument("--token", "-t", required=True, help="Bearer access token")
    login.add_argument("--no-remember", action="store_true", help="Keep the token for this process only")

    subparsers.add_parser("logout", help="Forget the stored access token")
    subparsers.add_parser("check-config", help="Validate configuration and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "check-config":
        return run_check_config(args.config)

    try:
        config = load_config(args.config)
    except ValueError as exc:
        console.print(f"❌ {exc}", style="red")
        return 1
    if args.verbose:
        config.verbose = True

    ctx = build_context(config)

    if args.command == "login":
        ctx.client.sign_in(args.token, remember=not args.no_remember)
        scope = "this session" if args.no_remember else str(config.resolved_storage_path)
        console.print(f"🔑 Token stored ({scope}).", style="green")
        return 0
    if args.command == "logout":
        ctx.client.sign_out()
        console.print("👋 Signed out.", style="yellow")
        return 0

    try:
        if args.command == "notifications":
            return asyncio.run(run_notifications(ctx, args.watch, args.limit, not args.no_stream))
        if args.command == "stream":
            body = json.loads(args.body) if args.body else None
            method = args.method or ("POST" if body is not None else "GET")
            return asyncio.run(run_stream(ctx, args.url, method, body))
    except KeyboardInterrupt:
        console.print("\n👋 Goodbye!", style="yellow")
        return 130
    except json.JSONDecodeError as exc:
        console.print(f"❌ --body is not valid JSON: {exc}", style="red")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
