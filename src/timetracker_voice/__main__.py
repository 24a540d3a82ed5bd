"""Entrypoint for a terminal voice session via `python -m timetracker_voice`."""
from __future__ import annotations

import argparse
import asyncio
import getpass
from typing import Optional, Sequence

import structlog
from rich.console import Console
from rich.panel import Panel

from .app import build_app
from .auth import AuthError
from .config import VoiceSettings
from .logging_utils import configure_logging
from .metrics import start_metrics_server
from .models import ConversationState

logger = structlog.get_logger(__name__)

STATE_STYLES = {
    ConversationState.IDLE: "dim",
    ConversationState.LISTENING: "green",
    ConversationState.PROCESSING: "yellow",
    ConversationState.SPEAKING: "cyan",
    ConversationState.ERROR: "red",
}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Talk to your TimeTracker tasks.")
    parser.add_argument("--env-file", help="Explicit .env file to load")
    parser.add_argument("--log-level", help="Override VOICE_LOG_LEVEL")
    parser.add_argument("--email", help="Sign in with this account instead of a stored token")
    parser.add_argument("--password", help="Password for --email (prompted when omitted)")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, console: Console) -> None:
    settings = VoiceSettings.from_env(args.env_file)
    configure_logging(args.log_level or settings.observability.log_level)
    if settings.observability.metrics_port:
        start_metrics_server(settings.observability.metrics_port)

    app = build_app(settings)
    if args.email:
        password = args.password or getpass.getpass("Password: ")
        try:
            await app.auth.sign_in_with_password(settings.supabase, args.email, password)
        except AuthError as exc:
            console.print(Panel(str(exc), title="Sign-in failed", border_style="red"))
            return
    if not app.auth.is_authenticated:
        console.print("[yellow]Not signed in; task changes will be refused.[/yellow]")

    await app.warm_up()

    def show_state(state: ConversationState) -> None:
        style = STATE_STYLES.get(state, "white")
        console.print(f"[{style}]● {state.value}[/{style}]")

    def show_transcript(text: str) -> None:
        if text:
            console.print(f"[cyan]AI:[/cyan] {text}", end="\r")

    app.orchestrator.state.subscribe(show_state)
    app.client.session.last_response.subscribe(show_transcript)

    try:
        await app.orchestrator.start_conversation()
        if app.orchestrator.state.value is not ConversationState.LISTENING:
            reason = app.orchestrator.last_error or "could not connect"
            console.print(Panel(reason, title="Conversation not started", border_style="red"))
            return
        console.print(Panel("Speak now. Press Ctrl-C to stop.", title="TimeTracker Voice", border_style="cyan"))
        await asyncio.Event().wait()
    finally:
        await app.aclose()
        logger.info("cli.stopped")


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    console = Console()
    try:
        asyncio.run(run(args, console))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


if __name__ == "__main__":  # pragma: no cover
    main()
