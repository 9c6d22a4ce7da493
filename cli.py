"""
toolturn - command-line entry point.
Runs agent turns against Amazon Bedrock, rolls turns back, and manages the
sensitive-command rules used in unattended (YOLO) mode.
"""

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.table import Table

from backend import LocalBackend
from bedrock_service import BedrockService
from config import app_config, model_config, get_credentials_info
from engine.checkpoints import CheckpointManager
from engine.coordinator import TurnCoordinator
from engine.events import AgentEvent, Confirmation, ConfirmationOutcome, PermissionDecision, ToolCall
from engine.sensitive_commands import SensitiveCommandStore
from engine.undo_log import UndoLog
from sessions import Session, SessionStore, auto_name
from tools.dispatch import ToolRegistry

logger = logging.getLogger(__name__)

console = Console()


def _configure_logging() -> None:
    # Log to a file so tool output and prompts stay readable
    logging.basicConfig(
        filename=app_config.log_file,
        level=getattr(logging, app_config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# ============================================================
# Confirmation
# ============================================================

def parse_confirmation(answer: str) -> Optional[Confirmation]:
    """y = approve, a = approve always, n = reject, "n: reason" = reject and tell the model why."""
    text = answer.strip()
    lowered = text.lower()
    if lowered in ("y", "yes"):
        return Confirmation(ConfirmationOutcome.APPROVE)
    if lowered in ("a", "always"):
        return Confirmation(ConfirmationOutcome.APPROVE_ALWAYS)
    if lowered in ("n", "no"):
        return Confirmation(ConfirmationOutcome.REJECT)
    if lowered.startswith(("n:", "no:")):
        reason = text.split(":", 1)[1].strip()
        if reason:
            return Confirmation(ConfirmationOutcome.REJECT_WITH_REASON, reason=reason)
        return Confirmation(ConfirmationOutcome.REJECT)
    return None


def _describe_call(call: ToolCall) -> str:
    args = call.parsed_arguments()
    if "command" in args:
        return f"{call.name}: {args['command']}"
    if "filePath" in args:
        return f"{call.name}: {args['filePath']}"
    if "prompt" in args:
        return f"{call.name}: {str(args['prompt'])[:80]}"
    return call.name


async def confirm_in_terminal(call: ToolCall, decision: PermissionDecision, siblings: List[ToolCall]) -> Confirmation:
    console.print()
    if decision.is_sensitive:
        rule = decision.matched_rule
        label = f" ({rich_escape(rule.description)})" if rule is not None else ""
        console.print(f"[bold red]Sensitive command{label}[/bold red]")
    for c in [call] + list(siblings):
        console.print(f"  [yellow]▶[/yellow] {rich_escape(_describe_call(c))}")
    while True:
        answer = await asyncio.to_thread(console.input, "Approve? (y)es / (a)lways / (n)o / n: reason > ")
        confirmation = parse_confirmation(answer)
        if confirmation is not None:
            return confirmation
        console.print("[dim]Please answer y, a, n, or 'n: reason'.[/dim]")


async def print_event(event: AgentEvent) -> None:
    prefix = ""
    if event.data and event.data.get("agent_name"):
        prefix = f"[magenta]⚇ {rich_escape(event.data['agent_name'])}[/magenta] "
    if event.type == "text":
        if not prefix:
            console.print(event.content, end="", markup=False, highlight=False)
    elif event.type == "tool_call":
        console.print(f"\n{prefix}[cyan]⚡ {rich_escape(event.content)}[/cyan]")
    elif event.type == "tool_result":
        if event.data and event.data.get("is_error"):
            console.print(f"{prefix}[red]  └─ {rich_escape(event.content[:300])}[/red]")
    elif event.type == "compression":
        console.print(f"\n[dim]Context compressed ({rich_escape(event.content)})[/dim]")
    elif event.type in ("sub_agent_start", "sub_agent_done"):
        console.print(f"\n{prefix}[dim]{rich_escape(event.type.replace('_', ' '))}: {rich_escape(event.content)}[/dim]")


# ============================================================
# Commands
# ============================================================

def _build_coordinator(session: Session, working_dir: str, model: Optional[str] = None,
                       unattended: Optional[bool] = None, with_model: bool = True) -> TurnCoordinator:
    backend = LocalBackend(working_dir)
    checkpoints = CheckpointManager()
    undo_log = UndoLog()
    registry = ToolRegistry(backend, checkpoints=checkpoints, undo_log=undo_log)
    stream_completion = BedrockService(model_id=model).stream_completion if with_model else None
    return TurnCoordinator(
        stream_completion=stream_completion,
        registry=registry,
        request_confirmation=confirm_in_terminal,
        checkpoints=checkpoints,
        undo_log=undo_log,
        session_id=session.session_id,
        model=model,
        unattended=unattended,
        rules=SensitiveCommandStore().load(),
    )


async def _run(args: argparse.Namespace) -> int:
    working_dir = os.path.abspath(args.dir)
    model = args.model or model_config.model_id
    store = SessionStore()
    session = store.get_or_create(working_dir, model, args.session or auto_name(args.prompt))
    coordinator = _build_coordinator(session, working_dir, model, unattended=args.yolo or None)
    logger.info(f"Running turn in {working_dir} ({get_credentials_info()})")

    cancel = threading.Event()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, cancel.set)

    result = await coordinator.run_turn(session.history, args.prompt, cancel=cancel, on_event=print_event)
    console.print()

    session.history = result.messages
    session.add_usage(result.usage.to_dict())
    store.save(session)

    if result.status == "completed":
        return 0
    if result.status == "aborted":
        console.print("[yellow]Turn aborted. Run 'toolturn rollback' to undo its changes.[/yellow]")
        return 130
    if result.status == "rejected":
        console.print("[yellow]Tool call rejected, turn ended.[/yellow]")
        return 1
    console.print(f"[red]Turn stopped: {rich_escape(result.status)}"
                  f"{': ' + rich_escape(result.error) if result.error else ''}[/red]")
    return 1


def _load_session(store: SessionStore, args: argparse.Namespace) -> Session:
    session = store.load(args.session) or store.get_or_create(os.path.abspath(args.dir), model_config.model_id, args.session)
    if not session.history:
        raise SystemExit(f"Session not found or empty: {args.session}")
    return session


async def _rollback(args: argparse.Namespace) -> int:
    store = SessionStore()
    session = _load_session(store, args)
    coordinator = _build_coordinator(session, session.working_directory or args.dir, with_model=False)
    before = len(session.history)
    session.history = await coordinator.rollback(session.history)
    store.save(session)
    console.print(f"Rolled back {before - len(session.history)} messages.")
    return 0


async def _undo(args: argparse.Namespace) -> int:
    store = SessionStore()
    session = _load_session(store, args)
    coordinator = _build_coordinator(session, session.working_directory or args.dir, with_model=False)
    try:
        await coordinator.rollback_to(session.history, args.to)
    except ValueError as e:
        console.print(f"[red]{rich_escape(str(e))}[/red]")
        return 1
    session = store.truncate(session.session_id, args.to)
    console.print(f"Session now ends at message {len(session.history)}.")
    return 0


def _history(args: argparse.Namespace) -> int:
    session = _load_session(SessionStore(), args)
    table = Table(title=session.name)
    table.add_column("#", justify="right")
    table.add_column("Prompt")
    for i, msg in enumerate(session.history):
        if msg.get("role") == "user" and isinstance(msg.get("content"), str):
            table.add_row(str(i), msg["content"][:100])
    console.print(table)
    return 0


async def _sessions(args: argparse.Namespace) -> int:
    store = SessionStore()
    if args.delete:
        if not store.delete(args.delete):
            console.print(f"[red]Session not found: {rich_escape(args.delete)}[/red]")
            return 1
        # recorded effects of a deleted session can no longer be rolled back
        UndoLog().clear_session(args.delete)
        await CheckpointManager().commit(args.delete)
        console.print(f"Deleted session {rich_escape(args.delete)}.")
        return 0

    sessions = store.list_sessions(None if args.all else os.path.abspath(args.dir))
    table = Table(title="Sessions")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Prompts", justify="right")
    table.add_column("Updated")
    for session in sessions:
        table.add_row(rich_escape(session.session_id), rich_escape(session.name),
                      str(session.message_count), session.updated_at[:19])
    console.print(table)
    return 0


def _sensitive(args: argparse.Namespace) -> int:
    store = SensitiveCommandStore()
    try:
        if args.action == "add":
            rule = store.add(args.pattern, args.description or "")
            console.print(f"Added {rule.id}")
        elif args.action == "remove":
            if not store.remove(args.rule_id):
                console.print(f"[red]No rule {rich_escape(args.rule_id)}[/red]")
                return 1
        elif args.action == "toggle":
            rule = store.toggle(args.rule_id)
            console.print(f"{rule.id} {'enabled' if rule.enabled else 'disabled'}")
        elif args.action == "reset":
            store.reset_to_defaults()
            console.print("Sensitive-command rules reset to defaults.")
    except KeyError as e:
        console.print(f"[red]{rich_escape(str(e))}[/red]")
        return 1

    if args.action == "list":
        table = Table(title="Sensitive commands")
        table.add_column("ID")
        table.add_column("Pattern")
        table.add_column("Description")
        table.add_column("On")
        for rule in store.load():
            table.add_row(rule.id, rich_escape(rule.pattern), rich_escape(rule.description),
                          "✓" if rule.enabled else "")
        console.print(table)
    return 0


# ============================================================
# Entry Point
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolturn",
        description="toolturn - tool-using coding agent on Amazon Bedrock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  toolturn run "add a --verbose flag" -d ~/my-project
  toolturn run "fix the failing test" --yolo
  toolturn rollback --session my-session
  toolturn undo --session my-session --to 3
  toolturn sessions --all
  toolturn sensitive add "terraform destroy*" "Destroys infrastructure"
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one turn")
    run.add_argument("prompt")
    run.add_argument("--session", help="Session name (default: derived from the prompt)")
    run.add_argument("-d", "--dir", default=app_config.working_directory, help="Working directory")
    run.add_argument("--yolo", action="store_true", help="Unattended mode: only sensitive commands ask")
    run.add_argument("--model", help="Bedrock model id")

    for name, help_text in (("rollback", "Undo the latest turn"), ("history", "List prompts with message indexes")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--session", required=True)
        p.add_argument("-d", "--dir", default=app_config.working_directory)

    undo = sub.add_parser("undo", help="Roll the session back to a message index")
    undo.add_argument("--session", required=True)
    undo.add_argument("--to", type=int, required=True, help="Message index to return to")
    undo.add_argument("-d", "--dir", default=app_config.working_directory)

    sessions = sub.add_parser("sessions", help="List or delete saved sessions")
    sessions.add_argument("-d", "--dir", default=app_config.working_directory)
    sessions.add_argument("--all", action="store_true", help="Include sessions from every directory")
    sessions.add_argument("--delete", metavar="SESSION_ID", help="Delete a session and its rollback state")

    sens = sub.add_parser("sensitive", help="Manage sensitive-command rules")
    actions = sens.add_subparsers(dest="action", required=True)
    actions.add_parser("list")
    add = actions.add_parser("add")
    add.add_argument("pattern", help="Command pattern, * matches anything")
    add.add_argument("description", nargs="?", default="")
    for name in ("remove", "toggle"):
        actions.add_parser(name).add_argument("rule_id")
    actions.add_parser("reset")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging()

    if args.command == "run":
        return asyncio.run(_run(args))
    if args.command == "rollback":
        return asyncio.run(_rollback(args))
    if args.command == "undo":
        return asyncio.run(_undo(args))
    if args.command == "history":
        return _history(args)
    if args.command == "sessions":
        return asyncio.run(_sessions(args))
    return _sensitive(args)


if __name__ == "__main__":
    sys.exit(main())
