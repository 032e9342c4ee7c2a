"""Command-line entry point for batch agent runs and the webhook server."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console

from .agents import CommandAgentRunner
from .batch import BatchOptions, BatchRunner
from .callbacks import CallbackRouter
from .channel import ChatChannel, LoggingChannel
from .config import WorkflowSettings, load_credentials, load_settings
from .constants import (
    AGENT_AUTO_ADVANCE,
    AGENT_IMPLEMENT,
    AGENT_PR_REVIEW,
    AGENT_PRODUCT_DESIGN,
    AGENT_PRODUCT_DEV,
    AGENT_TECH_DESIGN,
    ALL_AGENTS_ORDER,
    DEFAULT_BATCH_LIMIT,
    DEFAULT_STALE_TIMEOUT_MINUTES,
    ITEM_TYPE_BUG,
    ITEM_TYPE_FEATURE,
    STATE_DIR_NAME,
)
from .errors import ConfigError, WorkflowError
from .logging_utils import ActionLog, configure_logging
from .models import ActionResult, Outcome
from .phases import PhaseResolver
from .store import WorkflowStore
from .tracker import FileTracker
from .undo import UndoLedger
from .workflow import WorkflowService

AGENT_FLAGS = {
    AGENT_AUTO_ADVANCE: "auto_advance",
    AGENT_PRODUCT_DEV: "product_dev",
    AGENT_PRODUCT_DESIGN: "product_design",
    AGENT_TECH_DESIGN: "tech_design",
    AGENT_IMPLEMENT: "implement",
    AGENT_PR_REVIEW: "pr_review",
}


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-workflow",
        description="Run workflow agents over tracked items",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    selectors = parser.add_argument_group("agents")
    selectors.add_argument("--all", action="store_true", help="Run every agent in pipeline order")
    for agent in ALL_AGENTS_ORDER:
        selectors.add_argument(f"--{agent}", dest=AGENT_FLAGS[agent], action="store_true", help=f"Run the {agent} agent")

    parser.add_argument("--dry-run", action="store_true", help="Show what would run without changing anything")
    parser.add_argument("--id", dest="item_id", default=None, help="Only process this item (issue number or item id)")
    parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_BATCH_LIMIT,
        help=f"Maximum items per agent (default: {DEFAULT_BATCH_LIMIT})",
    )
    parser.add_argument(
        "--stale-timeout",
        type=int,
        default=None,
        help=f"Minutes before a held lock is considered stale; 0 forces it clear (default: {DEFAULT_STALE_TIMEOUT_MINUTES})",
    )
    parser.add_argument("--skip-pull", action="store_true", help="Do not git pull before running")
    parser.add_argument("--reset", action="store_true", help="Hard-reset to the default branch before running")
    parser.add_argument(
        "--global-limit",
        action="store_true",
        help="With --all, stop after the first agent that processed items",
    )
    parser.add_argument("--triggered-by", default=None, help="Who or what started this run (recorded in history)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Shorthand for --log-level DEBUG")
    return parser


def _build_serve_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-workflow serve",
        description="Serve the chat webhook",
    )
    parser.add_argument("--project-dir", type=Path, default=Path("."), help="Project directory")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Port (default: 8080)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO")
    return parser


def _selected_agents(args: argparse.Namespace) -> list[str]:
    if args.all:
        return list(ALL_AGENTS_ORDER)
    return [agent for agent in ALL_AGENTS_ORDER if getattr(args, AGENT_FLAGS[agent])]


def build_service(
    project_dir: Path,
    settings: WorkflowSettings,
    *,
    channel: Optional[ChatChannel] = None,
    dry_run: bool = False,
) -> tuple[FileTracker, WorkflowStore, WorkflowService]:
    state_dir = project_dir / STATE_DIR_NAME
    tracker = FileTracker(state_dir)
    store = WorkflowStore(state_dir)
    service = WorkflowService(
        tracker,
        store,
        resolver=PhaseResolver(tracker, store, dry_run=dry_run, default_branch=settings.default_branch),
        undo=UndoLedger(settings.undo_window_seconds),
        channel=channel,
        action_log=ActionLog(state_dir),
        default_branch=settings.default_branch,
    )
    return tracker, store, service


def _load_startup(project_dir: Path) -> Optional[WorkflowSettings]:
    try:
        load_credentials()
        return load_settings(project_dir)
    except ConfigError as exc:
        logger.error("{}", exc)
        return None


def run_agents(args: argparse.Namespace) -> int:
    """Run the agents selected on the command line. Returns the exit code."""
    level = "DEBUG" if args.verbose else (args.log_level or "INFO")
    configure_logging(level)

    agents = _selected_agents(args)
    if not agents:
        logger.error("No agents selected. Pass --all or one of: {}", ", ".join(f"--{a}" for a in ALL_AGENTS_ORDER))
        return 2
    if args.global_limit and not args.all:
        logger.warning("--global-limit only applies with --all; ignoring")

    project_dir = args.project_dir.resolve()
    settings = _load_startup(project_dir)
    if settings is None:
        return 1

    channel = LoggingChannel()
    tracker, store, service = build_service(project_dir, settings, channel=channel, dry_run=args.dry_run)
    agent_runner = CommandAgentRunner(
        commands={name: cfg.command for name, cfg in settings.agents.items() if cfg.command},
        project_dir=project_dir,
        run_dir=project_dir / STATE_DIR_NAME / "runs",
        timeout_seconds={name: cfg.timeout_seconds for name, cfg in settings.agents.items()},
    )
    runner = BatchRunner(
        project_dir,
        tracker,
        store,
        agent_runner,
        settings,
        channel=channel,
        service=service,
    )
    options = BatchOptions(
        agents=agents,
        item_id=args.item_id,
        limit=max(1, args.limit),
        dry_run=args.dry_run,
        skip_pull=args.skip_pull,
        reset=args.reset,
        global_limit=args.global_limit and args.all,
        stale_timeout_minutes=args.stale_timeout,
        triggered_by=args.triggered_by,
    )
    if args.dry_run:
        logger.info("Dry run: no tracker, store or git changes will be made")
    return runner.run(options)


REQUEST_COMMANDS = ("create", "approve", "route", "delete")


def _build_request_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-workflow",
        description="Submit and triage feature and bug requests",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--project-dir", type=Path, default=Path("."), help="Project directory")
    common.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO")
    common.add_argument("--actor", default=None, help="Who is acting (recorded in history)")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", parents=[common], help="Submit a request for approval")
    create.add_argument("title", help="Short title of the request")
    create.add_argument("--type", dest="item_type", choices=[ITEM_TYPE_FEATURE, ITEM_TYPE_BUG], default=ITEM_TYPE_FEATURE)
    create.add_argument("--description", default="", help="Longer description, posted on the issue once approved")

    approve = commands.add_parser("approve", parents=[common], help="Approve a pending request into a tracked issue")
    approve.add_argument("request_id")
    approve.add_argument("--backlog", action="store_true", help="Park the issue in Backlog without routing")

    route = commands.add_parser("route", parents=[common], help="Move a Backlog issue to its starting phase")
    route.add_argument("issue", type=int)
    route.add_argument("destination", help="product-dev, product-design, tech-design, implementation or backlog")

    delete = commands.add_parser("delete", parents=[common], help="Delete a pending request")
    delete.add_argument("request_id")
    return parser


def _print_result(console: Console, result: ActionResult) -> None:
    if result.outcome == Outcome.SUCCESS:
        console.print(f"[green]✅ {result.message}[/green]")
        request_id = result.extra.get("request_id")
        if request_id:
            console.print(f"Request id: [bold]{request_id}[/bold]")
    elif result.success:
        console.print(f"[yellow]ℹ️ {result.message}[/yellow]")
    else:
        console.print(f"[red]❌ {result.outcome.value}: {result.message}[/red]")


def _request_command(args: argparse.Namespace, console: Optional[Console] = None) -> int:
    """Run one request/triage subcommand. Returns 0 when the action succeeded."""
    configure_logging(args.log_level)
    project_dir = args.project_dir.resolve()
    settings = _load_startup(project_dir)
    if settings is None:
        return 1

    _, _, service = build_service(project_dir, settings, channel=LoggingChannel())
    try:
        if args.command == "create":
            result = service.submit_request(args.title, args.item_type, args.description, actor=args.actor)
        elif args.command == "approve":
            result = service.approve_request(args.request_id, actor=args.actor, to_backlog=args.backlog)
        elif args.command == "route":
            result = service.route(args.issue, args.destination, actor=args.actor)
        else:
            result = service.delete_request(args.request_id, actor=args.actor)
    except WorkflowError as exc:
        logger.error("{} failed: {}", args.command, exc)
        result = ActionResult.fail(Outcome.FAILED, str(exc))

    _print_result(console or Console(), result)
    return 0 if result.outcome == Outcome.SUCCESS else 1


def _serve_command(args: argparse.Namespace) -> int:
    configure_logging(args.log_level)
    project_dir = args.project_dir.resolve()
    settings = _load_startup(project_dir)
    if settings is None:
        return 1

    import uvicorn

    from .server import create_app

    channel = LoggingChannel()
    _, _, service = build_service(project_dir, settings, channel=channel)
    router = CallbackRouter(
        service,
        channel,
        timeout_seconds=settings.handler_timeout_seconds,
        max_workers=settings.callback_workers,
    )
    app = create_app(router, project_dir=project_dir)
    try:
        uvicorn.run(app, host=args.host, port=args.port)
    finally:
        router.shutdown(wait=False)
    return 0


def main(argv: list[str] | None = None) -> None:
    """Run the `agent-workflow` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv and argv[0] in REQUEST_COMMANDS:
        raise SystemExit(_request_command(_build_request_parser().parse_args(argv)))
    if argv and argv[0] == "serve":
        raise SystemExit(_serve_command(_build_serve_parser().parse_args(argv[1:])))
    raise SystemExit(run_agents(_build_run_parser().parse_args(argv)))
