"""Run batch agents over eligible items under the directory lock."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger
from rich.console import Console
from rich.table import Table

from . import status_engine as engine
from .agents import DESIGN_KINDS, AgentOutput, AgentRequest, AgentRunner, build_prompt
from .channel import ChatChannel, InlineButton
from .config import WorkflowSettings
from .constants import (
    AGENT_AUTO_ADVANCE,
    AGENT_IMPLEMENT,
    AGENT_PR_REVIEW,
    AGENT_STATUS,
    AGENT_TECH_DESIGN,
    DEFAULT_BATCH_LIMIT,
    DESIGN_TYPE_STATUS,
    REVIEW_WAITING_FOR_CLARIFICATION,
    REVIEW_WAITING_FOR_REVIEW,
    STATUS_PR_REVIEW,
)
from .errors import LockHeldError, TrackerError, WorkflowError
from .git_utils import _ensure_git_exclude, _git_has_changes, _git_is_repo, git_cleanup, git_pull, git_reset_to_default
from .models import PhaseResolution, WorkItem
from .phases import PhaseResolver, format_phases_comment, phase_branch_name, task_branch_name
from .process_lock import ProcessLock
from .store import WorkflowStore
from .tracker import ProjectTracker
from .workflow import WorkflowService, design_pr_buttons, pr_review_buttons, review_buttons


@dataclass
class AgentSummary:
    agent: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class BatchOptions:
    agents: Sequence[str]
    item_id: Optional[str] = None
    limit: int = DEFAULT_BATCH_LIMIT
    dry_run: bool = False
    skip_pull: bool = False
    reset: bool = False
    global_limit: bool = False
    stale_timeout_minutes: Optional[int] = None
    triggered_by: Optional[str] = None


class BatchRunner:
    """Drive agents over the items each one is responsible for.

    Args:
        project_dir: Working copy the agents operate on.
        tracker: Remote tracker.
        store: Local workflow store.
        agent_runner: Executes one agent on one item.
        settings: Effective workflow settings.
        channel: Optional chat channel for review notifications.
        lock: Directory lock; defaults to one for ``project_dir``.
        console: Rich console for the summary table.
    """

    def __init__(
        self,
        project_dir: Path,
        tracker: ProjectTracker,
        store: WorkflowStore,
        agent_runner: AgentRunner,
        settings: WorkflowSettings,
        *,
        channel: Optional[ChatChannel] = None,
        service: Optional[WorkflowService] = None,
        lock: Optional[ProcessLock] = None,
        console: Optional[Console] = None,
    ) -> None:
        self.project_dir = project_dir
        self.tracker = tracker
        self.store = store
        self.agent_runner = agent_runner
        self.settings = settings
        self.channel = channel
        self.service = service or WorkflowService(tracker, store, channel=channel, default_branch=settings.default_branch)
        self.lock = lock or ProcessLock(project_dir)
        self.console = console or Console(stderr=True)

    # -- run ----------------------------------------------------------------

    def run(self, options: BatchOptions) -> int:
        """Run the selected agents. Returns the process exit code."""
        stale_timeout = (
            options.stale_timeout_minutes
            if options.stale_timeout_minutes is not None
            else self.settings.stale_timeout_minutes
        )
        try:
            with self.lock.hold(stale_timeout, options.agents):
                return self._run_locked(options)
        except LockHeldError as exc:
            logger.error("{}", exc)
            return 1

    def _run_locked(self, options: BatchOptions) -> int:
        is_repo = _git_is_repo(self.project_dir)
        if is_repo:
            _ensure_git_exclude(self.project_dir)
            if options.reset:
                ok, message = git_reset_to_default(self.project_dir, self.settings.default_branch)
                if not ok:
                    logger.error("{}", message)
                    return 1
                logger.info("{}", message)
            elif not options.skip_pull:
                ok, message = git_pull(self.project_dir)
                if not ok:
                    logger.error("{}", message)
                    return 1
                logger.info("git pull: {}", message)

        summaries: list[AgentSummary] = []
        try:
            for agent in options.agents:
                try:
                    summary = self.run_agent(agent, options)
                except (TrackerError, WorkflowError, OSError) as exc:
                    logger.error("Agent {} failed: {}", agent, exc)
                    summary = AgentSummary(agent=agent, failed=1, errors=[str(exc)])
                summaries.append(summary)
                if options.global_limit and summary.processed > 0:
                    logger.info("Global limit reached after {} processed items", agent)
                    break
        finally:
            if is_repo and not options.dry_run and _git_has_changes(self.project_dir):
                git_cleanup(self.project_dir, self.settings.default_branch)

        self._print_summary(summaries, options.dry_run)
        return 0

    def _print_summary(self, summaries: list[AgentSummary], dry_run: bool) -> None:
        table = Table(title="Agent run" + (" (dry run)" if dry_run else ""))
        table.add_column("Agent")
        table.add_column("Processed", justify="right")
        table.add_column("Succeeded", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Skipped", justify="right")
        for summary in summaries:
            table.add_row(
                summary.agent,
                str(summary.processed),
                str(summary.succeeded),
                f"[red]{summary.failed}[/red]" if summary.failed else "0",
                str(summary.skipped),
            )
        self.console.print(table)

    # -- agent selection ----------------------------------------------------

    @staticmethod
    def _matches(item: WorkItem, item_id: Optional[str]) -> bool:
        if item_id is None:
            return True
        return item_id in (item.id, str(item.issue_number), f"#{item.issue_number}")

    def run_agent(self, agent: str, options: BatchOptions) -> AgentSummary:
        summary = AgentSummary(agent=agent)
        if agent == AGENT_AUTO_ADVANCE:
            self._run_auto_advance(summary, options)
            return summary

        agent_status = AGENT_STATUS.get(agent)
        if agent_status is None:
            raise WorkflowError(f"Unknown agent {agent!r}")

        for item in self.tracker.list_items(agent_status):
            if not self._matches(item, options.item_id):
                continue
            mode = engine.eligible_mode(item, agent_status)
            if mode is None:
                logger.debug("Skipping #{} ({}: {})", item.issue_number, item.status, item.review_status)
                summary.skipped += 1
                continue
            if summary.processed >= options.limit:
                logger.info("{} limit of {} reached", agent, options.limit)
                break
            summary.processed += 1
            try:
                if self.process_item(agent, item, mode, options):
                    summary.succeeded += 1
                else:
                    summary.failed += 1
            except (TrackerError, WorkflowError) as exc:
                logger.error("{} failed on #{}: {}", agent, item.issue_number, exc)
                summary.failed += 1
                summary.errors.append(f"#{item.issue_number}: {exc}")
            except Exception as exc:
                logger.exception("{} crashed on #{}", agent, item.issue_number)
                summary.failed += 1
                summary.errors.append(f"#{item.issue_number}: {exc}")
        return summary

    def _run_auto_advance(self, summary: AgentSummary, options: BatchOptions) -> None:
        candidates = engine.auto_advance_candidates(self.tracker.list_items())
        for item in candidates:
            if not self._matches(item, options.item_id):
                continue
            if summary.processed >= options.limit:
                break
            summary.processed += 1
            if options.dry_run:
                logger.info(
                    "[dry-run] Would advance #{} from {} to {}",
                    item.issue_number,
                    item.status,
                    engine.next_status(item.status, engine.EVENT_APPROVED),
                )
                summary.succeeded += 1
                continue
            result = self.service.auto_advance(item, actor=options.triggered_by)
            if result.success:
                summary.succeeded += 1
            else:
                summary.failed += 1

    # -- per item -----------------------------------------------------------

    def process_item(self, agent: str, item: WorkItem, mode: str, options: BatchOptions) -> bool:
        """Run one agent on one item and apply its output. Returns success."""
        resolution: Optional[PhaseResolution] = None
        if agent == AGENT_IMPLEMENT:
            resolver = PhaseResolver(
                self.tracker,
                self.store,
                dry_run=options.dry_run,
                default_branch=self.settings.default_branch,
            )
            resolution = resolver.resolve(item, mode)

        record = self.store.get(item.issue_number)
        prompt = build_prompt(
            agent,
            item,
            mode,
            resolution=resolution,
            designs=record.designs if record else None,
        )
        if options.dry_run:
            phase = f" phase {resolution.current}/{resolution.total}" if resolution and resolution.multi_phase else ""
            logger.info("[dry-run] Would run {} on #{} ({}){}", agent, item.issue_number, mode, phase)
            return True

        self.store.upsert_item(item)
        output = self.agent_runner.run(AgentRequest(agent=agent, item=item, mode=mode, prompt=prompt, resolution=resolution))
        if not output.success:
            logger.error("{} failed on #{}: {}", agent, item.issue_number, output.error)
            self.store.append_history(item.issue_number, agent, f"Agent failed: {output.error}", options.triggered_by)
            return False

        if output.needs_clarification:
            self._ask_for_clarification(item, output)
        elif agent in DESIGN_KINDS:
            self._apply_design(agent, item, output)
        elif agent == AGENT_IMPLEMENT:
            self._apply_implementation(item, output, resolution, mode)
        elif agent == AGENT_PR_REVIEW:
            self._apply_pr_review(item, output)
        self.store.append_history(
            item.issue_number,
            agent,
            output.summary or f"{agent} completed ({mode})",
            options.triggered_by,
        )
        return True

    def _notify(self, text: str, buttons: Optional[list[list[InlineButton]]] = None) -> None:
        if self.channel is not None:
            self.channel.send_message(text, buttons)

    def _ask_for_clarification(self, item: WorkItem, output: AgentOutput) -> None:
        question = output.question or output.summary or "The agent needs more information."
        self.tracker.add_comment(item.issue_number, f"❓ **Clarification needed**\n\n{question}")
        self.tracker.update_review_status(item.id, REVIEW_WAITING_FOR_CLARIFICATION)
        self._notify(
            f"❓ #{item.issue_number} {item.title} needs clarification:\n{question}",
            [[InlineButton("✅ Clarified", f"clarified:{item.issue_number}")]],
        )

    def _apply_design(self, agent: str, item: WorkItem, output: AgentOutput) -> None:
        self.store.save_design(item.issue_number, DESIGN_KINDS[agent], output.content or output.summary)
        if agent == AGENT_TECH_DESIGN and len(output.phases) >= 2:
            self.store.save_phases(item.issue_number, output.phases)
            self.tracker.add_comment(item.issue_number, format_phases_comment(output.phases))
        self.tracker.update_review_status(item.id, REVIEW_WAITING_FOR_REVIEW)
        assert item.status is not None
        design_type = next((t for t, s in DESIGN_TYPE_STATUS.items() if s == item.status), None)
        if output.pr_number is not None and design_type is not None:
            self.store.set_open_pr(item.issue_number, output.pr_number)
            self._notify(
                f"📄 {item.status} PR #{output.pr_number} ready for #{item.issue_number} {item.title}\n"
                f"{output.summary}".strip(),
                design_pr_buttons(item.issue_number, output.pr_number, design_type),
            )
            return
        self._notify(
            f"📄 {item.status} ready for #{item.issue_number} {item.title}\n{output.summary}".strip(),
            review_buttons(item.issue_number, item.status),
        )

    def _apply_implementation(
        self,
        item: WorkItem,
        output: AgentOutput,
        resolution: Optional[PhaseResolution],
        mode: str,
    ) -> None:
        multi = resolution is not None and resolution.multi_phase
        pr_number = output.pr_number
        if pr_number is None and mode == engine.MODE_FEEDBACK:
            record = self.store.get(item.issue_number)
            pr_number = record.open_pr if record else None
        if pr_number is None:
            if multi:
                assert resolution is not None and resolution.current is not None
                base = resolution.task_branch or task_branch_name(item.issue_number)
                head = output.branch or phase_branch_name(item.issue_number, resolution.current)
                title = f"{item.title} (#{item.issue_number}) phase {resolution.current}/{resolution.total}"
            else:
                base = self.settings.default_branch
                head = output.branch or task_branch_name(item.issue_number)
                title = f"{item.title} (#{item.issue_number})"
            if not self.tracker.branch_exists(head):
                self.tracker.create_branch(head, base)
            pr_number = self.tracker.create_pull_request(head, base, title, output.summary).number

        self.store.set_open_pr(item.issue_number, pr_number)
        self.tracker.update_status(item.id, STATUS_PR_REVIEW)
        self.tracker.clear_review_status(item.id)
        self.store.sync_status(item.issue_number, STATUS_PR_REVIEW)
        logger.info("#{} implementation ready in PR #{}", item.issue_number, pr_number)

    def _apply_pr_review(self, item: WorkItem, output: AgentOutput) -> None:
        record = self.store.get(item.issue_number)
        pr_number = output.pr_number or (record.open_pr if record else None)
        if pr_number is None:
            raise WorkflowError(f"No open PR recorded for #{item.issue_number}")
        self.tracker.add_comment(item.issue_number, f"🔍 **Review of PR #{pr_number}**\n\n{output.content or output.summary}")
        self.tracker.update_review_status(item.id, REVIEW_WAITING_FOR_REVIEW)
        self._notify(
            f"🔍 PR #{pr_number} for #{item.issue_number} {item.title} reviewed\n{output.summary}".strip(),
            pr_review_buttons(item.issue_number, pr_number),
        )
