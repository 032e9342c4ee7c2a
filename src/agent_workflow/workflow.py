"""Operator-facing workflow actions.

Every method here re-reads the item from the tracker, validates the
transition against the live status, and only then mutates. Expected
outcomes (stale notification, double click, expired undo) come back as an
:class:`~agent_workflow.models.ActionResult`; upstream failures propagate as
:class:`~agent_workflow.errors.TrackerError` for the caller to report.

Multi-step actions are made safe to repeat rather than rolled back: a retry
after a partial failure finds the steps already applied and finishes the rest.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

from loguru import logger

from . import status_engine as engine
from .channel import ChatChannel, InlineButton
from .claims import ApprovalClaimStore
from .constants import (
    DEFAULT_BRANCH,
    DESIGN_TYPE_LABELS,
    DESIGN_TYPE_STATUS,
    ITEM_TYPE_BUG,
    ITEM_TYPE_FEATURE,
    PHASE_COMMENT_MARKER,
    REVIEW_APPROVED,
    REVIEW_CLARIFICATION_RECEIVED,
    REVIEW_REJECTED,
    REVIEW_REQUEST_CHANGES,
    REVIEW_WAITING_FOR_REVIEW,
    ROUTING_DESTINATION_LABELS,
    STATUS_BACKLOG,
    STATUS_CODES,
    STATUS_DONE,
    STATUS_IMPLEMENTATION,
    STATUS_PR_REVIEW,
)
from .logging_utils import ActionLog
from .models import ActionResult, Outcome, PhaseState, WorkItem
from .phases import MODE_MERGE, SOURCE_STORE, PhaseResolver, format_phases_comment, parse_phase, phase_branch_name
from .store import ApprovalRequest, WorkflowStore
from .tracker import ProjectTracker, require_item
from .undo import UNDO_DESIGN_CHANGES, UNDO_DESIGN_REVIEW, UndoLedger, UndoToken
from .utils import truncate

REVIEW_ACTIONS = {
    "approve": (engine.EVENT_APPROVED, REVIEW_APPROVED),
    "changes": (engine.EVENT_CHANGES, REVIEW_REQUEST_CHANGES),
    "reject": (engine.EVENT_REJECTED, REVIEW_REJECTED),
}


class WorkflowService:
    """Apply operator decisions to tracked items.

    Args:
        tracker: Remote tracker (source of truth for status).
        store: Local workflow store.
        resolver: Phase resolver sharing the same tracker and store.
        undo: Undo ledger minting and checking undo tokens.
        channel: Optional chat channel for follow-up notifications.
        action_log: Optional per-item JSONL action log.
        default_branch: Target branch of final multi-phase PRs.
    """

    def __init__(
        self,
        tracker: ProjectTracker,
        store: WorkflowStore,
        *,
        resolver: Optional[PhaseResolver] = None,
        undo: Optional[UndoLedger] = None,
        channel: Optional[ChatChannel] = None,
        action_log: Optional[ActionLog] = None,
        default_branch: str = DEFAULT_BRANCH,
    ) -> None:
        self.tracker = tracker
        self.store = store
        self.resolver = resolver or PhaseResolver(tracker, store, default_branch=default_branch)
        self.undo = undo or UndoLedger()
        self.claims = ApprovalClaimStore(store)
        self.channel = channel
        self.action_log = action_log
        self.default_branch = default_branch

    # -- helpers ------------------------------------------------------------

    def _record(self, issue_number: int, action: str, description: str, actor: Optional[str] = None) -> None:
        logger.info("#{} {}: {}", issue_number, action, description)
        self.store.append_history(issue_number, action, description, actor)
        if self.action_log is not None:
            self.action_log.record(issue_number, action, actor=actor, description=description)

    def _set_status(self, item: WorkItem, status: str, review_status: Optional[str] = None) -> None:
        self.tracker.update_status(item.id, status)
        self.tracker.update_review_status(item.id, review_status)
        item.status = status
        item.review_status = review_status
        self.store.sync_status(item.issue_number, status)

    def _notify(self, text: str, buttons: Optional[list[list[InlineButton]]] = None) -> None:
        if self.channel is not None:
            self.channel.send_message(text, buttons)

    @staticmethod
    def _rejected(item: WorkItem, check: engine.TransitionCheck) -> ActionResult:
        log = logger.warning if check.outcome != Outcome.INVALID else logger.error
        log("Rejected action on #{}: {}", item.issue_number, check.reason)
        return ActionResult.fail(
            check.outcome,
            check.reason,
            issue_number=item.issue_number,
            previous_status=item.status,
            review_status=item.review_status,
        )

    # -- requests -----------------------------------------------------------

    def submit_request(
        self,
        title: str,
        item_type: str = ITEM_TYPE_FEATURE,
        description: str = "",
        actor: Optional[str] = None,
    ) -> ActionResult:
        """Store a new request and ask the operator to approve or delete it."""
        title = title.strip()
        if not title:
            return ActionResult.fail(Outcome.INVALID, "A request needs a title")
        if item_type not in (ITEM_TYPE_FEATURE, ITEM_TYPE_BUG):
            return ActionResult.fail(Outcome.INVALID, f"Unknown item type {item_type!r}")

        request = self.store.add_request(
            ApprovalRequest(id=uuid.uuid4().hex[:12], title=title, item_type=item_type, description=description)
        )
        self.claims.issue(request.id)
        logger.info("Request {} ({}) submitted by {}: {}", request.id, item_type, actor or "unknown", title)

        label = "Bug report" if item_type == ITEM_TYPE_BUG else "Feature request"
        text = f"🆕 {label}: {title}"
        if description:
            text += f"\n\n{truncate(description, 500)}"
        self._notify(text, request_buttons(request.id, item_type))
        return ActionResult.ok(f"Request {request.id} submitted", extra={"request_id": request.id})

    def _link_request(self, request_id: str, issue_number: int) -> None:
        with self.store.transaction() as tx:
            stored = tx.requests.get(request_id)
            if stored is not None:
                stored.issue_number = issue_number
                stored.issue_url = f"issue #{issue_number}"
                tx.mark_dirty()

    def _materialise_request(self, request: ApprovalRequest) -> WorkItem:
        if request.issue_number is not None:
            item = require_item(self.tracker, request.issue_number)
            logger.info("Request {} already linked to #{}; finishing its approval", request.id, item.issue_number)
            posted = any(c.body == request.description for c in self.tracker.get_comments(item.issue_number))
        else:
            item = self.tracker.create_item(request.title, request.item_type)
            # Linked before anything else can fail, so a retry never creates a second item.
            self._link_request(request.id, item.issue_number)
            posted = False
        if request.description and not posted:
            self.tracker.add_comment(item.issue_number, request.description)
        return item

    def approve_request(
        self,
        request_id: str,
        actor: Optional[str] = None,
        *,
        to_backlog: bool = False,
        item_type: Optional[str] = None,
    ) -> ActionResult:
        """Turn a pending request into a tracked item, exactly once.

        With ``to_backlog`` the item is parked in Backlog without asking the
        operator where to route it. ``item_type`` rejects a request of the
        other kind.
        """
        request = self.store.get_request(request_id)
        if request is None:
            return ActionResult.fail(Outcome.NOT_FOUND, f"Request {request_id} not found")
        if item_type is not None and request.item_type != item_type:
            return ActionResult.fail(
                Outcome.INVALID,
                f"Request {request_id} is a {request.item_type} request, not a {item_type}",
            )

        token = self.claims.claim(request_id)
        if token is None:
            request = self.store.get_request(request_id)
            if request is not None and request.issue_number is not None:
                logger.warning("Request {} already approved as #{}", request_id, request.issue_number)
                return ActionResult.fail(
                    Outcome.ALREADY_DONE,
                    f"Already approved: issue #{request.issue_number}",
                    issue_number=request.issue_number,
                )
            logger.warning("Approval token for request {} is already claimed", request_id)
            return ActionResult.fail(Outcome.CONTENDED, "Approval already in progress")

        request = self.store.get_request(request_id) or request
        try:
            item = self._materialise_request(request)
            self.store.upsert_item(item)
        except Exception:
            self.claims.restore(request_id, token)
            raise

        where = "Backlog" if to_backlog else "routing"
        self._record(item.issue_number, "approve_request", f"Created from request {request_id} ({where})", actor)
        if not to_backlog:
            self._notify(
                f"📋 Where should #{item.issue_number} {item.title} start?",
                routing_buttons(item.issue_number, item.item_type),
            )
        return ActionResult.ok(
            f"Created issue #{item.issue_number}" + (" in Backlog" if to_backlog else ""),
            issue_number=item.issue_number,
            advanced_to=STATUS_BACKLOG,
        )

    def delete_request(
        self,
        request_id: str,
        actor: Optional[str] = None,
        *,
        item_type: Optional[str] = None,
    ) -> ActionResult:
        """Remove a request that was never turned into a tracked item."""
        with self.store.transaction() as tx:
            request = tx.requests.get(request_id)
            if request is None:
                result = ActionResult.fail(Outcome.ALREADY_DONE, f"Request {request_id} already deleted")
            elif item_type is not None and request.item_type != item_type:
                result = ActionResult.fail(
                    Outcome.INVALID,
                    f"Request {request_id} is a {request.item_type} request, not a {item_type}",
                )
            elif request.issue_number is not None:
                result = ActionResult.fail(
                    Outcome.INVALID,
                    f"Cannot delete: request {request_id} is already issue #{request.issue_number}",
                    issue_number=request.issue_number,
                )
            elif not request.approval_token:
                result = ActionResult.fail(Outcome.CONTENDED, f"Request {request_id} is being approved")
            else:
                del tx.requests[request_id]
                tx.mark_dirty()
                result = ActionResult.ok(f"Request {request_id} ({request.title}) deleted")

        if result.outcome == Outcome.SUCCESS:
            logger.info("Request {} deleted by {}", request_id, actor or "unknown")
        else:
            logger.warning("Delete of request {} refused: {}", request_id, result.message)
        return result

    def route(self, issue_number: int, destination: str, actor: Optional[str] = None) -> ActionResult:
        """Move a Backlog item to the chosen starting phase."""
        item = require_item(self.tracker, issue_number)
        target = engine.routing_map(item.item_type).get(destination)
        if target is None:
            return ActionResult.fail(
                Outcome.INVALID,
                f"Unknown destination {destination!r} for {item.item_type} #{issue_number}",
                issue_number=issue_number,
            )
        check = engine.check(item, engine.EVENT_ROUTED)
        if not check.allowed:
            return self._rejected(item, check)

        previous = item.status
        if target != STATUS_BACKLOG:
            self._set_status(item, target)
        self._record(issue_number, "route", f"Routed to {target}", actor)
        return ActionResult.ok(
            f"Issue #{issue_number} routed to {target}",
            issue_number=issue_number,
            previous_status=previous,
            advanced_to=target,
        )

    # -- design review ------------------------------------------------------

    def review_design(
        self,
        issue_number: int,
        action: str,
        captured_status: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        """Apply approve / changes / reject to an item in a design phase."""
        if action not in REVIEW_ACTIONS:
            return ActionResult.fail(Outcome.INVALID, f"Unknown review action {action!r}", issue_number=issue_number)
        event, review_status = REVIEW_ACTIONS[action]

        item = require_item(self.tracker, issue_number)
        check = engine.check(item, event, captured_status)
        if not check.allowed:
            return self._rejected(item, check)

        previous = item.status
        if event == engine.EVENT_APPROVED:
            assert check.next_status is not None
            self.tracker.update_review_status(item.id, review_status)
            self._set_status(item, check.next_status)
            self._record(issue_number, "approve", f"{previous} approved; advanced to {check.next_status}", actor)
            return ActionResult.ok(
                f"Approved. Moved to {check.next_status}",
                issue_number=issue_number,
                previous_status=previous,
                advanced_to=check.next_status,
            )

        self.tracker.update_review_status(item.id, review_status)
        item.review_status = review_status
        token = self.undo.design_review_token(issue_number, action, previous)
        self._record(issue_number, action, f"{previous} marked {review_status}", actor)
        return ActionResult.ok(
            f"{review_status} recorded for {previous}",
            issue_number=issue_number,
            previous_status=previous,
            review_status=review_status,
            undo_callback=token.encode(),
        )

    def mark_clarified(self, issue_number: int, actor: Optional[str] = None) -> ActionResult:
        item = require_item(self.tracker, issue_number)
        check = engine.check(item, engine.EVENT_CLARIFIED)
        if not check.allowed:
            return self._rejected(item, check)
        self.tracker.update_review_status(item.id, REVIEW_CLARIFICATION_RECEIVED)
        self._record(issue_number, "clarified", "Clarification received", actor)
        return ActionResult.ok(
            "Clarification received; the agent will continue on its next run",
            issue_number=issue_number,
            previous_status=item.status,
            review_status=REVIEW_CLARIFICATION_RECEIVED,
        )

    def auto_advance(self, item: WorkItem, actor: Optional[str] = None) -> ActionResult:
        """Advance an item whose review status is Approved."""
        check = engine.check(item, engine.EVENT_APPROVED, item.status)
        if not check.allowed or check.next_status is None:
            return self._rejected(item, check)
        previous = item.status
        self._set_status(item, check.next_status)
        self._record(item.issue_number, "auto_advance", f"{previous} -> {check.next_status}", actor)
        return ActionResult.ok(
            f"Advanced to {check.next_status}",
            issue_number=item.issue_number,
            previous_status=previous,
            advanced_to=check.next_status,
        )

    # -- design pull requests -----------------------------------------------

    def approve_design_pr(
        self,
        issue_number: int,
        pr_number: int,
        design_type: str,
        actor: Optional[str] = None,
    ) -> ActionResult:
        """Merge a design-document PR and advance the item past that design phase.

        Approving a technical design that lists two or more phases also saves
        the phases and posts the tracking comment, once.
        """
        design_status = DESIGN_TYPE_STATUS.get(design_type)
        if design_status is None:
            return ActionResult.fail(Outcome.INVALID, f"Unknown design type {design_type!r}", issue_number=issue_number)

        item = require_item(self.tracker, issue_number)
        pr = self.tracker.get_pr(pr_number)
        if pr is None:
            return ActionResult.fail(Outcome.NOT_FOUND, f"PR #{pr_number} not found", issue_number=issue_number)
        if pr.merged and item.status != design_status:
            logger.warning("Design PR #{} for #{} was already merged", pr_number, issue_number)
            return ActionResult.fail(
                Outcome.ALREADY_DONE,
                f"Design PR #{pr_number} already merged",
                issue_number=issue_number,
                previous_status=item.status,
            )
        check = engine.check(item, engine.EVENT_APPROVED, design_status)
        if not check.allowed:
            return self._rejected(item, check)
        assert check.next_status is not None

        label = DESIGN_TYPE_LABELS[design_type]
        previous = item.status
        merge_sha = self.tracker.merge_pull_request(pr_number)
        self._set_status(item, check.next_status)
        self.store.set_open_pr(issue_number, None)
        self._delete_pr_branch(pr_number, keep=None)

        phase_count = 0
        if design_type == "tech":
            phases, source = self.resolver.load_phases(issue_number)
            if len(phases) >= 2:
                phase_count = len(phases)
                if source != SOURCE_STORE:
                    self.store.save_phases(issue_number, phases)
                comments = self.tracker.get_comments(issue_number)
                if not any(PHASE_COMMENT_MARKER in c.body for c in comments):
                    self.tracker.add_comment(issue_number, format_phases_comment(phases))

        self._record(
            issue_number,
            "design_approve",
            f"{label} PR #{pr_number} merged; advanced to {check.next_status}",
            actor,
        )
        message = f"{label} PR #{pr_number} merged. Moved to {check.next_status}"
        if phase_count:
            message += f" ({phase_count} phases)"
        return ActionResult.ok(
            message,
            issue_number=issue_number,
            previous_status=previous,
            advanced_to=check.next_status,
            extra={"merge_sha": merge_sha, "phases": phase_count},
        )

    def request_design_pr_changes(
        self,
        issue_number: int,
        pr_number: int,
        design_type: str,
        actor: Optional[str] = None,
    ) -> ActionResult:
        """Send a design-document PR back to its agent for revision."""
        design_status = DESIGN_TYPE_STATUS.get(design_type)
        if design_status is None:
            return ActionResult.fail(Outcome.INVALID, f"Unknown design type {design_type!r}", issue_number=issue_number)

        item = require_item(self.tracker, issue_number)
        check = engine.check(item, engine.EVENT_CHANGES, design_status)
        if not check.allowed:
            return self._rejected(item, check)
        if item.review_status == REVIEW_REQUEST_CHANGES:
            return ActionResult.fail(
                Outcome.ALREADY_DONE,
                f"Changes already requested on design PR #{pr_number}",
                issue_number=issue_number,
                previous_status=item.status,
                review_status=item.review_status,
            )

        self.tracker.update_review_status(item.id, REVIEW_REQUEST_CHANGES)
        token = self.undo.design_changes_token(issue_number, pr_number, design_type)
        self._record(
            issue_number,
            "design_changes",
            f"Changes requested on {DESIGN_TYPE_LABELS[design_type]} PR #{pr_number}",
            actor,
        )
        return ActionResult.ok(
            f"Changes requested on design PR #{pr_number}; the agent revises it on its next run",
            issue_number=issue_number,
            previous_status=item.status,
            review_status=REVIEW_REQUEST_CHANGES,
            undo_callback=token.encode(),
        )

    # -- pull requests ------------------------------------------------------

    def request_changes(self, issue_number: int, pr_number: int, actor: Optional[str] = None) -> ActionResult:
        """Send an implementation PR back to the implementor."""
        item = require_item(self.tracker, issue_number)
        check = engine.check(item, engine.EVENT_CHANGES_REQUESTED)
        if not check.allowed:
            return self._rejected(item, check)
        previous = item.status
        self._set_status(item, STATUS_IMPLEMENTATION, REVIEW_REQUEST_CHANGES)
        token = self.undo.request_changes_token(issue_number, pr_number)
        self._record(issue_number, "request_changes", f"Changes requested on PR #{pr_number}", actor)
        return ActionResult.ok(
            f"Changes requested on PR #{pr_number}",
            issue_number=issue_number,
            previous_status=previous,
            advanced_to=STATUS_IMPLEMENTATION,
            review_status=REVIEW_REQUEST_CHANGES,
            undo_callback=token.encode(),
        )

    def _delete_pr_branch(self, pr_number: int, keep: Optional[str]) -> None:
        pr = self.tracker.get_pr(pr_number)
        if pr is None or pr.head in (keep, self.default_branch):
            return
        if self.tracker.delete_branch(pr.head):
            logger.info("Deleted branch {}", pr.head)

    def merge_pr(self, issue_number: int, pr_number: int, actor: Optional[str] = None) -> ActionResult:
        """Merge an implementation PR, advancing the phase for multi-phase items.

        The merge is recorded as pending before any follow-up write and marked
        complete after the last one. Clicking merge again on a pending merge
        finishes the remaining steps; the phase advances only if the live
        phase field still shows the merged phase.
        """
        item = require_item(self.tracker, issue_number)
        record = self.store.get(issue_number)
        pending: Optional[dict[str, Any]] = None
        if record and record.last_merged_pr and record.last_merged_pr.get("pr_number") == pr_number:
            if record.last_merged_pr.get("completed", True):
                logger.warning("PR #{} for #{} was already merged", pr_number, issue_number)
                return ActionResult.fail(
                    Outcome.ALREADY_DONE,
                    f"PR #{pr_number} already merged",
                    issue_number=issue_number,
                    previous_status=item.status,
                )
            pending = record.last_merged_pr
            logger.warning("Resuming interrupted merge of PR #{} for #{}", pr_number, issue_number)
        else:
            check = engine.check(item, engine.EVENT_MERGED)
            if not check.allowed:
                return self._rejected(item, check)

        resolution = self.resolver.resolve(item, MODE_MERGE)
        previous = item.status
        if pending is None:
            merge_sha = self.tracker.merge_pull_request(pr_number)
            merged_phase = resolution.current
            self.store.set_last_merged_pr(issue_number, pr_number, merge_sha, phase=merged_phase, completed=False)
        else:
            merge_sha = str(pending.get("merge_sha") or "")
            merged_phase = pending.get("phase") or resolution.current
        self.store.set_open_pr(issue_number, None)
        self._delete_pr_branch(pr_number, keep=resolution.task_branch)

        if not resolution.multi_phase:
            self._complete(item, actor)
            self._record(issue_number, "merge", f"PR #{pr_number} merged ({merge_sha[:7]})", actor)
            self.store.update_last_merged_pr(issue_number, completed=True)
            return ActionResult.ok(
                f"PR #{pr_number} merged. Issue #{issue_number} is Done",
                issue_number=issue_number,
                previous_status=previous,
                advanced_to=STATUS_DONE,
                buttons=revert_buttons(issue_number, pr_number, merge_sha),
                extra={"merge_sha": merge_sha},
            )

        assert merged_phase is not None and resolution.current is not None and resolution.total is not None
        current, total = int(merged_phase), resolution.total
        phase_value = f"{current}/{total}"
        if current < total:
            if resolution.current == current:
                state = self.resolver.advance(item, resolution)
            else:
                logger.info("Phase field of #{} already advanced to {}", issue_number, item.phase_field)
                state = PhaseState(resolution.current, total, resolution.phases)
            self._set_status(item, STATUS_IMPLEMENTATION)
            next_phase = state.descriptor()
            next_name = next_phase.name if next_phase else f"Phase {state.current}"
            self.tracker.add_comment(
                issue_number,
                f"✅ Phase {current}/{total} merged in PR #{pr_number}.\n\n"
                f"Starting phase {state.current}/{total}: {next_name}",
            )
            self._record(issue_number, "merge", f"Phase {current}/{total} merged (PR #{pr_number})", actor)
            self.store.update_last_merged_pr(issue_number, completed=True)
            return ActionResult.ok(
                f"Phase {current}/{total} merged. Next: phase {state.current}/{total} ({next_name})",
                issue_number=issue_number,
                previous_status=previous,
                advanced_to=STATUS_IMPLEMENTATION,
                phase_info={
                    "merged_phase": current,
                    "current": state.current,
                    "total": total,
                    "next_phase": next_phase.to_dict() if next_phase else None,
                },
                buttons=revert_buttons(issue_number, pr_number, merge_sha, phase_value),
                extra={"merge_sha": merge_sha},
            )

        final_pr = None
        if pending is not None and pending.get("final_pr"):
            final_pr = self.tracker.get_pr(int(pending["final_pr"]))
        if final_pr is None:
            task_branch = resolution.task_branch or self.store.get_task_branch(issue_number)
            if not task_branch:
                return ActionResult.fail(
                    Outcome.FAILED,
                    f"All phases merged but no task branch is recorded for #{issue_number}",
                    issue_number=issue_number,
                    previous_status=previous,
                )
            final_pr = self.tracker.create_pull_request(
                task_branch,
                self.default_branch,
                f"{item.title} (#{issue_number})",
                f"Closes #{issue_number}. Combines all {total} implementation phases.",
            )
            self.store.update_last_merged_pr(issue_number, final_pr=final_pr.number)
        self._set_status(item, STATUS_PR_REVIEW, REVIEW_WAITING_FOR_REVIEW)
        self._record(
            issue_number,
            "merge",
            f"Final phase {total}/{total} merged; opened PR #{final_pr.number} into {self.default_branch}",
            actor,
        )
        self._notify(
            f"🏁 All {total} phases of #{issue_number} are on {final_pr.head}.\n"
            f"Final PR #{final_pr.number} is ready to merge into {self.default_branch}.",
            [[InlineButton("✅ Merge final PR", f"merge_final:{issue_number}:{final_pr.number}")]],
        )
        self.store.update_last_merged_pr(issue_number, completed=True)
        return ActionResult.ok(
            f"Phase {total}/{total} merged. Final PR #{final_pr.number} opened",
            issue_number=issue_number,
            previous_status=previous,
            advanced_to=STATUS_PR_REVIEW,
            review_status=REVIEW_WAITING_FOR_REVIEW,
            phase_info={"merged_phase": total, "current": total, "total": total, "final_pr": final_pr.number},
            buttons=revert_buttons(issue_number, pr_number, merge_sha, phase_value),
            extra={"merge_sha": merge_sha},
        )

    def merge_final_pr(self, issue_number: int, pr_number: int, actor: Optional[str] = None) -> ActionResult:
        """Merge the task branch into the default branch and close out the item."""
        item = require_item(self.tracker, issue_number)
        if item.status == STATUS_DONE:
            logger.warning("Issue #{} already Done; ignoring final merge of PR #{}", issue_number, pr_number)
            return ActionResult.fail(Outcome.ALREADY_DONE, f"Issue #{issue_number} is already Done", issue_number=issue_number)

        resolution = self.resolver.resolve(item, MODE_MERGE)
        previous = item.status
        merge_sha = self.tracker.merge_pull_request(pr_number)
        self.store.set_last_merged_pr(issue_number, pr_number, merge_sha, phase=resolution.total)
        self._complete(item, actor)

        task_branch = resolution.task_branch or self.store.get_task_branch(issue_number)
        deleted: list[str] = []
        candidates = [task_branch] if task_branch else []
        candidates += [phase_branch_name(issue_number, n) for n in range(1, (resolution.total or 0) + 1)]
        for branch in candidates:
            if branch and self.tracker.delete_branch(branch):
                deleted.append(branch)
        self.store.set_task_branch(issue_number, None)

        total_text = f"all {resolution.total} phases" if resolution.total else "the feature branch"
        self.tracker.add_comment(
            issue_number,
            f"🎉 Merged {total_text} into {self.default_branch} in PR #{pr_number}.",
        )
        self._record(issue_number, "merge_final", f"PR #{pr_number} merged; deleted {len(deleted)} branches", actor)
        return ActionResult.ok(
            f"Final PR #{pr_number} merged. Issue #{issue_number} is Done",
            issue_number=issue_number,
            previous_status=previous,
            advanced_to=STATUS_DONE,
            extra={"merge_sha": merge_sha, "deleted_branches": deleted},
        )

    # -- reverts ------------------------------------------------------------

    def revert_merge(
        self,
        issue_number: int,
        pr_number: int,
        short_sha: Optional[str] = None,
        phase: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        """Open a PR reverting a merged implementation PR and reopen the item.

        The item goes back to Implementation with Request Changes and, when
        ``phase`` is given, the phase field is restored to the reverted phase.
        """
        if phase and parse_phase(phase) is None:
            return ActionResult.fail(Outcome.INVALID, f"Invalid phase {phase!r}", issue_number=issue_number)
        item = require_item(self.tracker, issue_number)
        record = self.store.get(issue_number)
        if record and record.revert_pr and record.revert_pr.get("reverts") == pr_number:
            revert_number = record.revert_pr.get("pr_number")
            logger.warning("PR #{} for #{} already has revert PR #{}", pr_number, issue_number, revert_number)
            return ActionResult.fail(
                Outcome.ALREADY_DONE,
                f"Revert PR #{revert_number} already exists",
                issue_number=issue_number,
                previous_status=item.status,
            )

        pr = self.tracker.get_pr(pr_number)
        if pr is None:
            return ActionResult.fail(Outcome.NOT_FOUND, f"PR #{pr_number} not found", issue_number=issue_number)
        if not pr.merged or not pr.merge_sha:
            return ActionResult.fail(
                Outcome.FAILED,
                f"Could not find the merge commit of PR #{pr_number}",
                issue_number=issue_number,
            )
        if short_sha and not pr.merge_sha.startswith(short_sha):
            logger.error("Merge sha of PR #{} is {}, expected prefix {}", pr_number, pr.merge_sha, short_sha)
            return ActionResult.fail(Outcome.INVALID, "Merge commit sha mismatch", issue_number=issue_number)

        revert = self.tracker.create_revert_pr(pr.merge_sha, pr_number, issue_number)
        self.store.set_revert_pr(issue_number, revert.number, pr_number)
        previous = item.status
        self._set_status(item, STATUS_IMPLEMENTATION, REVIEW_REQUEST_CHANGES)
        if phase:
            self.tracker.set_phase_field(item.id, phase)
            item.phase_field = phase
        self.store.set_source_status(issue_number, "in_progress")
        self._record(issue_number, "revert", f"Revert PR #{revert.number} opened for PR #{pr_number}", actor)
        status_text = f"Implementation (phase {phase})" if phase else "Implementation"
        return ActionResult.ok(
            f"Revert PR #{revert.number} opened. #{issue_number} is back in {status_text} with changes requested",
            issue_number=issue_number,
            previous_status=previous,
            advanced_to=STATUS_IMPLEMENTATION,
            review_status=REVIEW_REQUEST_CHANGES,
            buttons=[[InlineButton("✅ Merge revert PR", f"merge_rv:{issue_number}:{revert.number}")]],
            extra={"revert_pr": revert.number},
        )

    def merge_revert_pr(self, issue_number: int, revert_pr_number: int, actor: Optional[str] = None) -> ActionResult:
        pr = self.tracker.get_pr(revert_pr_number)
        if pr is None:
            return ActionResult.fail(Outcome.NOT_FOUND, f"Revert PR #{revert_pr_number} not found", issue_number=issue_number)
        if pr.merged:
            logger.warning("Revert PR #{} for #{} already merged", revert_pr_number, issue_number)
            return ActionResult.fail(
                Outcome.ALREADY_DONE,
                f"Revert PR #{revert_pr_number} already merged",
                issue_number=issue_number,
            )
        if pr.state == "closed":
            return ActionResult.fail(Outcome.INVALID, f"Revert PR #{revert_pr_number} is closed", issue_number=issue_number)

        merge_sha = self.tracker.merge_pull_request(revert_pr_number)
        record = self.store.get(issue_number)
        reverted = record.revert_pr.get("reverts") if record and record.revert_pr else None
        self.store.set_revert_pr(issue_number, revert_pr_number, reverted, merged=True)
        self._delete_pr_branch(revert_pr_number, keep=None)
        self._record(issue_number, "merge_revert", f"Revert PR #{revert_pr_number} merged", actor)
        return ActionResult.ok(
            f"Revert PR #{revert_pr_number} merged",
            issue_number=issue_number,
            extra={"merge_sha": merge_sha},
        )

    # -- completion and undo ------------------------------------------------

    def _complete(self, item: WorkItem, actor: Optional[str]) -> None:
        self.tracker.update_status(item.id, STATUS_DONE)
        self.tracker.clear_review_status(item.id)
        self.tracker.clear_phase_field(item.id)
        item.status = STATUS_DONE
        item.review_status = None
        item.phase_field = None
        self.store.sync_status(item.issue_number, STATUS_DONE)
        self.store.set_source_status(item.issue_number, "done")
        self._record(item.issue_number, "done", "Marked Done", actor)

    def mark_done(self, issue_number: int, actor: Optional[str] = None) -> ActionResult:
        item = require_item(self.tracker, issue_number)
        if item.status == STATUS_DONE and not item.phase_field:
            return ActionResult.fail(Outcome.ALREADY_DONE, f"Issue #{issue_number} is already Done", issue_number=issue_number)
        previous = item.status
        self._complete(item, actor)
        return ActionResult.ok(
            f"Issue #{issue_number} marked Done",
            issue_number=issue_number,
            previous_status=previous,
            advanced_to=STATUS_DONE,
        )

    def _expired(self, token: UndoToken) -> Optional[ActionResult]:
        if self.undo.is_valid(token):
            return None
        logger.warning("Undo for #{} expired", token.issue_number)
        return ActionResult.fail(Outcome.EXPIRED, "Undo window expired", issue_number=token.issue_number)

    def undo_request_changes(self, token: UndoToken, actor: Optional[str] = None) -> ActionResult:
        """Put a PR sent back for changes into review again, with its merge buttons."""
        expired = self._expired(token)
        if expired is not None:
            return expired

        item = require_item(self.tracker, token.issue_number)
        if item.status == STATUS_PR_REVIEW and not item.review_status:
            return ActionResult.fail(
                Outcome.ALREADY_DONE,
                f"Issue #{item.issue_number} is already back in PR Review",
                issue_number=item.issue_number,
                previous_status=item.status,
            )
        if item.status != STATUS_IMPLEMENTATION:
            return self._rejected(
                item,
                engine.TransitionCheck(
                    Outcome.NO_LONGER_VALID,
                    f"Issue #{item.issue_number} moved on to {item.status}; cannot undo",
                ),
            )

        previous = item.status
        self._set_status(item, STATUS_PR_REVIEW)
        self._record(item.issue_number, "undo_request_changes", f"Restored PR #{token.pr_number} to review", actor)
        assert token.pr_number is not None
        return ActionResult.ok(
            f"Undone. PR #{token.pr_number} is back in review",
            issue_number=item.issue_number,
            previous_status=previous,
            advanced_to=STATUS_PR_REVIEW,
            buttons=pr_review_buttons(item.issue_number, token.pr_number),
        )

    def undo_design_review(self, token: UndoToken, actor: Optional[str] = None) -> ActionResult:
        """Reverse a design-review "changes" or "reject" decision."""
        if token.kind != UNDO_DESIGN_REVIEW or token.previous_status is None:
            return ActionResult.fail(Outcome.INVALID, "Not a design review undo token", issue_number=token.issue_number)
        expired = self._expired(token)
        if expired is not None:
            return expired

        item = require_item(self.tracker, token.issue_number)
        if item.status == token.previous_status and not item.review_status:
            return ActionResult.fail(
                Outcome.ALREADY_DONE,
                f"Issue #{item.issue_number} review decision already undone",
                issue_number=item.issue_number,
                previous_status=item.status,
            )
        if not engine.is_design_status(item.status):
            return self._rejected(
                item,
                engine.TransitionCheck(
                    Outcome.NO_LONGER_VALID,
                    f"Issue #{item.issue_number} moved on to {item.status}; cannot undo",
                ),
            )

        previous = item.status
        self._set_status(item, token.previous_status)
        self._record(
            item.issue_number,
            "undo_design_review",
            f"Undid {token.action}; restored {token.previous_status}",
            actor,
        )
        return ActionResult.ok(
            f"Undone. Issue #{item.issue_number} is back in {token.previous_status}",
            issue_number=item.issue_number,
            previous_status=previous,
            advanced_to=token.previous_status,
            buttons=review_buttons(item.issue_number, token.previous_status),
        )

    def undo_design_pr_changes(self, token: UndoToken, actor: Optional[str] = None) -> ActionResult:
        """Withdraw "request changes" on a design PR and offer its buttons again."""
        if token.kind != UNDO_DESIGN_CHANGES or token.design_type not in DESIGN_TYPE_STATUS or token.pr_number is None:
            return ActionResult.fail(Outcome.INVALID, "Not a design PR undo token", issue_number=token.issue_number)
        expired = self._expired(token)
        if expired is not None:
            return expired

        item = require_item(self.tracker, token.issue_number)
        if not item.review_status:
            return ActionResult.fail(
                Outcome.ALREADY_DONE,
                f"Changes on design PR #{token.pr_number} already withdrawn",
                issue_number=item.issue_number,
                previous_status=item.status,
            )
        if item.status != DESIGN_TYPE_STATUS[token.design_type] or item.review_status != REVIEW_REQUEST_CHANGES:
            return self._rejected(
                item,
                engine.TransitionCheck(
                    Outcome.NO_LONGER_VALID,
                    f"Issue #{item.issue_number} moved on to {item.status} ({item.review_status}); cannot undo",
                ),
            )

        self.tracker.clear_review_status(item.id)
        self._record(
            item.issue_number,
            "undo_design_changes",
            f"Withdrew changes on {DESIGN_TYPE_LABELS[token.design_type]} PR #{token.pr_number}",
            actor,
        )
        return ActionResult.ok(
            f"Undone. Design PR #{token.pr_number} is waiting for review again",
            issue_number=item.issue_number,
            previous_status=item.status,
            buttons=design_pr_buttons(item.issue_number, token.pr_number, token.design_type),
        )


# -- inline keyboards ---------------------------------------------------------


def review_buttons(issue_number: int, status: str) -> list[list[InlineButton]]:
    """Approve / changes / reject buttons carrying the status they were sent for."""
    code = STATUS_CODES[status]
    return [
        [
            InlineButton("✅ Approve", f"approve:{issue_number}:{code}"),
            InlineButton("📝 Changes", f"changes:{issue_number}:{code}"),
            InlineButton("❌ Reject", f"reject:{issue_number}:{code}"),
        ]
    ]


def pr_review_buttons(issue_number: int, pr_number: int) -> list[list[InlineButton]]:
    return [
        [
            InlineButton("✅ Merge", f"merge:{issue_number}:{pr_number}"),
            InlineButton("📝 Request changes", f"reqchanges:{issue_number}:{pr_number}"),
        ]
    ]


def design_pr_buttons(issue_number: int, pr_number: int, design_type: str) -> list[list[InlineButton]]:
    return [
        [
            InlineButton("✅ Approve & merge", f"design_approve:{pr_number}:{issue_number}:{design_type}"),
            InlineButton("📝 Request changes", f"design_changes:{pr_number}:{issue_number}:{design_type}"),
        ]
    ]


def revert_buttons(
    issue_number: int,
    pr_number: int,
    merge_sha: str,
    phase: Optional[str] = None,
) -> Optional[list[list[InlineButton]]]:
    if not merge_sha:
        return None
    data = f"rv:{issue_number}:{pr_number}:{merge_sha[:7]}"
    if phase:
        data += f":{phase}"
    return [[InlineButton("↩️ Revert", data)]]


def routing_buttons(issue_number: int, item_type: str) -> list[list[InlineButton]]:
    """One button per starting phase the item type may be routed to, two per row."""
    buttons = [
        InlineButton(ROUTING_DESTINATION_LABELS.get(destination, destination), f"route:{issue_number}:{destination}")
        for destination in engine.routing_map(item_type)
    ]
    return [buttons[i:i + 2] for i in range(0, len(buttons), 2)]


def request_buttons(request_id: str, item_type: str) -> list[list[InlineButton]]:
    if item_type == ITEM_TYPE_BUG:
        approve, backlog, delete = "approve_bug", "approve_bug_bl", "delete_bug"
    else:
        approve, backlog, delete = "approve_request", "approve_request_bl", "delete_request"
    return [
        [
            InlineButton("✅ Approve", f"{approve}:{request_id}"),
            InlineButton("📋 Backlog", f"{backlog}:{request_id}"),
        ],
        [InlineButton("🗑 Delete", f"{delete}:{request_id}")],
    ]
