"""Tests for operator workflow actions."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agent_workflow.channel import LoggingChannel
from agent_workflow.constants import (
    ITEM_TYPE_BUG,
    PHASE_COMMENT_MARKER,
    REVIEW_REJECTED,
    REVIEW_REQUEST_CHANGES,
    REVIEW_WAITING_FOR_CLARIFICATION,
    REVIEW_WAITING_FOR_REVIEW,
    STATUS_BACKLOG,
    STATUS_DONE,
    STATUS_IMPLEMENTATION,
    STATUS_PR_REVIEW,
    STATUS_PRODUCT_DESIGN,
    STATUS_TECH_DESIGN,
    TRACKER_FILE,
)
from agent_workflow.errors import ItemNotFoundError, TrackerError
from agent_workflow.logging_utils import ActionLog, item_log_path
from agent_workflow.models import Outcome, PhaseDescriptor
from agent_workflow.phases import PhaseResolver
from agent_workflow.store import ApprovalRequest, WorkflowStore
from agent_workflow.tracker import FileTracker
from agent_workflow.undo import UNDO_DESIGN_CHANGES, UNDO_DESIGN_REVIEW, UNDO_REQUEST_CHANGES, UndoLedger, UndoToken
from agent_workflow.workflow import WorkflowService, design_pr_buttons, pr_review_buttons, review_buttons

T0 = 1_718_000_000_000


class Clock:
    def __init__(self, now_ms: int) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / ".agent_workflow"


@pytest.fixture
def tracker(state_dir: Path) -> FileTracker:
    return FileTracker(state_dir)


@pytest.fixture
def store(state_dir: Path) -> WorkflowStore:
    return WorkflowStore(state_dir)


@pytest.fixture
def clock() -> Clock:
    return Clock(T0)


@pytest.fixture
def channel() -> LoggingChannel:
    return LoggingChannel()


@pytest.fixture
def service(tracker: FileTracker, store: WorkflowStore, clock: Clock, channel: LoggingChannel, state_dir: Path):
    return WorkflowService(
        tracker,
        store,
        resolver=PhaseResolver(tracker, store),
        undo=UndoLedger(300, now_ms=clock),
        channel=channel,
        action_log=ActionLog(state_dir),
    )


def _item(tracker: FileTracker, status: str, review=None, phase_field=None):
    item = tracker.create_item("Dark mode")
    tracker.update_status(item.id, status)
    if review:
        tracker.update_review_status(item.id, review)
    if phase_field:
        tracker.set_phase_field(item.id, phase_field)
    return tracker.get_item(item.id)


def _phases(n: int) -> list[PhaseDescriptor]:
    return [PhaseDescriptor(order=i, name=f"Step {i}", description=f"Do step {i}") for i in range(1, n + 1)]


def _multi_phase_item(tracker: FileTracker, store: WorkflowStore, current: int, total: int):
    item = _item(tracker, STATUS_PR_REVIEW, REVIEW_WAITING_FOR_REVIEW, f"{current}/{total}")
    store.save_phases(item.issue_number, _phases(total))
    store.set_task_branch(item.issue_number, "feature/task-1")
    tracker.create_branch("feature/task-1", "main")
    head = f"feature/task-1-phase-{current}"
    tracker.create_branch(head, "feature/task-1")
    pr = tracker.create_pull_request(head, "feature/task-1", f"Phase {current}")
    return item, pr


class FlakyTracker(FileTracker):
    """FileTracker whose listed methods raise TrackerError on their next call."""

    def __init__(self, state_dir: Path) -> None:
        super().__init__(state_dir)
        self.fail_once: set[str] = set()

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail_once:
            self.fail_once.discard(name)
            raise TrackerError(f"{name} timed out")

    def set_phase_field(self, item_id, value) -> None:
        self._maybe_fail("set_phase_field")
        super().set_phase_field(item_id, value)

    def clear_review_status(self, item_id) -> None:
        self._maybe_fail("clear_review_status")
        super().clear_review_status(item_id)

    def add_comment(self, issue_number, body):
        self._maybe_fail("add_comment")
        return super().add_comment(issue_number, body)


@pytest.fixture
def flaky(state_dir: Path) -> FlakyTracker:
    return FlakyTracker(state_dir)


@pytest.fixture
def flaky_service(flaky: FlakyTracker, store: WorkflowStore, clock: Clock) -> WorkflowService:
    return WorkflowService(flaky, store, resolver=PhaseResolver(flaky, store), undo=UndoLedger(300, now_ms=clock))


class TestApproveRequest:
    def test_creates_item_exactly_once(self, service: WorkflowService, store: WorkflowStore, tracker: FileTracker) -> None:
        store.add_request(ApprovalRequest(id="req-1", title="Dark mode", description="Please add dark mode"))
        service.claims.issue("req-1")

        first = service.approve_request("req-1", actor="alice")
        assert first.outcome == Outcome.SUCCESS
        assert first.issue_number == 1
        assert store.get_request("req-1").issue_number == 1

        second = service.approve_request("req-1", actor="bob")
        assert second.outcome == Outcome.ALREADY_DONE
        assert "#1" in second.message
        assert len(tracker.list_items()) == 1

    def test_unknown_request(self, service: WorkflowService) -> None:
        assert service.approve_request("nope").outcome == Outcome.NOT_FOUND

    def test_create_failure_restores_token(self, store: WorkflowStore, tmp_path: Path) -> None:
        store.add_request(ApprovalRequest(id="req-1", title="Dark mode"))
        failing = MagicMock()
        failing.create_item.side_effect = TrackerError("tracker down")
        service = WorkflowService(failing, store, resolver=MagicMock())
        token = service.claims.issue("req-1")

        with pytest.raises(TrackerError):
            service.approve_request("req-1")
        assert store.get_request("req-1").approval_token == token

    def test_retry_after_comment_failure_reuses_item(
        self, flaky_service: WorkflowService, flaky: FlakyTracker, store: WorkflowStore
    ) -> None:
        store.add_request(ApprovalRequest(id="req-1", title="Dark mode", description="Please add dark mode"))
        token = flaky_service.claims.issue("req-1")
        flaky.fail_once.add("add_comment")

        with pytest.raises(TrackerError):
            flaky_service.approve_request("req-1")
        request = store.get_request("req-1")
        assert request.approval_token == token
        assert request.issue_number == 1

        retry = flaky_service.approve_request("req-1")

        assert retry.outcome == Outcome.SUCCESS
        assert retry.issue_number == 1
        assert len(flaky.list_items()) == 1
        assert [c.body for c in flaky.get_comments(1)] == ["Please add dark mode"]
        assert store.get(1) is not None

    def test_approve_sends_routing_buttons(self, service: WorkflowService, channel: LoggingChannel) -> None:
        request_id = service.submit_request("Crash on save", ITEM_TYPE_BUG).extra["request_id"]

        result = service.approve_request(request_id)

        last = channel.messages[max(channel.messages)]
        routes = [b.callback_data for row in last.buttons for b in row]
        assert f"route:{result.issue_number}:implementation" in routes
        assert all(data.startswith(f"route:{result.issue_number}:") for data in routes)

    def test_approve_to_backlog_stays_quiet(self, service: WorkflowService, channel: LoggingChannel, tracker: FileTracker) -> None:
        request_id = service.submit_request("Dark mode").extra["request_id"]
        sent = len(channel.messages)

        result = service.approve_request(request_id, to_backlog=True)

        assert result.outcome == Outcome.SUCCESS
        assert len(channel.messages) == sent
        assert tracker.list_items()[0].status == STATUS_BACKLOG

    def test_wrong_item_type(self, service: WorkflowService, tracker: FileTracker) -> None:
        request_id = service.submit_request("Dark mode").extra["request_id"]
        assert service.approve_request(request_id, item_type=ITEM_TYPE_BUG).outcome == Outcome.INVALID
        assert tracker.list_items() == []


class TestSubmitAndDelete:
    def test_submit_stores_request_with_token(self, service: WorkflowService, store: WorkflowStore, channel: LoggingChannel) -> None:
        result = service.submit_request("  Dark mode ", description="Please add dark mode")

        request = store.get_request(result.extra["request_id"])
        assert request.title == "Dark mode"
        assert request.approval_token
        last = channel.messages[max(channel.messages)]
        assert "Please add dark mode" in last.text
        assert [b.callback_data for b in last.buttons[0]] == [
            f"approve_request:{request.id}",
            f"approve_request_bl:{request.id}",
        ]

    @pytest.mark.parametrize("title, item_type", [("   ", "feature"), ("Dark mode", "epic")])
    def test_submit_rejects_bad_input(self, service: WorkflowService, title: str, item_type: str) -> None:
        assert service.submit_request(title, item_type).outcome == Outcome.INVALID

    def test_delete_pending_request(self, service: WorkflowService, store: WorkflowStore) -> None:
        request_id = service.submit_request("Dark mode").extra["request_id"]
        assert service.delete_request(request_id).outcome == Outcome.SUCCESS
        assert store.get_request(request_id) is None
        assert service.delete_request(request_id).outcome == Outcome.ALREADY_DONE

    def test_delete_after_approval_is_refused(self, service: WorkflowService, store: WorkflowStore) -> None:
        request_id = service.submit_request("Dark mode").extra["request_id"]
        service.approve_request(request_id)

        result = service.delete_request(request_id)

        assert result.outcome == Outcome.INVALID
        assert store.get_request(request_id).issue_number == 1

    def test_delete_during_approval(self, service: WorkflowService) -> None:
        request_id = service.submit_request("Dark mode").extra["request_id"]
        service.claims.claim(request_id)
        assert service.delete_request(request_id).outcome == Outcome.CONTENDED

    def test_delete_wrong_item_type(self, service: WorkflowService) -> None:
        request_id = service.submit_request("Dark mode").extra["request_id"]
        assert service.delete_request(request_id, item_type=ITEM_TYPE_BUG).outcome == Outcome.INVALID


class TestRoute:
    def test_route_backlog_item(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = tracker.create_item("Dark mode")
        result = service.route(item.issue_number, "tech-design")
        assert result.outcome == Outcome.SUCCESS
        assert tracker.get_item(item.id).status == STATUS_TECH_DESIGN

    def test_route_twice(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = tracker.create_item("Dark mode")
        service.route(item.issue_number, "tech-design")
        assert service.route(item.issue_number, "implementation").outcome == Outcome.ALREADY_DONE

    def test_unknown_destination(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = tracker.create_item("Dark mode")
        assert service.route(item.issue_number, "moon").outcome == Outcome.INVALID
        assert tracker.get_item(item.id).status == STATUS_BACKLOG

    def test_missing_item(self, service: WorkflowService) -> None:
        with pytest.raises(ItemNotFoundError):
            service.route(99, "tech-design")


class TestReviewDesign:
    def test_approve_advances_and_clears_review(self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore) -> None:
        item = _item(tracker, STATUS_TECH_DESIGN, REVIEW_WAITING_FOR_REVIEW)
        result = service.review_design(item.issue_number, "approve", captured_status=STATUS_TECH_DESIGN)

        assert result.outcome == Outcome.SUCCESS
        assert result.advanced_to == STATUS_IMPLEMENTATION
        live = tracker.get_item(item.id)
        assert live.status == STATUS_IMPLEMENTATION
        assert live.review_status is None
        assert store.get(item.issue_number).status == STATUS_IMPLEMENTATION

    def test_stale_click_changes_nothing(self, service: WorkflowService, tracker: FileTracker, state_dir: Path) -> None:
        item = _item(tracker, STATUS_IMPLEMENTATION)
        before = (state_dir / TRACKER_FILE).read_bytes()

        result = service.review_design(item.issue_number, "approve", captured_status=STATUS_TECH_DESIGN)

        assert result.outcome == Outcome.NO_LONGER_VALID
        assert (state_dir / TRACKER_FILE).read_bytes() == before

    def test_changes_then_undo(self, service: WorkflowService, tracker: FileTracker, clock: Clock) -> None:
        item = _item(tracker, STATUS_PRODUCT_DESIGN, REVIEW_WAITING_FOR_REVIEW)
        result = service.review_design(item.issue_number, "changes", captured_status=STATUS_PRODUCT_DESIGN)
        assert result.outcome == Outcome.SUCCESS
        assert tracker.get_item(item.id).review_status == REVIEW_REQUEST_CHANGES
        assert result.undo_callback == f"u_dr:1:changes:pdes:{T0}"

        token = UndoToken(UNDO_DESIGN_REVIEW, item.issue_number, T0, action="changes", previous_status=STATUS_PRODUCT_DESIGN)
        clock.now_ms = T0 + 60_000
        undone = service.undo_design_review(token)
        assert undone.outcome == Outcome.SUCCESS
        live = tracker.get_item(item.id)
        assert live.status == STATUS_PRODUCT_DESIGN
        assert live.review_status is None

        assert service.undo_design_review(token).outcome == Outcome.ALREADY_DONE

    def test_reject_undo_after_window(self, service: WorkflowService, tracker: FileTracker, clock: Clock) -> None:
        item = _item(tracker, STATUS_TECH_DESIGN, REVIEW_WAITING_FOR_REVIEW)
        service.review_design(item.issue_number, "reject")
        assert tracker.get_item(item.id).review_status == REVIEW_REJECTED

        token = UndoToken(UNDO_DESIGN_REVIEW, item.issue_number, T0, action="reject", previous_status=STATUS_TECH_DESIGN)
        clock.now_ms = T0 + 301_000
        assert service.undo_design_review(token).outcome == Outcome.EXPIRED
        assert tracker.get_item(item.id).review_status == REVIEW_REJECTED

    def test_review_buttons_fit_callback_limit(self) -> None:
        rows = review_buttons(123456, STATUS_TECH_DESIGN)
        assert [b.callback_data for b in rows[0]] == ["approve:123456:tdes", "changes:123456:tdes", "reject:123456:tdes"]


class TestClarified:
    def test_mark_clarified_once(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = _item(tracker, STATUS_TECH_DESIGN, REVIEW_WAITING_FOR_CLARIFICATION)
        assert service.mark_clarified(item.issue_number).outcome == Outcome.SUCCESS
        assert service.mark_clarified(item.issue_number).outcome == Outcome.ALREADY_DONE


class TestRequestChanges:
    def test_request_changes_and_undo(self, service: WorkflowService, tracker: FileTracker, clock: Clock) -> None:
        item = _item(tracker, STATUS_PR_REVIEW, REVIEW_WAITING_FOR_REVIEW)
        result = service.request_changes(item.issue_number, 7)
        assert result.outcome == Outcome.SUCCESS
        assert result.undo_callback == f"u_rc:1:7:{T0}"
        live = tracker.get_item(item.id)
        assert (live.status, live.review_status) == (STATUS_IMPLEMENTATION, REVIEW_REQUEST_CHANGES)

        token = UndoToken(UNDO_REQUEST_CHANGES, item.issue_number, T0, pr_number=7)
        clock.now_ms = T0 + (4 * 60 + 59) * 1000
        assert service.undo_request_changes(token).outcome == Outcome.SUCCESS
        live = tracker.get_item(item.id)
        assert (live.status, live.review_status) == (STATUS_PR_REVIEW, None)

        assert service.undo_request_changes(token).outcome == Outcome.ALREADY_DONE

    def test_undo_expired(self, service: WorkflowService, tracker: FileTracker, clock: Clock) -> None:
        item = _item(tracker, STATUS_PR_REVIEW)
        service.request_changes(item.issue_number, 7)
        token = UndoToken(UNDO_REQUEST_CHANGES, item.issue_number, T0, pr_number=7)
        clock.now_ms = T0 + (5 * 60 + 1) * 1000

        assert service.undo_request_changes(token).outcome == Outcome.EXPIRED
        assert tracker.get_item(item.id).status == STATUS_IMPLEMENTATION

    def test_double_request_changes(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = _item(tracker, STATUS_PR_REVIEW)
        service.request_changes(item.issue_number, 7)
        assert service.request_changes(item.issue_number, 7).outcome == Outcome.ALREADY_DONE

    def test_undo_offers_merge_buttons_again(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = _item(tracker, STATUS_PR_REVIEW)
        service.request_changes(item.issue_number, 7)
        token = UndoToken(UNDO_REQUEST_CHANGES, item.issue_number, T0, pr_number=7)

        result = service.undo_request_changes(token)

        assert result.buttons == pr_review_buttons(item.issue_number, 7)


class TestMerge:
    def test_single_phase_merge_completes(self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore) -> None:
        item = _item(tracker, STATUS_PR_REVIEW, REVIEW_WAITING_FOR_REVIEW)
        tracker.create_branch("feature/dark-mode", "main")
        pr = tracker.create_pull_request("feature/dark-mode", "main", "Dark mode")

        result = service.merge_pr(item.issue_number, pr.number)

        assert result.outcome == Outcome.SUCCESS
        assert result.advanced_to == STATUS_DONE
        live = tracker.get_item(item.id)
        assert (live.status, live.review_status, live.phase_field) == (STATUS_DONE, None, None)
        assert tracker.get_pr(pr.number).merged
        assert not tracker.branch_exists("feature/dark-mode")
        assert store.get(item.issue_number).source_status == "done"

    def test_intermediate_phase_advances(self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore) -> None:
        item, pr = _multi_phase_item(tracker, store, 2, 3)

        result = service.merge_pr(item.issue_number, pr.number)

        assert result.outcome == Outcome.SUCCESS
        assert result.phase_info["merged_phase"] == 2
        assert result.phase_info["current"] == 3
        assert result.phase_info["next_phase"]["name"] == "Step 3"
        live = tracker.get_item(item.id)
        assert live.phase_field == "3/3"
        assert live.status == STATUS_IMPLEMENTATION
        assert live.review_status is None
        assert not tracker.branch_exists("feature/task-1-phase-2")
        assert tracker.branch_exists("feature/task-1")
        assert store.get(item.issue_number).open_pr is None

    def test_second_merge_click_is_already_done(self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore) -> None:
        item, pr = _multi_phase_item(tracker, store, 2, 3)
        service.merge_pr(item.issue_number, pr.number)

        again = service.merge_pr(item.issue_number, pr.number)

        assert again.outcome == Outcome.ALREADY_DONE
        assert tracker.get_item(item.id).phase_field == "3/3"

    def test_final_phase_opens_final_pr(
        self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore, channel: LoggingChannel
    ) -> None:
        item, pr = _multi_phase_item(tracker, store, 3, 3)

        result = service.merge_pr(item.issue_number, pr.number)

        assert result.outcome == Outcome.SUCCESS
        assert result.advanced_to == STATUS_PR_REVIEW
        final_number = result.phase_info["final_pr"]
        final_pr = tracker.get_pr(final_number)
        assert (final_pr.head, final_pr.base) == ("feature/task-1", "main")
        live = tracker.get_item(item.id)
        assert (live.status, live.review_status, live.phase_field) == (STATUS_PR_REVIEW, REVIEW_WAITING_FOR_REVIEW, "3/3")
        sent = list(channel.messages.values())
        assert sent[-1].buttons[0][0].callback_data == f"merge_final:1:{final_number}"

        done = service.merge_final_pr(item.issue_number, final_number)

        assert done.outcome == Outcome.SUCCESS
        live = tracker.get_item(item.id)
        assert (live.status, live.phase_field) == (STATUS_DONE, None)
        assert not tracker.branch_exists("feature/task-1")
        assert store.get_task_branch(item.issue_number) is None
        assert service.merge_final_pr(item.issue_number, final_number).outcome == Outcome.ALREADY_DONE

    def test_merge_offers_revert(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = _item(tracker, STATUS_PR_REVIEW)
        tracker.create_branch("feature/dark-mode", "main")
        pr = tracker.create_pull_request("feature/dark-mode", "main", "Dark mode")

        result = service.merge_pr(item.issue_number, pr.number)

        sha = tracker.get_pr(pr.number).merge_sha
        assert result.buttons[0][0].callback_data == f"rv:{item.issue_number}:{pr.number}:{sha[:7]}"

    def test_retry_after_phase_field_failure(
        self, flaky_service: WorkflowService, flaky: FlakyTracker, store: WorkflowStore
    ) -> None:
        item, pr = _multi_phase_item(flaky, store, 2, 3)
        flaky.fail_once.add("set_phase_field")

        with pytest.raises(TrackerError):
            flaky_service.merge_pr(item.issue_number, pr.number)
        assert flaky.get_pr(pr.number).merged
        assert flaky.get_item(item.id).phase_field == "2/3"

        retry = flaky_service.merge_pr(item.issue_number, pr.number)

        assert retry.outcome == Outcome.SUCCESS
        assert retry.phase_info["current"] == 3
        live = flaky.get_item(item.id)
        assert (live.status, live.phase_field) == (STATUS_IMPLEMENTATION, "3/3")
        assert flaky_service.merge_pr(item.issue_number, pr.number).outcome == Outcome.ALREADY_DONE

    def test_retry_after_comment_failure_advances_once(
        self, flaky_service: WorkflowService, flaky: FlakyTracker, store: WorkflowStore
    ) -> None:
        item, pr = _multi_phase_item(flaky, store, 1, 3)
        flaky.fail_once.add("add_comment")

        with pytest.raises(TrackerError):
            flaky_service.merge_pr(item.issue_number, pr.number)
        assert flaky.get_item(item.id).phase_field == "2/3"

        retry = flaky_service.merge_pr(item.issue_number, pr.number)

        assert retry.outcome == Outcome.SUCCESS
        assert retry.phase_info["merged_phase"] == 1
        assert flaky.get_item(item.id).phase_field == "2/3"
        assert len(flaky.get_comments(item.issue_number)) == 1

    def test_single_phase_retry_finishes_completion(
        self, flaky_service: WorkflowService, flaky: FlakyTracker, store: WorkflowStore
    ) -> None:
        item = _item(flaky, STATUS_PR_REVIEW, REVIEW_WAITING_FOR_REVIEW)
        flaky.create_branch("feature/dark-mode", "main")
        pr = flaky.create_pull_request("feature/dark-mode", "main", "Dark mode")
        flaky.fail_once.add("clear_review_status")

        with pytest.raises(TrackerError):
            flaky_service.merge_pr(item.issue_number, pr.number)
        assert flaky.get_item(item.id).status == STATUS_DONE
        assert store.get(item.issue_number).last_merged_pr["completed"] is False

        retry = flaky_service.merge_pr(item.issue_number, pr.number)

        assert retry.outcome == Outcome.SUCCESS
        live = flaky.get_item(item.id)
        assert (live.status, live.review_status) == (STATUS_DONE, None)
        assert store.get(item.issue_number).source_status == "done"
        assert flaky_service.merge_pr(item.issue_number, pr.number).outcome == Outcome.ALREADY_DONE

    def test_merge_wrong_status(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = _item(tracker, STATUS_TECH_DESIGN)
        assert service.merge_pr(item.issue_number, 1).outcome == Outcome.NO_LONGER_VALID


class TestRevert:
    @pytest.fixture
    def merged(self, service: WorkflowService, tracker: FileTracker):
        item = _item(tracker, STATUS_PR_REVIEW)
        tracker.create_branch("feature/dark-mode", "main")
        pr = tracker.create_pull_request("feature/dark-mode", "main", "Dark mode")
        service.merge_pr(item.issue_number, pr.number)
        return item, tracker.get_pr(pr.number)

    def test_revert_reopens_item(self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore, merged) -> None:
        item, pr = merged

        result = service.revert_merge(item.issue_number, pr.number, short_sha=pr.merge_sha[:7])

        assert result.outcome == Outcome.SUCCESS
        revert = tracker.get_pr(result.extra["revert_pr"])
        assert (revert.base, revert.state) == ("main", "open")
        assert pr.merge_sha in revert.body
        live = tracker.get_item(item.id)
        assert (live.status, live.review_status) == (STATUS_IMPLEMENTATION, REVIEW_REQUEST_CHANGES)
        assert store.get(item.issue_number).source_status == "in_progress"
        assert result.buttons[0][0].callback_data == f"merge_rv:{item.issue_number}:{revert.number}"

        again = service.revert_merge(item.issue_number, pr.number, short_sha=pr.merge_sha[:7])
        assert again.outcome == Outcome.ALREADY_DONE

    def test_revert_restores_phase(self, service: WorkflowService, tracker: FileTracker, merged) -> None:
        item, pr = merged
        service.revert_merge(item.issue_number, pr.number, phase="2/3")
        assert tracker.get_item(item.id).phase_field == "2/3"

    def test_sha_mismatch(self, service: WorkflowService, tracker: FileTracker, merged) -> None:
        item, pr = merged
        wrong = "0000000" if not pr.merge_sha.startswith("0000000") else "1111111"
        assert service.revert_merge(item.issue_number, pr.number, short_sha=wrong).outcome == Outcome.INVALID
        assert tracker.get_item(item.id).status == STATUS_DONE

    def test_unmerged_pr(self, service: WorkflowService, tracker: FileTracker) -> None:
        item = _item(tracker, STATUS_PR_REVIEW)
        tracker.create_branch("feature/dark-mode", "main")
        pr = tracker.create_pull_request("feature/dark-mode", "main", "Dark mode")
        assert service.revert_merge(item.issue_number, pr.number).outcome == Outcome.FAILED
        assert service.revert_merge(item.issue_number, 99).outcome == Outcome.NOT_FOUND

    def test_merge_revert_pr(self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore, merged) -> None:
        item, pr = merged
        revert_number = service.revert_merge(item.issue_number, pr.number).extra["revert_pr"]

        result = service.merge_revert_pr(item.issue_number, revert_number)

        assert result.outcome == Outcome.SUCCESS
        assert tracker.get_pr(revert_number).merged
        assert store.get(item.issue_number).revert_pr == {"pr_number": revert_number, "reverts": pr.number, "merged": True}
        assert service.merge_revert_pr(item.issue_number, revert_number).outcome == Outcome.ALREADY_DONE


class TestDesignPullRequest:
    @pytest.fixture
    def design_pr(self, tracker: FileTracker):
        item = _item(tracker, STATUS_TECH_DESIGN, REVIEW_WAITING_FOR_REVIEW)
        tracker.create_branch("design/tech-1", "main")
        return item, tracker.create_pull_request("design/tech-1", "main", "Tech design")

    def test_approve_saves_phases_once(
        self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore, design_pr
    ) -> None:
        item, pr = design_pr
        store.save_phases(item.issue_number, _phases(3))

        result = service.approve_design_pr(item.issue_number, pr.number, "tech")

        assert result.outcome == Outcome.SUCCESS
        assert result.extra["phases"] == 3
        assert tracker.get_item(item.id).status == STATUS_IMPLEMENTATION
        markers = [c for c in tracker.get_comments(item.issue_number) if PHASE_COMMENT_MARKER in c.body]
        assert len(markers) == 1
        assert service.approve_design_pr(item.issue_number, pr.number, "tech").outcome == Outcome.ALREADY_DONE

    def test_unknown_type_and_missing_pr(self, service: WorkflowService, design_pr) -> None:
        item, pr = design_pr
        assert service.approve_design_pr(item.issue_number, pr.number, "marketing").outcome == Outcome.INVALID
        assert service.approve_design_pr(item.issue_number, 99, "tech").outcome == Outcome.NOT_FOUND

    def test_changes_and_undo(self, service: WorkflowService, tracker: FileTracker, clock: Clock, design_pr) -> None:
        item, pr = design_pr

        result = service.request_design_pr_changes(item.issue_number, pr.number, "tech")

        assert result.undo_callback == f"u_dc:{pr.number}:{item.issue_number}:tech:{T0}"
        assert tracker.get_item(item.id).review_status == REVIEW_REQUEST_CHANGES
        assert service.request_design_pr_changes(item.issue_number, pr.number, "tech").outcome == Outcome.ALREADY_DONE

        token = UndoToken(UNDO_DESIGN_CHANGES, item.issue_number, T0, pr_number=pr.number, design_type="tech")
        clock.now_ms = T0 + 30_000
        undone = service.undo_design_pr_changes(token)

        assert undone.outcome == Outcome.SUCCESS
        assert undone.buttons == design_pr_buttons(item.issue_number, pr.number, "tech")
        assert tracker.get_item(item.id).review_status is None
        assert service.undo_design_pr_changes(token).outcome == Outcome.ALREADY_DONE

    def test_undo_changes_expired(self, service: WorkflowService, tracker: FileTracker, clock: Clock, design_pr) -> None:
        item, pr = design_pr
        service.request_design_pr_changes(item.issue_number, pr.number, "tech")
        token = UndoToken(UNDO_DESIGN_CHANGES, item.issue_number, T0, pr_number=pr.number, design_type="tech")
        clock.now_ms = T0 + 301_000

        assert service.undo_design_pr_changes(token).outcome == Outcome.EXPIRED
        assert tracker.get_item(item.id).review_status == REVIEW_REQUEST_CHANGES

    def test_changes_after_phase_moved_on(self, service: WorkflowService, tracker: FileTracker, design_pr) -> None:
        item, pr = design_pr
        tracker.update_status(item.id, STATUS_IMPLEMENTATION)
        assert service.request_design_pr_changes(item.issue_number, pr.number, "tech").outcome == Outcome.NO_LONGER_VALID


class TestHistory:
    def test_actions_are_recorded(self, service: WorkflowService, tracker: FileTracker, store: WorkflowStore, state_dir: Path) -> None:
        item = _item(tracker, STATUS_TECH_DESIGN, REVIEW_WAITING_FOR_REVIEW)
        service.review_design(item.issue_number, "approve", actor="alice")

        history = store.get(item.issue_number).history
        assert history[-1]["action"] == "approve"
        assert history[-1]["actor"] == "alice"
        last = item_log_path(state_dir, item.issue_number).read_text().splitlines()[-1]
        assert json.loads(last)["action"] == "approve"
