"""Tests for the workflow store and the file tracker."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from agent_workflow.constants import STATUS_BACKLOG, STATUS_TECH_DESIGN, STORE_FILE
from agent_workflow.errors import ItemNotFoundError, TrackerError, WorkflowError
from agent_workflow.models import PhaseDescriptor, WorkItem
from agent_workflow.store import ApprovalRequest, WorkflowStore
from agent_workflow.tracker import FileTracker, require_item


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / ".agent_workflow"


@pytest.fixture
def store(state_dir: Path) -> WorkflowStore:
    return WorkflowStore(state_dir)


@pytest.fixture
def tracker(state_dir: Path) -> FileTracker:
    return FileTracker(state_dir)


class TestWorkflowStore:
    def test_record_persists_across_instances(self, store: WorkflowStore, state_dir: Path) -> None:
        store.upsert_item(WorkItem(id="item-3", issue_number=3, title="Dark mode", status=STATUS_TECH_DESIGN))
        store.save_phases(3, [PhaseDescriptor(order=2, name="B"), PhaseDescriptor(order=1, name="A", files=["x.py"])])
        store.set_task_branch(3, "feature/task-3")
        store.save_design(3, "tech", "# Design")
        store.append_history(3, "approve", "approved", "alice")

        record = WorkflowStore(state_dir).get(3)
        assert record.item_id == "item-3"
        assert record.status == STATUS_TECH_DESIGN
        assert [p.name for p in record.phases] == ["A", "B"]
        assert record.phases[0].files == ["x.py"]
        assert record.task_branch == "feature/task-3"
        assert record.designs == {"tech": "# Design"}
        assert record.history[0]["actor"] == "alice"

    def test_read_only_transaction_does_not_write(self, store: WorkflowStore, state_dir: Path) -> None:
        with store.transaction() as tx:
            assert tx.get(1) is None
        assert not (state_dir / STORE_FILE).exists()

    def test_corrupt_store_is_not_overwritten(self, store: WorkflowStore, state_dir: Path) -> None:
        state_dir.mkdir(parents=True)
        path = state_dir / STORE_FILE
        path.write_text("items: [broken\n")
        with pytest.raises(WorkflowError):
            store.set_task_branch(1, "feature/task-1")
        assert path.read_text() == "items: [broken\n"

    def test_requests(self, store: WorkflowStore, state_dir: Path) -> None:
        store.add_request(ApprovalRequest(id="req-1", title="Dark mode", item_type="bug"))
        request = WorkflowStore(state_dir).get_request("req-1")
        assert request.item_type == "bug"
        assert request.created_at
        data = yaml.safe_load((state_dir / STORE_FILE).read_text())
        assert data["requests"][0]["id"] == "req-1"

    def test_last_merged_pr(self, store: WorkflowStore) -> None:
        store.set_last_merged_pr(4, 17, "abc123", phase=2)
        merged = store.get(4).last_merged_pr
        assert (merged["pr_number"], merged["merge_sha"], merged["phase"]) == (17, "abc123", 2)


class TestFileTracker:
    def test_create_and_find(self, tracker: FileTracker) -> None:
        first = tracker.create_item("Dark mode")
        second = tracker.create_item("Crash on save", item_type="bug")
        assert (first.issue_number, second.issue_number) == (1, 2)
        assert first.status == STATUS_BACKLOG
        assert tracker.find_item_by_issue(2).item_type == "bug"
        assert tracker.find_item_by_issue(3) is None
        assert [i.issue_number for i in tracker.list_items(STATUS_BACKLOG)] == [1, 2]

    def test_status_review_and_phase_field(self, tracker: FileTracker) -> None:
        item = tracker.create_item("Dark mode")
        tracker.update_status(item.id, STATUS_TECH_DESIGN)
        tracker.update_review_status(item.id, "Waiting for Review")
        tracker.set_phase_field(item.id, "1/2")
        live = tracker.get_item(item.id)
        assert (live.status, live.review_status, live.phase_field) == (STATUS_TECH_DESIGN, "Waiting for Review", "1/2")

        tracker.clear_review_status(item.id)
        tracker.clear_phase_field(item.id)
        live = tracker.get_item(item.id)
        assert (live.review_status, live.phase_field) == (None, None)

    def test_unknown_item(self, tracker: FileTracker) -> None:
        with pytest.raises(TrackerError):
            tracker.update_status("item-99", STATUS_TECH_DESIGN)
        with pytest.raises(ItemNotFoundError):
            require_item(tracker, 99)

    def test_comments(self, tracker: FileTracker) -> None:
        comment = tracker.add_comment(1, "first")
        tracker.update_comment(1, comment.id, "edited")
        assert [c.body for c in tracker.get_comments(1)] == ["edited"]
        with pytest.raises(TrackerError):
            tracker.update_comment(1, 999, "nope")

    def test_branches_and_pull_requests(self, tracker: FileTracker) -> None:
        tracker.create_branch("feature/task-1", "main")
        with pytest.raises(TrackerError):
            tracker.create_branch("feature/x", "missing")
        pr = tracker.create_pull_request("feature/task-1", "main", "Dark mode")
        sha = tracker.merge_pull_request(pr.number)
        assert tracker.get_pr(pr.number).merged
        assert tracker.merge_pull_request(pr.number) == sha
        assert tracker.delete_branch("feature/task-1") is True
        assert tracker.delete_branch("feature/task-1") is False
        with pytest.raises(TrackerError):
            tracker.merge_pull_request(99)
