"""Tests for the command-line entry point."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_workflow import runner as runner_module
from agent_workflow.batch import BatchOptions
from agent_workflow.constants import STATUS_BACKLOG, STATUS_TECH_DESIGN
from agent_workflow.runner import main
from agent_workflow.store import WorkflowStore
from agent_workflow.tracker import FileTracker

CREDENTIALS = {
    "AGENT_WORKFLOW_TRACKER_TOKEN": "tracker-token",
    "AGENT_WORKFLOW_CHAT_TOKEN": "chat-token",
    "AGENT_WORKFLOW_CHAT_ID": "chat-id",
}


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in CREDENTIALS.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> list[BatchOptions]:
    seen: list[BatchOptions] = []

    def fake_run(self, options: BatchOptions) -> int:
        seen.append(options)
        return 0

    monkeypatch.setattr(runner_module.BatchRunner, "run", fake_run)
    return seen


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


class TestMain:
    def test_no_agents_selected(self, tmp_path: Path, env) -> None:
        assert _exit_code(["--project-dir", str(tmp_path)]) == 2

    def test_missing_credentials(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, captured) -> None:
        for key in CREDENTIALS:
            monkeypatch.delenv(key, raising=False)
        assert _exit_code(["--project-dir", str(tmp_path), "--all"]) == 1
        assert captured == []

    def test_bad_config(self, tmp_path: Path, env, captured) -> None:
        config = tmp_path / ".agent_workflow" / "config.yaml"
        config.parent.mkdir()
        config.write_text("agents: [unclosed\n")
        assert _exit_code(["--project-dir", str(tmp_path), "--implement"]) == 1
        assert captured == []

    def test_all_runs_pipeline_order(self, tmp_path: Path, env, captured) -> None:
        assert _exit_code(["--project-dir", str(tmp_path), "--all", "--global-limit", "--dry-run", "--limit", "3"]) == 0
        options = captured[0]
        assert list(options.agents) == [
            "auto-advance",
            "product-dev",
            "product-design",
            "tech-design",
            "implement",
            "pr-review",
        ]
        assert options.global_limit is True
        assert options.dry_run is True
        assert options.limit == 3

    def test_selected_agents_and_flags(self, tmp_path: Path, env, captured) -> None:
        argv = [
            "--project-dir",
            str(tmp_path),
            "--pr-review",
            "--tech-design",
            "--global-limit",
            "--stale-timeout",
            "0",
            "--id",
            "12",
            "--triggered-by",
            "cron",
        ]
        assert _exit_code(argv) == 0
        options = captured[0]
        assert list(options.agents) == ["tech-design", "pr-review"]
        assert options.global_limit is False
        assert options.stale_timeout_minutes == 0
        assert options.item_id == "12"
        assert options.triggered_by == "cron"


def _request_ids(project_dir: Path) -> list[str]:
    with WorkflowStore(project_dir / ".agent_workflow").transaction() as tx:
        return list(tx.requests)


class TestRequestCommands:
    def test_create_approve_route(self, tmp_path: Path, env) -> None:
        project = ["--project-dir", str(tmp_path)]
        assert _exit_code(["create", "Dark mode", "--description", "Add a dark theme", *project]) == 0
        (request_id,) = _request_ids(tmp_path)

        assert _exit_code(["approve", request_id, *project]) == 0
        assert _exit_code(["approve", request_id, *project]) == 1

        tracker = FileTracker(tmp_path / ".agent_workflow")
        (item,) = tracker.list_items()
        assert item.status == STATUS_BACKLOG
        assert [c.body for c in tracker.get_comments(item.issue_number)] == ["Add a dark theme"]

        assert _exit_code(["route", str(item.issue_number), "tech-design", *project]) == 0
        assert tracker.get_item(item.id).status == STATUS_TECH_DESIGN

    def test_approve_to_backlog(self, tmp_path: Path, env) -> None:
        project = ["--project-dir", str(tmp_path)]
        assert _exit_code(["create", "Crash on save", "--type", "bug", *project]) == 0
        (request_id,) = _request_ids(tmp_path)

        assert _exit_code(["approve", request_id, "--backlog", *project]) == 0
        (item,) = FileTracker(tmp_path / ".agent_workflow").list_items()
        assert item.item_type == "bug"
        assert item.status == STATUS_BACKLOG

    def test_delete(self, tmp_path: Path, env) -> None:
        project = ["--project-dir", str(tmp_path)]
        assert _exit_code(["create", "Dark mode", *project]) == 0
        (request_id,) = _request_ids(tmp_path)

        assert _exit_code(["delete", request_id, *project]) == 0
        assert _request_ids(tmp_path) == []
        assert _exit_code(["approve", request_id, *project]) == 1

    def test_route_unknown_issue(self, tmp_path: Path, env) -> None:
        assert _exit_code(["route", "99", "tech-design", "--project-dir", str(tmp_path)]) == 1

    def test_create_needs_credentials(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        for key in CREDENTIALS:
            monkeypatch.delenv(key, raising=False)
        assert _exit_code(["create", "Dark mode", "--project-dir", str(tmp_path)]) == 1
