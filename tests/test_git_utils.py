"""Tests for the git helpers against real repositories."""

from __future__ import annotations

import io
import shutil
import subprocess
from pathlib import Path

import pytest
from rich.console import Console

from agent_workflow.agents import AgentOutput, AgentRequest, AgentRunner
from agent_workflow.batch import BatchOptions, BatchRunner
from agent_workflow.config import WorkflowSettings
from agent_workflow.git_utils import _ensure_git_exclude, _git_has_changes, _git_is_repo, git_pull
from agent_workflow.process_lock import ProcessLock
from agent_workflow.store import WorkflowStore
from agent_workflow.tracker import FileTracker

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _run(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@pytest.fixture
def clone(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for var, value in {
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }.items():
        monkeypatch.setenv(var, value)
    origin = tmp_path / "origin"
    origin.mkdir()
    _run(origin, "init")
    _run(origin, "symbolic-ref", "HEAD", "refs/heads/main")
    (origin / "README.md").write_text("hello\n")
    _run(origin, "add", "README.md")
    _run(origin, "commit", "-m", "initial")
    work = tmp_path / "work"
    _run(tmp_path, "clone", str(origin), str(work))
    return work


class NoopAgentRunner(AgentRunner):
    def run(self, request: AgentRequest) -> AgentOutput:
        return AgentOutput(success=True)


def test_clone_is_repo(clone: Path, tmp_path: Path) -> None:
    assert _git_is_repo(clone)
    plain = tmp_path / "plain"
    plain.mkdir()
    assert not _git_is_repo(plain)


def test_exclude_does_not_dirty_tree(clone: Path) -> None:
    _ensure_git_exclude(clone)
    _ensure_git_exclude(clone)

    assert not (clone / ".gitignore").exists()
    assert not _git_has_changes(clone)
    exclude = (clone / ".git" / "info" / "exclude").read_text().splitlines()
    assert exclude.count(".agent_workflow/") == 1


def test_state_dir_is_not_a_change(clone: Path) -> None:
    state_dir = clone / ".agent_workflow"
    state_dir.mkdir()
    (state_dir / "tracker.yaml").write_text("items: []\n")
    assert not _git_has_changes(clone)

    (clone / "notes.txt").write_text("scratch\n")
    assert _git_has_changes(clone)


def test_pull_succeeds_after_exclude(clone: Path) -> None:
    _ensure_git_exclude(clone)
    ok, message = git_pull(clone)
    assert ok, message


def test_pull_refuses_dirty_tree(clone: Path) -> None:
    (clone / "README.md").write_text("edited\n")
    ok, message = git_pull(clone)
    assert not ok
    assert "uncommitted changes" in message


def test_default_batch_run_in_fresh_clone(clone: Path, tmp_path: Path) -> None:
    state_dir = clone / ".agent_workflow"
    runner = BatchRunner(
        clone,
        FileTracker(state_dir),
        WorkflowStore(state_dir),
        NoopAgentRunner(),
        WorkflowSettings(),
        lock=ProcessLock(clone, lock_dir=tmp_path / "locks"),
        console=Console(file=io.StringIO()),
    )

    assert runner.run(BatchOptions(agents=["auto-advance"])) == 0
    assert not (clone / ".gitignore").exists()
    assert runner.run(BatchOptions(agents=["auto-advance"])) == 0
