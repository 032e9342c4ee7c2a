"""Provide small git helpers used by the batch runner."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import STATE_DIR_NAME


def _git(project_dir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().rstrip("/") in lines


def _ensure_git_exclude(project_dir: Path) -> None:
    """Keep the state directory out of ``git status`` without touching tracked files.

    The entry goes into ``.git/info/exclude``, which is never committed, so
    adding it cannot dirty the working tree before a pull.
    """
    result = _git(project_dir, "rev-parse", "--git-path", "info/exclude")
    if result.returncode != 0 or not result.stdout.strip():
        logger.warning("Unable to locate git exclude file: {}", _describe_failure(result))
        return
    exclude_path = Path(result.stdout.strip())
    if not exclude_path.is_absolute():
        exclude_path = project_dir / exclude_path
    entry = f"{STATE_DIR_NAME}/"
    if _ignore_file_has_entry(exclude_path, entry):
        return
    try:
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        contents = exclude_path.read_text() if exclude_path.exists() else ""
        if contents and not contents.endswith("\n"):
            contents += "\n"
        exclude_path.write_text(contents + entry + "\n")
    except OSError as exc:
        logger.warning("Unable to update {}: {}", exclude_path, exc)


def _git_is_repo(project_dir: Path) -> bool:
    try:
        result = _git(project_dir, "rev-parse", "--is-inside-work-tree")
    except OSError as exc:
        logger.warning("git unavailable: {}", exc)
        return False
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_has_changes(project_dir: Path) -> bool:
    result = _git(project_dir, "status", "--porcelain", "--", ".", f":(exclude){STATE_DIR_NAME}")
    return result.returncode == 0 and bool(result.stdout.strip())


def _describe_failure(result: subprocess.CompletedProcess[str]) -> str:
    return (result.stderr or result.stdout or f"exit code {result.returncode}").strip()


def git_pull(project_dir: Path) -> tuple[bool, str]:
    """Fast-forward the current branch. Refuses to run over local changes."""
    if _git_has_changes(project_dir):
        return False, "Working tree has uncommitted changes; commit or stash them, or pass --reset"
    result = _git(project_dir, "pull", "--ff-only")
    if result.returncode != 0:
        return False, f"git pull failed: {_describe_failure(result)}"
    return True, result.stdout.strip() or "Already up to date"


def git_reset_to_default(project_dir: Path, default_branch: str) -> tuple[bool, str]:
    """Discard local state and match ``origin/<default_branch>``."""
    steps = [
        ("fetch", "origin"),
        ("checkout", default_branch),
        ("reset", "--hard", f"origin/{default_branch}"),
        ("clean", "-fd", "-e", STATE_DIR_NAME),
    ]
    for args in steps:
        result = _git(project_dir, *args)
        if result.returncode != 0:
            return False, f"git {' '.join(args)} failed: {_describe_failure(result)}"
    return True, f"Reset to origin/{default_branch}"


def git_cleanup(project_dir: Path, default_branch: str) -> bool:
    """Return a dirty working tree to a clean default branch after a run."""
    if not _git_has_changes(project_dir) and _git_current_branch(project_dir) == default_branch:
        return True
    logger.warning("Working tree left dirty or off {}; cleaning up", default_branch)
    for args in (("checkout", "--", "."), ("clean", "-fd", "-e", STATE_DIR_NAME), ("checkout", default_branch)):
        result = _git(project_dir, *args)
        if result.returncode != 0:
            logger.error("git {} failed: {}", " ".join(args), _describe_failure(result))
            return False
    return True
