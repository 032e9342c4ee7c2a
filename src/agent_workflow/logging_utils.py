"""Configure loguru sinks and record per-item action logs."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import LOGS_DIR
from .io_utils import _append_event


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


def item_log_path(state_dir: Path, issue_number: int) -> Path:
    return state_dir / LOGS_DIR / f"issue-{issue_number}.jsonl"


class ActionLog:
    """Append-only JSONL log of actions taken on each item.

    One file per issue under ``<state_dir>/logs/``. Write failures are logged
    and do not interrupt the action that produced the entry.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    def record(
        self,
        issue_number: int,
        action: str,
        *,
        actor: Optional[str] = None,
        **details: Any,
    ) -> None:
        event: dict[str, Any] = {"issue_number": issue_number, "action": action}
        if actor:
            event["actor"] = actor
        event.update(details)
        try:
            _append_event(item_log_path(self.state_dir, issue_number), event)
        except OSError as exc:
            logger.warning("Failed to write action log for #{}: {}", issue_number, exc)
