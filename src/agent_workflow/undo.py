"""Stateless, time-boxed undo tokens carried in callback payloads.

Nothing is persisted server-side: the token itself holds the issue, the action
being reversed, the prior state and the issue time in epoch milliseconds::

    u_rc:42:117:1718000000000            undo "request changes" on PR #117
    u_dr:42:changes:tdes:1718000000000   undo a design-review "changes"
    u_dc:88:42:tech:1718000000000        undo "request changes" on design PR #88
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .constants import CODE_TO_STATUS, DEFAULT_UNDO_WINDOW_SECONDS, DESIGN_TYPE_STATUS, STATUS_CODES
from .utils import _now_ms

UNDO_REQUEST_CHANGES = "u_rc"
UNDO_DESIGN_REVIEW = "u_dr"
UNDO_DESIGN_CHANGES = "u_dc"
DESIGN_REVIEW_ACTIONS = ("changes", "reject")


@dataclass(frozen=True)
class UndoToken:
    kind: str
    issue_number: int
    issued_at_ms: int
    pr_number: Optional[int] = None
    action: Optional[str] = None
    previous_status: Optional[str] = None
    design_type: Optional[str] = None

    def encode(self) -> str:
        if self.kind == UNDO_REQUEST_CHANGES:
            return f"{UNDO_REQUEST_CHANGES}:{self.issue_number}:{self.pr_number}:{self.issued_at_ms}"
        if self.kind == UNDO_DESIGN_CHANGES:
            return f"{UNDO_DESIGN_CHANGES}:{self.pr_number}:{self.issue_number}:{self.design_type}:{self.issued_at_ms}"
        code = STATUS_CODES[self.previous_status] if self.previous_status else ""
        return f"{UNDO_DESIGN_REVIEW}:{self.issue_number}:{self.action}:{code}:{self.issued_at_ms}"


class UndoLedger:
    """Mint and validate undo tokens against a fixed window.

    Args:
        window_seconds: How long a token stays valid after issue.
        now_ms: Clock in epoch milliseconds.
    """

    def __init__(
        self,
        window_seconds: int = DEFAULT_UNDO_WINDOW_SECONDS,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self.window_ms = window_seconds * 1000
        self._now_ms = now_ms

    def request_changes_token(self, issue_number: int, pr_number: int) -> UndoToken:
        return UndoToken(
            kind=UNDO_REQUEST_CHANGES,
            issue_number=issue_number,
            pr_number=pr_number,
            issued_at_ms=self._now_ms(),
        )

    def design_review_token(self, issue_number: int, action: str, previous_status: str) -> UndoToken:
        if action not in DESIGN_REVIEW_ACTIONS:
            raise ValueError(f"Design review action {action!r} cannot be undone")
        if previous_status not in STATUS_CODES:
            raise ValueError(f"Unknown status {previous_status!r}")
        return UndoToken(
            kind=UNDO_DESIGN_REVIEW,
            issue_number=issue_number,
            action=action,
            previous_status=previous_status,
            issued_at_ms=self._now_ms(),
        )

    def design_changes_token(self, issue_number: int, pr_number: int, design_type: str) -> UndoToken:
        if design_type not in DESIGN_TYPE_STATUS:
            raise ValueError(f"Unknown design type {design_type!r}")
        return UndoToken(
            kind=UNDO_DESIGN_CHANGES,
            issue_number=issue_number,
            pr_number=pr_number,
            design_type=design_type,
            issued_at_ms=self._now_ms(),
        )

    def is_valid(self, token: UndoToken) -> bool:
        elapsed = self._now_ms() - token.issued_at_ms
        return 0 <= elapsed < self.window_ms

    def remaining_seconds(self, token: UndoToken) -> int:
        return max(0, (token.issued_at_ms + self.window_ms - self._now_ms()) // 1000)


def decode_design_status(code: str) -> Optional[str]:
    return CODE_TO_STATUS.get(code)
