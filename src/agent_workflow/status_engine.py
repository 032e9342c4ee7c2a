"""Status/review-status state machine and live-status validation.

Transitions are always checked against the item's live status as reported by
the tracker. A request whose captured status no longer matches yields
``Outcome.NO_LONGER_VALID`` and the caller must not mutate anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .constants import (
    BUG_ROUTING_STATUS_MAP,
    DESIGN_STATUSES,
    FEATURE_ROUTING_STATUS_MAP,
    ITEM_TYPE_BUG,
    REVIEW_APPROVED,
    REVIEW_CLARIFICATION_RECEIVED,
    REVIEW_REQUEST_CHANGES,
    REVIEW_WAITING_FOR_CLARIFICATION,
    STATUS_BACKLOG,
    STATUS_DONE,
    STATUS_IMPLEMENTATION,
    STATUS_PR_REVIEW,
    STATUS_PRODUCT_DESIGN,
    STATUS_PRODUCT_DEVELOPMENT,
    STATUS_TECH_DESIGN,
)
from .models import Outcome, WorkItem

EVENT_APPROVED = "approved"
EVENT_CHANGES = "changes"
EVENT_REJECTED = "rejected"
EVENT_CLARIFIED = "clarified"
EVENT_MERGED = "merged"
EVENT_CHANGES_REQUESTED = "changes_requested"
EVENT_ROUTED = "routed"

MODE_NEW = "new"
MODE_FEEDBACK = "feedback"
MODE_CLARIFICATION = "clarification"

# PR Review has no EVENT_APPROVED entry; it only exits via merge.
STATUS_TRANSITIONS: dict[tuple[str, str], str] = {
    (STATUS_PRODUCT_DEVELOPMENT, EVENT_APPROVED): STATUS_PRODUCT_DESIGN,
    (STATUS_PRODUCT_DESIGN, EVENT_APPROVED): STATUS_TECH_DESIGN,
    (STATUS_TECH_DESIGN, EVENT_APPROVED): STATUS_IMPLEMENTATION,
    (STATUS_PR_REVIEW, EVENT_MERGED): STATUS_DONE,
    (STATUS_IMPLEMENTATION, EVENT_MERGED): STATUS_DONE,
    (STATUS_PR_REVIEW, EVENT_CHANGES_REQUESTED): STATUS_IMPLEMENTATION,
}

MERGEABLE_STATUSES = (STATUS_PR_REVIEW, STATUS_IMPLEMENTATION)


@dataclass(frozen=True)
class TransitionCheck:
    outcome: Outcome
    reason: str = ""
    next_status: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == Outcome.SUCCESS


def next_status(status: Optional[str], event: str) -> Optional[str]:
    if status is None:
        return None
    return STATUS_TRANSITIONS.get((status, event))


def is_design_status(status: Optional[str]) -> bool:
    return status in DESIGN_STATUSES


def routing_map(item_type: str) -> dict[str, str]:
    return BUG_ROUTING_STATUS_MAP if item_type == ITEM_TYPE_BUG else FEATURE_ROUTING_STATUS_MAP


def _rejected(reason: str, outcome: Outcome = Outcome.NO_LONGER_VALID) -> TransitionCheck:
    return TransitionCheck(outcome=outcome, reason=reason)


def check(item: WorkItem, event: str, captured_status: Optional[str] = None) -> TransitionCheck:
    """Decide whether ``event`` may apply to ``item`` right now.

    Args:
        item: The item with its live status.
        event: One of the ``EVENT_*`` names.
        captured_status: Status the item had when the triggering notification
            was sent, if the notification carried one.
    """
    if captured_status is not None and item.status != captured_status:
        return _rejected(
            f"Issue #{item.issue_number} moved from {captured_status} to {item.status}; this action is no longer valid"
        )

    if event in (EVENT_APPROVED, EVENT_CHANGES, EVENT_REJECTED):
        if not is_design_status(item.status):
            return _rejected(
                f"Issue #{item.issue_number} is no longer in a reviewable design phase (status: {item.status})"
            )
        target = next_status(item.status, EVENT_APPROVED) if event == EVENT_APPROVED else item.status
        return TransitionCheck(Outcome.SUCCESS, next_status=target)

    if event == EVENT_CLARIFIED:
        if item.review_status == REVIEW_CLARIFICATION_RECEIVED:
            return _rejected(f"Issue #{item.issue_number} clarification already recorded", Outcome.ALREADY_DONE)
        if item.review_status != REVIEW_WAITING_FOR_CLARIFICATION:
            return _rejected(
                f"Issue #{item.issue_number} is not waiting for clarification (review status: {item.review_status})"
            )
        return TransitionCheck(Outcome.SUCCESS, next_status=item.status)

    if event == EVENT_MERGED:
        if item.status == STATUS_DONE:
            return _rejected(f"Issue #{item.issue_number} is already Done", Outcome.ALREADY_DONE)
        if item.status not in MERGEABLE_STATUSES:
            return _rejected(f"Issue #{item.issue_number} is not awaiting a merge (status: {item.status})")
        return TransitionCheck(Outcome.SUCCESS, next_status=next_status(item.status, EVENT_MERGED))

    if event == EVENT_CHANGES_REQUESTED:
        if item.status == STATUS_IMPLEMENTATION and item.review_status == REVIEW_REQUEST_CHANGES:
            return _rejected(f"Issue #{item.issue_number} already sent back for changes", Outcome.ALREADY_DONE)
        if item.status != STATUS_PR_REVIEW:
            return _rejected(f"Issue #{item.issue_number} is not in PR Review (status: {item.status})")
        return TransitionCheck(Outcome.SUCCESS, next_status=STATUS_IMPLEMENTATION)

    if event == EVENT_ROUTED:
        if item.status not in (None, STATUS_BACKLOG):
            return _rejected(f"Issue #{item.issue_number} was already routed to {item.status}", Outcome.ALREADY_DONE)
        return TransitionCheck(Outcome.SUCCESS)

    return _rejected(f"Unknown event {event!r}", Outcome.INVALID)


def eligible_mode(item: WorkItem, agent_status: str) -> Optional[str]:
    """Return the processing mode for a batch agent, or None to skip the item."""
    if item.status != agent_status:
        return None
    if not item.review_status:
        return MODE_NEW
    if item.review_status == REVIEW_REQUEST_CHANGES:
        return MODE_FEEDBACK
    if item.review_status == REVIEW_CLARIFICATION_RECEIVED:
        return MODE_CLARIFICATION
    return None


def auto_advance_candidates(items: Iterable[WorkItem]) -> list[WorkItem]:
    return [item for item in items if is_design_status(item.status) and item.review_status == REVIEW_APPROVED]
