"""Define work item, phase, lock and action-result models shared across the workflow core."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .channel import InlineButton
from .constants import ITEM_TYPE_FEATURE
from .errors import InvalidPhaseError


class Outcome(str, Enum):
    """Classify the result of an operator or batch action."""

    SUCCESS = "success"
    ALREADY_DONE = "already_done"
    NO_LONGER_VALID = "no_longer_valid"
    EXPIRED = "expired"
    CONTENDED = "contended"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    FAILED = "failed"


# Outcomes that mean "someone already acted"; logged at warning level, never as errors.
CONTENTION_OUTCOMES = frozenset({Outcome.ALREADY_DONE, Outcome.EXPIRED, Outcome.CONTENDED})


@dataclass
class WorkItem:
    """A tracked feature or bug as the remote tracker currently reports it."""

    id: str
    issue_number: int
    title: str = ""
    status: Optional[str] = None
    review_status: Optional[str] = None
    item_type: str = ITEM_TYPE_FEATURE
    phase_field: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        return cls(
            id=str(data.get("id", "")),
            issue_number=int(data.get("issue_number") or 0),
            title=str(data.get("title") or ""),
            status=data.get("status") or None,
            review_status=data.get("review_status") or None,
            item_type=str(data.get("item_type") or ITEM_TYPE_FEATURE),
            phase_field=data.get("phase_field") or None,
        )


@dataclass
class PhaseDescriptor:
    """One independently mergeable slice of a multi-part implementation."""

    order: int
    name: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    size: str = "M"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseDescriptor":
        files: list[str] = []
        for path in data.get("files") or []:
            if path not in files:
                files.append(str(path))
        return cls(
            order=int(data["order"]),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            files=files,
            size=str(data.get("size") or data.get("estimated_size") or "M"),
        )


@dataclass
class PhaseState:
    """Current/total phase bookkeeping plus the descriptors, when known."""

    current: int
    total: int
    phases: list[PhaseDescriptor] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.total < 1 or self.current < 1 or self.current > self.total:
            raise InvalidPhaseError(f"Invalid phase state {self.current}/{self.total}")

    @property
    def multi_phase(self) -> bool:
        return self.total >= 2

    @property
    def is_final(self) -> bool:
        return self.current == self.total

    @property
    def field_value(self) -> str:
        return f"{self.current}/{self.total}"

    def descriptor(self, order: Optional[int] = None) -> Optional[PhaseDescriptor]:
        wanted = self.current if order is None else order
        for phase in self.phases:
            if phase.order == wanted:
                return phase
        return None


@dataclass
class PhaseResolution:
    """Answer from :class:`~agent_workflow.phases.PhaseResolver`.

    All fields are ``None`` for single-phase items.
    """

    current: Optional[int] = None
    total: Optional[int] = None
    phase: Optional[PhaseDescriptor] = None
    phases: list[PhaseDescriptor] = field(default_factory=list)
    task_branch: Optional[str] = None
    source: Optional[str] = None

    @property
    def multi_phase(self) -> bool:
        return bool(self.total and self.total >= 2)


@dataclass
class LockRecord:
    """On-disk contents of a working-directory lock file."""

    pid: int
    cwd: str
    start_time: str
    hostname: str
    agents: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "cwd": self.cwd,
            "startTime": self.start_time,
            "hostname": self.hostname,
            "agents": list(self.agents),
        }

    @classmethod
    def from_json(cls, data: Any) -> "LockRecord":
        """Parse a lock payload.

        Raises:
            ValueError: If the payload is not a lock record.
        """
        if not isinstance(data, dict):
            raise ValueError("lock payload is not an object")
        pid = data.get("pid")
        start_time = data.get("startTime")
        if not isinstance(pid, int) or not isinstance(start_time, str):
            raise ValueError("lock payload missing pid/startTime")
        agents = data.get("agents") or []
        return cls(
            pid=pid,
            cwd=str(data.get("cwd") or ""),
            start_time=start_time,
            hostname=str(data.get("hostname") or ""),
            agents=[str(a) for a in agents] if isinstance(agents, list) else [],
        )


@dataclass
class ActionResult:
    """Result of a workflow-service operation."""

    outcome: Outcome
    message: str = ""
    issue_number: Optional[int] = None
    previous_status: Optional[str] = None
    advanced_to: Optional[str] = None
    review_status: Optional[str] = None
    phase_info: Optional[dict[str, Any]] = None
    undo_callback: Optional[str] = None
    buttons: Optional[list[list[InlineButton]]] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.ALREADY_DONE)

    @classmethod
    def ok(cls, message: str = "", **kwargs: Any) -> "ActionResult":
        return cls(Outcome.SUCCESS, message, **kwargs)

    @classmethod
    def fail(cls, outcome: Outcome, message: str, **kwargs: Any) -> "ActionResult":
        return cls(outcome, message, **kwargs)
