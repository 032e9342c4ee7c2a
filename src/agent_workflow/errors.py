"""Exception types raised by the workflow core."""

from __future__ import annotations

from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for workflow errors."""


class ConfigError(WorkflowError):
    """Missing or invalid startup configuration. Always fatal."""


class TrackerError(WorkflowError):
    """An upstream tracker or chat call failed.

    Not retried in-process; the next scheduled batch run picks the item up again.
    """


class ItemNotFoundError(TrackerError):
    def __init__(self, issue_number: Any):
        super().__init__(f"Issue #{issue_number} not found in project")
        self.issue_number = issue_number


class InvalidPhaseError(WorkflowError):
    """Phase bookkeeping would violate ``1 <= current <= total``."""


class CallbackParseError(WorkflowError):
    """A callback payload failed argument validation."""

    def __init__(self, message: str, raw: str, action: Optional[str] = None):
        super().__init__(message)
        self.raw = raw
        self.action = action


class UnknownActionError(CallbackParseError):
    """The callback action name is not one the router handles."""


class LockHeldError(WorkflowError):
    """Another live process owns the working-directory lock."""

    def __init__(self, lock_path: str, owner: Optional[dict[str, Any]] = None):
        pid = (owner or {}).get("pid")
        super().__init__(f"Directory lock {lock_path} is held by PID {pid}")
        self.lock_path = lock_path
        self.owner = owner or {}
