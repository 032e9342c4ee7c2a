"""Provide the public `agent_workflow` package exports."""

from __future__ import annotations

from .callbacks import CallbackRouter, parse_callback
from .phases import PhaseResolver, parse_phase
from .process_lock import ProcessLock
from .workflow import WorkflowService

__all__ = [
    "CallbackRouter",
    "PhaseResolver",
    "ProcessLock",
    "WorkflowService",
    "parse_callback",
    "parse_phase",
]
