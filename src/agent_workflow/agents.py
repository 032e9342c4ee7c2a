"""Agent runner interface and a subprocess-backed implementation.

An agent receives a prompt describing one work item and returns structured
output. The command runner pipes the prompt to an external CLI and reads the
last JSON object it prints::

    {"success": true, "summary": "...", "content": "...",
     "phases": [...], "needs_clarification": false, "question": null,
     "branch": "feature/task-12-phase-1", "pr_number": 31}
"""

from __future__ import annotations

import json
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    AGENT_IMPLEMENT,
    AGENT_PR_REVIEW,
    AGENT_PRODUCT_DESIGN,
    AGENT_PRODUCT_DEV,
    AGENT_TECH_DESIGN,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
)
from .models import PhaseDescriptor, PhaseResolution, WorkItem
from .status_engine import MODE_CLARIFICATION, MODE_FEEDBACK

DESIGN_KINDS = {
    AGENT_PRODUCT_DEV: "product",
    AGENT_PRODUCT_DESIGN: "ux",
    AGENT_TECH_DESIGN: "tech",
}


@dataclass
class AgentRequest:
    agent: str
    item: WorkItem
    mode: str
    prompt: str
    resolution: Optional[PhaseResolution] = None


@dataclass
class AgentOutput:
    success: bool
    summary: str = ""
    content: str = ""
    phases: list[PhaseDescriptor] = field(default_factory=list)
    needs_clarification: bool = False
    question: Optional[str] = None
    branch: Optional[str] = None
    pr_number: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentOutput":
        phases: list[PhaseDescriptor] = []
        for index, raw in enumerate(data.get("phases") or [], start=1):
            if isinstance(raw, dict):
                raw = {"order": index, **raw}
                phases.append(PhaseDescriptor.from_dict(raw))
        pr_number = data.get("pr_number")
        return cls(
            success=bool(data.get("success", True)),
            summary=str(data.get("summary") or ""),
            content=str(data.get("content") or ""),
            phases=phases,
            needs_clarification=bool(data.get("needs_clarification")),
            question=data.get("question") or None,
            branch=data.get("branch") or None,
            pr_number=int(pr_number) if pr_number is not None else None,
            error=data.get("error") or None,
        )

    @classmethod
    def failed(cls, error: str) -> "AgentOutput":
        return cls(success=False, error=error)


class AgentRunner(ABC):
    @abstractmethod
    def run(self, request: AgentRequest) -> AgentOutput:
        raise NotImplementedError


def build_prompt(
    agent: str,
    item: WorkItem,
    mode: str,
    *,
    resolution: Optional[PhaseResolution] = None,
    designs: Optional[dict[str, str]] = None,
    feedback: Optional[str] = None,
) -> str:
    """Render the prompt sent to an agent for one item."""
    designs = designs or {}
    lines = [
        f"# {agent} for issue #{item.issue_number}: {item.title}",
        "",
        f"Item type: {item.item_type}",
        f"Status: {item.status}",
        f"Mode: {mode}",
    ]
    for kind in ("product", "ux", "tech"):
        if designs.get(kind):
            lines += ["", f"## Existing {kind} design", "", designs[kind]]

    if resolution is not None and resolution.multi_phase:
        lines += ["", f"## Phase {resolution.current}/{resolution.total}"]
        if resolution.phase is not None:
            lines += [
                "",
                f"### {resolution.phase.name} ({resolution.phase.size})",
                resolution.phase.description,
            ]
            if resolution.phase.files:
                lines += ["", "Files to modify:"] + [f"- {path}" for path in resolution.phase.files]
        if resolution.task_branch:
            lines += ["", f"Base your work on branch {resolution.task_branch}."]

    if mode == MODE_FEEDBACK:
        lines += ["", "## Reviewer feedback", "", feedback or "Address the requested changes."]
    elif mode == MODE_CLARIFICATION:
        lines += ["", "## Clarification", "", feedback or "The operator answered your question; continue."]

    if agent == AGENT_TECH_DESIGN:
        lines += ["", "Split the work into phases if it will not fit in one PR."]
    elif agent == AGENT_IMPLEMENT:
        lines += ["", "Open a PR and report its number as pr_number."]
    elif agent == AGENT_PR_REVIEW:
        lines += ["", "Review the open PR and summarise the findings."]
    elif agent in DESIGN_KINDS:
        lines += ["", "Write the design document as content."]
    lines += ["", "Reply with a single JSON object as your final output."]
    return "\n".join(lines)


def _parse_last_json(stdout: str) -> Optional[dict[str, Any]]:
    for line in reversed(stdout.splitlines()):
        line = line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class CommandAgentRunner(AgentRunner):
    """Run an agent CLI per item, feeding the prompt on stdin.

    Args:
        commands: Command template per agent name. Placeholders:
            ``{prompt_file}``, ``{project_dir}``, ``{issue}``. A command
            without ``{prompt_file}`` receives the prompt on stdin.
        project_dir: Working directory for the command.
        run_dir: Where prompts and raw output are written.
        timeout_seconds: Per-agent timeouts; missing entries use the default.
    """

    def __init__(
        self,
        commands: dict[str, str],
        project_dir: Path,
        run_dir: Path,
        timeout_seconds: Optional[dict[str, int]] = None,
    ) -> None:
        self.commands = commands
        self.project_dir = project_dir
        self.run_dir = run_dir
        self.timeout_seconds = timeout_seconds or {}

    def run(self, request: AgentRequest) -> AgentOutput:
        command = self.commands.get(request.agent)
        if not command:
            return AgentOutput.failed(f"No command configured for agent {request.agent}")

        item_dir = self.run_dir / f"issue-{request.item.issue_number}"
        item_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = item_dir / f"{request.agent}-prompt.md"
        prompt_path.write_text(request.prompt)

        try:
            formatted = command.format(
                prompt_file=str(prompt_path),
                project_dir=str(self.project_dir),
                issue=request.item.issue_number,
            )
        except (KeyError, IndexError) as exc:
            return AgentOutput.failed(f"Unknown placeholder in agent command: {exc}")

        timeout = self.timeout_seconds.get(request.agent, DEFAULT_AGENT_TIMEOUT_SECONDS)
        uses_prompt_file = "{prompt_file}" in command
        logger.info("Running {} for #{}: {}", request.agent, request.item.issue_number, formatted)
        try:
            result = subprocess.run(
                shlex.split(formatted),
                cwd=self.project_dir,
                input=None if uses_prompt_file else request.prompt,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return AgentOutput.failed(f"{request.agent} timed out after {timeout}s")
        except OSError as exc:
            return AgentOutput.failed(f"Failed to start {request.agent}: {exc}")

        (item_dir / f"{request.agent}-stdout.log").write_text(result.stdout or "")
        (item_dir / f"{request.agent}-stderr.log").write_text(result.stderr or "")
        if result.returncode != 0:
            tail = (result.stderr or result.stdout or "").strip()[-500:]
            return AgentOutput.failed(f"{request.agent} exited with {result.returncode}: {tail}")

        data = _parse_last_json(result.stdout or "")
        if data is None:
            return AgentOutput.failed(f"{request.agent} produced no JSON output")
        try:
            return AgentOutput.from_dict(data)
        except (TypeError, ValueError, KeyError) as exc:
            return AgentOutput.failed(f"{request.agent} produced malformed output: {exc}")
