"""Multi-phase implementation tracking.

Phase descriptors are loaded from the first source that yields two or more
phases, in this order:

1. the workflow store record,
2. the structured ``<!-- AGENT_PHASES_V1 -->`` tracking comment,
3. the "Implementation Phases" section of the technical design (legacy).

Sources are never merged. Progress (``current/total``) lives in the tracker's
phase field; the store is trusted only for descriptor content.
"""

from __future__ import annotations

import re
from typing import Callable, Optional, Sequence

from loguru import logger

from .constants import ARTIFACT_COMMENT_MARKER, DEFAULT_BRANCH, PHASE_COMMENT_MARKER, PHASE_FIELD_PATTERN
from .errors import InvalidPhaseError
from .models import PhaseDescriptor, PhaseResolution, PhaseState, WorkItem
from .status_engine import MODE_NEW
from .store import WorkflowStore
from .tracker import ProjectTracker

_PHASE_FIELD_RE = re.compile(PHASE_FIELD_PATTERN)

_COMMENT_PHASE_RE = re.compile(
    r"###\s+Phase\s+(\d+):\s+([^(\n]+?)\s*\(([SM])\)\s*\n\s*\n([^\n]+)\s*\n\s*\n"
    r"\*\*Files to modify:\*\*\s*\n((?:\s*-\s*`[^`]+`\s*\n?)*)"
)
_BACKTICK_RE = re.compile(r"`([^`]+)`")

_DESIGN_SECTION_RE = re.compile(
    r"##\s*(?:Implementation\s+)?Phases?\s*\n([\s\S]*?)(?=\n##\s+[^#]|$)",
    re.IGNORECASE,
)
_DESIGN_PHASE_RE = re.compile(
    r"###\s*Phase\s*(\d+)[:\s]+([^(\n]+)\s*(?:\(([SM])\))?[\s\n]+([\s\S]*?)(?=###\s*Phase\s*\d+|$)",
    re.IGNORECASE,
)
_DESIGN_SRC_FILE_RE = re.compile(r"`(src/[^`]+)`")
_DESIGN_BULLET_FILE_RE = re.compile(r"^\s*[-*]\s+`?([\w.@-]+(?:/[\w.@-]+)+)`?\s*$", re.MULTILINE)

_ARTIFACT_BRANCH_RE = re.compile(r"\*\*Task branch:\*\*\s*`([^`]+)`")

# Read-only resolution used when merging; never initialises phase tracking.
MODE_MERGE = "merge"

SOURCE_STORE = "store"
SOURCE_COMMENT = "comment"
SOURCE_DESIGN = "design"

PhaseSource = Callable[[int], list[PhaseDescriptor]]


# ---------------------------------------------------------------------------
# Field and branch helpers
# ---------------------------------------------------------------------------

def parse_phase(value: Optional[str]) -> Optional[tuple[int, int]]:
    """Parse a ``current/total`` phase field; ``None`` when absent or invalid."""
    if not value:
        return None
    match = _PHASE_FIELD_RE.match(value.strip())
    if not match:
        return None
    current, total = int(match.group(1)), int(match.group(2))
    if total < 1 or current < 1 or current > total:
        return None
    return current, total


def format_phase(current: int, total: int) -> str:
    return PhaseState(current, total).field_value


def task_branch_name(issue_number: int) -> str:
    return f"feature/task-{issue_number}"


def phase_branch_name(issue_number: int, phase: int) -> str:
    if phase < 1:
        raise ValueError(f"Phase number must be >= 1, got {phase}")
    return f"{task_branch_name(issue_number)}-phase-{phase}"


# ---------------------------------------------------------------------------
# Comment and design parsing
# ---------------------------------------------------------------------------

def format_phases_comment(phases: Sequence[PhaseDescriptor]) -> str:
    lines = [
        PHASE_COMMENT_MARKER,
        "## Implementation Phases",
        "",
        f"This feature will be implemented in {len(phases)} phases:",
        "",
    ]
    for phase in sorted(phases, key=lambda p: p.order):
        description = " ".join(phase.description.split()) or phase.name
        lines.append(f"### Phase {phase.order}: {phase.name} ({phase.size})")
        lines.append("")
        lines.append(description)
        lines.append("")
        lines.append("**Files to modify:**")
        lines.extend(f"- `{path}`" for path in phase.files)
        lines.append("")
    lines.append("---")
    lines.append("*Phase tracking managed by Implementation Agent*")
    return "\n".join(lines)


def parse_phases_from_comment(body: str) -> list[PhaseDescriptor]:
    """Parse a tracking comment. Returns ``[]`` unless it lists two or more phases."""
    if PHASE_COMMENT_MARKER not in body:
        return []
    phases: list[PhaseDescriptor] = []
    for match in _COMMENT_PHASE_RE.finditer(body):
        files: list[str] = []
        for path in _BACKTICK_RE.findall(match.group(5)):
            if path not in files:
                files.append(path)
        phases.append(
            PhaseDescriptor(
                order=int(match.group(1)),
                name=match.group(2).strip(),
                size=match.group(3),
                description=match.group(4).strip(),
                files=files,
            )
        )
    phases.sort(key=lambda p: p.order)
    return phases if len(phases) >= 2 else []


def extract_phases_from_design(text: str) -> list[PhaseDescriptor]:
    """Heuristically pull phases out of technical design prose."""
    section = _DESIGN_SECTION_RE.search(text or "")
    if not section:
        return []
    phases: list[PhaseDescriptor] = []
    for match in _DESIGN_PHASE_RE.finditer(section.group(1)):
        name = match.group(2).strip()
        body = match.group(4) or ""
        files: list[str] = []
        for path in _DESIGN_SRC_FILE_RE.findall(body) + _DESIGN_BULLET_FILE_RE.findall(body):
            if path not in files:
                files.append(path)
        description = name
        for line in body.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith(("-", "*", "`")):
                continue
            description = stripped
            break
        phases.append(
            PhaseDescriptor(
                order=int(match.group(1)),
                name=name,
                size=(match.group(3) or "M").upper(),
                description=description,
                files=files,
            )
        )
    phases.sort(key=lambda p: p.order)
    return phases if len(phases) >= 2 else []


def format_artifact_comment(task_branch: str) -> str:
    return "\n".join(
        [
            ARTIFACT_COMMENT_MARKER,
            "## Artifacts",
            "",
            f"**Task branch:** `{task_branch}`",
        ]
    )


def parse_task_branch_from_artifact(body: str) -> Optional[str]:
    if ARTIFACT_COMMENT_MARKER not in body:
        return None
    match = _ARTIFACT_BRANCH_RE.search(body)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class PhaseResolver:
    """Resolve current/total phase, descriptors and the shared task branch.

    Args:
        tracker: Remote tracker holding the phase field, comments and branches.
        store: Local workflow store.
        dry_run: When set, never writes the field, branches or artifacts.
        default_branch: Base for the shared task branch.
    """

    def __init__(
        self,
        tracker: ProjectTracker,
        store: WorkflowStore,
        *,
        dry_run: bool = False,
        default_branch: str = DEFAULT_BRANCH,
    ) -> None:
        self.tracker = tracker
        self.store = store
        self.dry_run = dry_run
        self.default_branch = default_branch
        self.sources: list[tuple[str, PhaseSource]] = [
            (SOURCE_STORE, self._from_store),
            (SOURCE_COMMENT, self._from_comment),
            (SOURCE_DESIGN, self._from_design),
        ]

    # -- descriptor sources -------------------------------------------------

    def _from_store(self, issue_number: int) -> list[PhaseDescriptor]:
        phases = self.store.get_phases(issue_number)
        return phases if len(phases) >= 2 else []

    def _from_comment(self, issue_number: int) -> list[PhaseDescriptor]:
        for comment in self.tracker.get_comments(issue_number):
            phases = parse_phases_from_comment(comment.body)
            if phases:
                return phases
        return []

    def _from_design(self, issue_number: int) -> list[PhaseDescriptor]:
        design = self.store.get_design(issue_number, "tech")
        return extract_phases_from_design(design) if design else []

    def load_phases(self, issue_number: int) -> tuple[list[PhaseDescriptor], Optional[str]]:
        for name, source in self.sources:
            phases = source(issue_number)
            if phases:
                logger.debug("Loaded {} phases for #{} from {}", len(phases), issue_number, name)
                return phases, name
        return [], None

    # -- task branch --------------------------------------------------------

    def _stored_task_branch(self, issue_number: int) -> Optional[str]:
        branch = self.store.get_task_branch(issue_number)
        if branch:
            return branch
        for comment in self.tracker.get_comments(issue_number):
            branch = parse_task_branch_from_artifact(comment.body)
            if branch:
                return branch
        return None

    def _save_task_branch(self, issue_number: int, branch: str) -> None:
        self.store.set_task_branch(issue_number, branch)
        for comment in self.tracker.get_comments(issue_number):
            if ARTIFACT_COMMENT_MARKER not in comment.body:
                continue
            if _ARTIFACT_BRANCH_RE.search(comment.body):
                body = _ARTIFACT_BRANCH_RE.sub(f"**Task branch:** `{branch}`", comment.body)
            else:
                body = f"{comment.body.rstrip()}\n\n**Task branch:** `{branch}`"
            self.tracker.update_comment(issue_number, comment.id, body)
            return
        self.tracker.add_comment(issue_number, format_artifact_comment(branch))

    def _ensure_task_branch(self, issue_number: int) -> str:
        branch = task_branch_name(issue_number)
        if self.tracker.branch_exists(branch):
            logger.info("Reusing task branch {} for #{}", branch, issue_number)
        else:
            self.tracker.create_branch(branch, self.default_branch)
            logger.info("Created task branch {} from {}", branch, self.default_branch)
        return branch

    # -- public API ---------------------------------------------------------

    def resolve(self, item: WorkItem, mode: str = MODE_NEW) -> PhaseResolution:
        """Resolve phase bookkeeping for ``item``.

        Raises:
            InvalidPhaseError: If the phase field is set but malformed.
        """
        if item.phase_field:
            return self._resolve_existing(item, mode)
        if mode != MODE_NEW:
            return PhaseResolution()
        return self._initialise(item)

    def _resolve_existing(self, item: WorkItem, mode: str) -> PhaseResolution:
        parsed = parse_phase(item.phase_field)
        if parsed is None:
            raise InvalidPhaseError(f"Issue #{item.issue_number} has invalid phase field {item.phase_field!r}")
        current, total = parsed

        phases, source = self.load_phases(item.issue_number)
        if phases and len(phases) != total:
            logger.warning(
                "Issue #{} phase field says {} phases but {} lists {}; using the field",
                item.issue_number,
                total,
                source,
                len(phases),
            )

        descriptor = next((p for p in phases if p.order == current), None)
        if descriptor is None and phases:
            logger.warning("No descriptor for phase {} of #{}", current, item.issue_number)

        task_branch = self._stored_task_branch(item.issue_number)
        if task_branch is None and mode == MODE_NEW and current > 1:
            task_branch = task_branch_name(item.issue_number)
            logger.warning(
                "Task branch for #{} (phase {}/{}) not found in store or artifacts; regenerated {}",
                item.issue_number,
                current,
                total,
                task_branch,
            )
            if not self.dry_run:
                self.store.set_task_branch(item.issue_number, task_branch)

        return PhaseResolution(
            current=current,
            total=total,
            phase=descriptor,
            phases=phases,
            task_branch=task_branch,
            source=source,
        )

    def _initialise(self, item: WorkItem) -> PhaseResolution:
        phases, source = self.load_phases(item.issue_number)
        if len(phases) < 2:
            return PhaseResolution()

        total = len(phases)
        field_value = format_phase(1, total)
        if self.dry_run:
            logger.info("[dry-run] Would start #{} at phase {}", item.issue_number, field_value)
            return PhaseResolution(
                current=1,
                total=total,
                phase=phases[0],
                phases=phases,
                task_branch=task_branch_name(item.issue_number),
                source=source,
            )

        self.tracker.set_phase_field(item.id, field_value)
        item.phase_field = field_value
        if source != SOURCE_STORE:
            self.store.save_phases(item.issue_number, phases)
        if source == SOURCE_DESIGN:
            self.tracker.add_comment(item.issue_number, format_phases_comment(phases))

        branch = self._ensure_task_branch(item.issue_number)
        self._save_task_branch(item.issue_number, branch)
        logger.info("Issue #{} split into {} phases; starting phase 1", item.issue_number, total)
        return PhaseResolution(
            current=1,
            total=total,
            phase=phases[0],
            phases=phases,
            task_branch=branch,
            source=source,
        )

    def advance(self, item: WorkItem, resolution: PhaseResolution) -> PhaseState:
        """Move to the next phase after a phase PR merged.

        Raises:
            InvalidPhaseError: If there is no next phase.
        """
        if resolution.current is None or resolution.total is None:
            raise InvalidPhaseError(f"Issue #{item.issue_number} is not a multi-phase item")
        state = PhaseState(resolution.current + 1, resolution.total, resolution.phases)
        if not self.dry_run:
            self.tracker.set_phase_field(item.id, state.field_value)
        item.phase_field = state.field_value
        return state
