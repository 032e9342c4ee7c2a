"""File-based document store for per-item workflow records.

Records live in a single YAML file (``workflow_items.yaml``) inside the
project's ``.agent_workflow/`` directory, keyed by issue number. All writes go
through :meth:`WorkflowStore.transaction`, which holds an exclusive
``filelock.FileLock`` for the whole read-modify-write, so a read-and-null done
inside one transaction is atomic across threads and processes.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock

from .constants import STORE_FILE, STORE_LOCK_FILE, STORE_LOCK_TIMEOUT
from .errors import WorkflowError
from .io_utils import _atomic_write_yaml, _load_yaml_with_error
from .models import PhaseDescriptor, WorkItem
from .utils import _now_iso


@dataclass
class ItemRecord:
    issue_number: int
    item_id: Optional[str] = None
    title: str = ""
    item_type: Optional[str] = None
    status: Optional[str] = None
    phases: list[PhaseDescriptor] = field(default_factory=list)
    task_branch: Optional[str] = None
    source_status: Optional[str] = None
    designs: dict[str, str] = field(default_factory=dict)
    open_pr: Optional[int] = None
    last_merged_pr: Optional[dict[str, Any]] = None
    revert_pr: Optional[dict[str, Any]] = None
    history: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "item_id": self.item_id,
            "title": self.title,
            "item_type": self.item_type,
            "status": self.status,
            "phases": [p.to_dict() for p in self.phases],
            "task_branch": self.task_branch,
            "source_status": self.source_status,
            "designs": dict(self.designs),
            "open_pr": self.open_pr,
            "last_merged_pr": self.last_merged_pr,
            "revert_pr": self.revert_pr,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ItemRecord":
        phases: list[PhaseDescriptor] = []
        for raw in data.get("phases") or []:
            if isinstance(raw, dict) and "order" in raw:
                phases.append(PhaseDescriptor.from_dict(raw))
        designs = data.get("designs") if isinstance(data.get("designs"), dict) else {}
        history = data.get("history") if isinstance(data.get("history"), list) else []
        return cls(
            issue_number=int(data["issue_number"]),
            item_id=data.get("item_id") or None,
            title=str(data.get("title") or ""),
            item_type=data.get("item_type") or None,
            status=data.get("status") or None,
            phases=sorted(phases, key=lambda p: p.order),
            task_branch=data.get("task_branch") or None,
            source_status=data.get("source_status") or None,
            designs={str(k): str(v) for k, v in designs.items()},
            open_pr=int(data["open_pr"]) if data.get("open_pr") is not None else None,
            last_merged_pr=data.get("last_merged_pr") or None,
            revert_pr=data.get("revert_pr") or None,
            history=history,
        )


@dataclass
class ApprovalRequest:
    """A submitted feature or bug request waiting for operator approval."""

    id: str
    title: str
    item_type: str = "feature"
    description: str = ""
    approval_token: Optional[str] = None
    issue_number: Optional[int] = None
    issue_url: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "item_type": self.item_type,
            "description": self.description,
            "approval_token": self.approval_token,
            "issue_number": self.issue_number,
            "issue_url": self.issue_url,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApprovalRequest":
        issue_number = data.get("issue_number")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            item_type=str(data.get("item_type") or "feature"),
            description=str(data.get("description") or ""),
            approval_token=data.get("approval_token") or None,
            issue_number=int(issue_number) if issue_number is not None else None,
            issue_url=data.get("issue_url") or None,
            created_at=str(data.get("created_at") or ""),
        )


class _StoreTx:
    """In-memory view of all records, flushed when the transaction exits."""

    def __init__(self, records: dict[int, ItemRecord], requests: dict[str, ApprovalRequest]) -> None:
        self.records = records
        self.requests = requests
        self.dirty = False

    def get(self, issue_number: int) -> Optional[ItemRecord]:
        return self.records.get(issue_number)

    def ensure(self, issue_number: int) -> ItemRecord:
        record = self.records.get(issue_number)
        if record is None:
            record = ItemRecord(issue_number=issue_number)
            self.records[issue_number] = record
            self.dirty = True
        return record

    def mark_dirty(self) -> None:
        self.dirty = True


class WorkflowStore:
    """Thread- and process-safe store for :class:`ItemRecord` objects.

    Parameters
    ----------
    state_dir:
        Path to the ``.agent_workflow/`` directory for the project.
    """

    def __init__(self, state_dir: Path, *, lock_timeout: float = STORE_LOCK_TIMEOUT) -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / STORE_FILE
        self._lock = FileLock(str(state_dir / STORE_LOCK_FILE), timeout=lock_timeout)

    def _load(self) -> _StoreTx:
        data, err = _load_yaml_with_error(self._store_path, {})
        if err:
            # Refuse to continue; saving would overwrite the corrupt file.
            raise WorkflowError(f"Unable to read workflow store: {err}")
        records: dict[int, ItemRecord] = {}
        for raw in data.get("items") or []:
            if isinstance(raw, dict) and raw.get("issue_number") is not None:
                record = ItemRecord.from_dict(raw)
                records[record.issue_number] = record
        requests: dict[str, ApprovalRequest] = {}
        for raw in data.get("requests") or []:
            if isinstance(raw, dict) and raw.get("id"):
                request = ApprovalRequest.from_dict(raw)
                requests[request.id] = request
        return _StoreTx(records, requests)

    def _save(self, tx: _StoreTx) -> None:
        payload = {
            "version": 1,
            "items": [tx.records[n].to_dict() for n in sorted(tx.records)],
            "requests": [r.to_dict() for r in tx.requests.values()],
        }
        _atomic_write_yaml(self._store_path, payload)

    @contextmanager
    def transaction(self) -> Iterator[_StoreTx]:
        """Acquire the lock, load records, yield a transaction, and save on exit.

        Usage::

            with store.transaction() as tx:
                record = tx.ensure(42)
                record.task_branch = "feature/task-42"
                tx.mark_dirty()
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            tx = self._load()
            yield tx
            if tx.dirty:
                self._save(tx)

    def get(self, issue_number: int) -> Optional[ItemRecord]:
        with self.transaction() as tx:
            return tx.get(issue_number)

    def list(self) -> list[ItemRecord]:
        with self.transaction() as tx:
            return [tx.records[n] for n in sorted(tx.records)]

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        with self.transaction() as tx:
            return tx.requests.get(request_id)

    def add_request(self, request: ApprovalRequest) -> ApprovalRequest:
        with self.transaction() as tx:
            if not request.created_at:
                request.created_at = _now_iso()
            tx.requests[request.id] = request
            tx.mark_dirty()
        return request

    # -- item sync --------------------------------------------------------

    def upsert_item(self, item: WorkItem) -> ItemRecord:
        """Mirror tracker fields into the local record."""
        with self.transaction() as tx:
            record = tx.ensure(item.issue_number)
            record.item_id = item.id
            record.title = item.title or record.title
            record.item_type = item.item_type
            record.status = item.status
            tx.mark_dirty()
            return record

    def sync_status(self, issue_number: int, status: str) -> None:
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.status = status
            tx.mark_dirty()

    # -- phases and branches ----------------------------------------------

    def get_phases(self, issue_number: int) -> list[PhaseDescriptor]:
        record = self.get(issue_number)
        return list(record.phases) if record else []

    def save_phases(self, issue_number: int, phases: list[PhaseDescriptor]) -> None:
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.phases = sorted(phases, key=lambda p: p.order)
            tx.mark_dirty()

    def get_task_branch(self, issue_number: int) -> Optional[str]:
        record = self.get(issue_number)
        return record.task_branch if record else None

    def set_task_branch(self, issue_number: int, branch: Optional[str]) -> None:
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.task_branch = branch
            tx.mark_dirty()

    def set_open_pr(self, issue_number: int, pr_number: Optional[int]) -> None:
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.open_pr = pr_number
            tx.mark_dirty()

    def set_last_merged_pr(
        self,
        issue_number: int,
        pr_number: int,
        merge_sha: str,
        phase: Optional[int] = None,
        *,
        completed: bool = True,
    ) -> None:
        """Record a merge. ``completed=False`` marks follow-up writes as still pending."""
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.last_merged_pr = {
                "pr_number": pr_number,
                "merge_sha": merge_sha,
                "phase": phase,
                "merged_at": _now_iso(),
                "completed": completed,
            }
            tx.mark_dirty()

    def update_last_merged_pr(self, issue_number: int, **changes: Any) -> None:
        with self.transaction() as tx:
            record = tx.get(issue_number)
            if record is None or record.last_merged_pr is None:
                return
            record.last_merged_pr.update(changes)
            tx.mark_dirty()

    def set_revert_pr(
        self,
        issue_number: int,
        revert_pr_number: int,
        reverted_pr_number: Optional[int],
        *,
        merged: bool = False,
    ) -> None:
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.revert_pr = {"pr_number": revert_pr_number, "reverts": reverted_pr_number, "merged": merged}
            tx.mark_dirty()

    # -- designs and source document --------------------------------------

    def get_design(self, issue_number: int, kind: str) -> Optional[str]:
        record = self.get(issue_number)
        return record.designs.get(kind) if record else None

    def save_design(self, issue_number: int, kind: str, text: str) -> None:
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.designs[kind] = text
            tx.mark_dirty()

    def set_source_status(self, issue_number: int, source_status: str) -> None:
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.source_status = source_status
            tx.mark_dirty()

    def append_history(
        self,
        issue_number: int,
        action: str,
        description: str,
        actor: Optional[str] = None,
    ) -> None:
        with self.transaction() as tx:
            record = tx.ensure(issue_number)
            record.history.append(
                {"action": action, "description": description, "actor": actor, "at": _now_iso()}
            )
            tx.mark_dirty()
