"""Project tracker interface and a YAML-file implementation.

The tracker owns item status, review status and the phase field. Every
mutation is a single call that is atomic on its own; callers compose them
without cross-call transactions.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock
from loguru import logger

from .constants import (
    DEFAULT_BRANCH,
    ITEM_TYPE_FEATURE,
    STATUS_BACKLOG,
    STORE_LOCK_TIMEOUT,
    TRACKER_FILE,
    TRACKER_LOCK_FILE,
)
from .errors import ItemNotFoundError, TrackerError
from .io_utils import _atomic_write_yaml, _load_yaml_with_error
from .models import WorkItem
from .utils import _now_iso


@dataclass
class Comment:
    id: int
    body: str
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Comment":
        return cls(id=int(data["id"]), body=str(data.get("body") or ""), created_at=str(data.get("created_at") or ""))


@dataclass
class PullRequest:
    number: int
    head: str
    base: str
    title: str = ""
    body: str = ""
    state: str = "open"  # open | merged | closed
    merge_sha: Optional[str] = None

    @property
    def merged(self) -> bool:
        return self.state == "merged"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PullRequest":
        return cls(
            number=int(data["number"]),
            head=str(data.get("head") or ""),
            base=str(data.get("base") or ""),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            state=str(data.get("state") or "open"),
            merge_sha=data.get("merge_sha") or None,
        )


class ProjectTracker(ABC):
    """Remote source of truth for work items, comments, branches and PRs."""

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[WorkItem]:
        raise NotImplementedError

    @abstractmethod
    def find_item_by_issue(self, issue_number: int) -> Optional[WorkItem]:
        raise NotImplementedError

    @abstractmethod
    def list_items(self, status: Optional[str] = None) -> list[WorkItem]:
        raise NotImplementedError

    @abstractmethod
    def create_item(self, title: str, item_type: str = ITEM_TYPE_FEATURE, status: str = STATUS_BACKLOG) -> WorkItem:
        raise NotImplementedError

    @abstractmethod
    def update_status(self, item_id: str, status: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_review_status(self, item_id: str, review_status: Optional[str]) -> None:
        raise NotImplementedError

    def clear_review_status(self, item_id: str) -> None:
        self.update_review_status(item_id, None)

    @abstractmethod
    def set_phase_field(self, item_id: str, value: Optional[str]) -> None:
        raise NotImplementedError

    def clear_phase_field(self, item_id: str) -> None:
        self.set_phase_field(item_id, None)

    @abstractmethod
    def get_comments(self, issue_number: int) -> list[Comment]:
        raise NotImplementedError

    @abstractmethod
    def add_comment(self, issue_number: int, body: str) -> Comment:
        raise NotImplementedError

    @abstractmethod
    def update_comment(self, issue_number: int, comment_id: int, body: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def branch_exists(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def create_branch(self, name: str, base: str = DEFAULT_BRANCH) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_branch(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_pr(self, pr_number: int) -> Optional[PullRequest]:
        raise NotImplementedError

    @abstractmethod
    def create_pull_request(self, head: str, base: str, title: str, body: str = "") -> PullRequest:
        raise NotImplementedError

    @abstractmethod
    def merge_pull_request(self, pr_number: int) -> str:
        """Merge a PR and return the merge commit sha.

        Merging an already-merged PR returns its existing sha.
        """
        raise NotImplementedError

    @abstractmethod
    def create_revert_pr(self, merge_sha: str, pr_number: int, issue_number: int) -> PullRequest:
        """Open a PR that reverts ``merge_sha`` on the reverted PR's base branch.

        Raises:
            TrackerError: If the revert cannot be prepared (conflicts, missing base).
        """
        raise NotImplementedError


def _empty_tracker_state() -> dict[str, Any]:
    return {
        "next_issue": 1,
        "next_comment": 1,
        "next_pr": 1,
        "items": [],
        "comments": {},
        "branches": [DEFAULT_BRANCH],
        "pull_requests": [],
    }


class FileTracker(ProjectTracker):
    """Tracker kept in ``tracker.yaml`` under the state directory.

    Used by the CLI for local runs and by the tests. Each call takes the file
    lock, so separate processes see consistent state.
    """

    def __init__(self, state_dir: Path, *, lock_timeout: float = STORE_LOCK_TIMEOUT) -> None:
        self.state_dir = state_dir
        self.path = state_dir / TRACKER_FILE
        self._lock = FileLock(str(state_dir / TRACKER_LOCK_FILE), timeout=lock_timeout)

    def _load(self) -> dict[str, Any]:
        data, err = _load_yaml_with_error(self.path, _empty_tracker_state())
        if err:
            raise TrackerError(f"Unable to read tracker state: {err}")
        state = _empty_tracker_state()
        state.update(data)
        return state

    @contextmanager
    def _read(self) -> Iterator[dict[str, Any]]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            yield self._load()

    @contextmanager
    def _mutate(self) -> Iterator[dict[str, Any]]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            state = self._load()
            yield state
            _atomic_write_yaml(self.path, state)

    @staticmethod
    def _item_row(state: dict[str, Any], item_id: str) -> dict[str, Any]:
        for row in state["items"]:
            if str(row.get("id")) == item_id:
                return row
        raise TrackerError(f"Unknown project item {item_id}")

    # -- items ------------------------------------------------------------

    def get_item(self, item_id: str) -> Optional[WorkItem]:
        with self._read() as state:
            for row in state["items"]:
                if str(row.get("id")) == item_id:
                    return WorkItem.from_dict(row)
        return None

    def find_item_by_issue(self, issue_number: int) -> Optional[WorkItem]:
        with self._read() as state:
            for row in state["items"]:
                if int(row.get("issue_number") or 0) == issue_number:
                    return WorkItem.from_dict(row)
        return None

    def list_items(self, status: Optional[str] = None) -> list[WorkItem]:
        with self._read() as state:
            items = [WorkItem.from_dict(row) for row in state["items"]]
        if status is not None:
            items = [item for item in items if item.status == status]
        return items

    def create_item(self, title: str, item_type: str = ITEM_TYPE_FEATURE, status: str = STATUS_BACKLOG) -> WorkItem:
        with self._mutate() as state:
            number = int(state["next_issue"])
            state["next_issue"] = number + 1
            item = WorkItem(
                id=f"item-{number}",
                issue_number=number,
                title=title,
                status=status,
                item_type=item_type,
            )
            state["items"].append(item.to_dict())
        logger.info("Created project item {} for issue #{}", item.id, number)
        return item

    def update_status(self, item_id: str, status: str) -> None:
        with self._mutate() as state:
            self._item_row(state, item_id)["status"] = status

    def update_review_status(self, item_id: str, review_status: Optional[str]) -> None:
        with self._mutate() as state:
            self._item_row(state, item_id)["review_status"] = review_status

    def set_phase_field(self, item_id: str, value: Optional[str]) -> None:
        with self._mutate() as state:
            self._item_row(state, item_id)["phase_field"] = value

    # -- comments ---------------------------------------------------------

    def get_comments(self, issue_number: int) -> list[Comment]:
        with self._read() as state:
            rows = state["comments"].get(str(issue_number)) or []
        return [Comment.from_dict(row) for row in rows]

    def add_comment(self, issue_number: int, body: str) -> Comment:
        with self._mutate() as state:
            comment_id = int(state["next_comment"])
            state["next_comment"] = comment_id + 1
            comment = Comment(id=comment_id, body=body, created_at=_now_iso())
            state["comments"].setdefault(str(issue_number), []).append(asdict(comment))
        return comment

    def update_comment(self, issue_number: int, comment_id: int, body: str) -> None:
        with self._mutate() as state:
            for row in state["comments"].get(str(issue_number)) or []:
                if int(row["id"]) == comment_id:
                    row["body"] = body
                    return
        raise TrackerError(f"Comment {comment_id} not found on issue #{issue_number}")

    # -- branches and pull requests ---------------------------------------

    def branch_exists(self, name: str) -> bool:
        with self._read() as state:
            return name in state["branches"]

    def create_branch(self, name: str, base: str = DEFAULT_BRANCH) -> None:
        with self._mutate() as state:
            if base not in state["branches"]:
                raise TrackerError(f"Base branch {base} does not exist")
            if name not in state["branches"]:
                state["branches"].append(name)

    def delete_branch(self, name: str) -> bool:
        with self._mutate() as state:
            if name not in state["branches"]:
                return False
            state["branches"].remove(name)
            return True

    def get_pr(self, pr_number: int) -> Optional[PullRequest]:
        with self._read() as state:
            for row in state["pull_requests"]:
                if int(row["number"]) == pr_number:
                    return PullRequest.from_dict(row)
        return None

    def create_pull_request(self, head: str, base: str, title: str, body: str = "") -> PullRequest:
        with self._mutate() as state:
            for name in (head, base):
                if name not in state["branches"]:
                    raise TrackerError(f"Branch {name} does not exist")
            number = int(state["next_pr"])
            state["next_pr"] = number + 1
            pr = PullRequest(number=number, head=head, base=base, title=title, body=body)
            state["pull_requests"].append(asdict(pr))
        logger.info("Opened PR #{} {} -> {}", number, head, base)
        return pr

    def merge_pull_request(self, pr_number: int) -> str:
        with self._mutate() as state:
            for row in state["pull_requests"]:
                if int(row["number"]) != pr_number:
                    continue
                if row.get("state") == "merged":
                    return str(row.get("merge_sha") or "")
                if row.get("state") == "closed":
                    raise TrackerError(f"PR #{pr_number} is closed")
                sha = hashlib.sha1(f"{pr_number}:{row.get('head')}:{_now_iso()}".encode("utf-8")).hexdigest()
                row["state"] = "merged"
                row["merge_sha"] = sha
                return sha
        raise TrackerError(f"PR #{pr_number} not found")

    def create_revert_pr(self, merge_sha: str, pr_number: int, issue_number: int) -> PullRequest:
        head = f"revert-{pr_number}-{merge_sha[:7]}"
        with self._mutate() as state:
            original = next((row for row in state["pull_requests"] if int(row["number"]) == pr_number), None)
            if original is None:
                raise TrackerError(f"PR #{pr_number} not found")
            base = str(original.get("base") or DEFAULT_BRANCH)
            if base not in state["branches"]:
                raise TrackerError(f"Base branch {base} of PR #{pr_number} no longer exists")
            for row in state["pull_requests"]:
                if row.get("head") == head and row.get("state") == "open":
                    return PullRequest.from_dict(row)
            if head not in state["branches"]:
                state["branches"].append(head)
            number = int(state["next_pr"])
            state["next_pr"] = number + 1
            pr = PullRequest(
                number=number,
                head=head,
                base=base,
                title=f"Revert PR #{pr_number}",
                body=f"Reverts {merge_sha} from PR #{pr_number}.\n\nPart of #{issue_number}",
            )
            state["pull_requests"].append(asdict(pr))
        logger.info("Opened revert PR #{} for PR #{}", number, pr_number)
        return pr


def require_item(tracker: ProjectTracker, issue_number: int) -> WorkItem:
    """Look up the project item for an issue.

    Raises:
        ItemNotFoundError: If the issue has no project item.
    """
    item = tracker.find_item_by_issue(issue_number)
    if item is None:
        raise ItemNotFoundError(issue_number)
    return item
