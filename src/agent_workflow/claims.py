"""Single-use approval tokens with atomic claim-and-null semantics."""

from __future__ import annotations

import secrets
from typing import Optional

from loguru import logger

from .store import WorkflowStore


class ApprovalClaimStore:
    """Issue, claim and restore approval tokens held in the workflow store.

    A claim reads the token and nulls it inside one store transaction, so of
    any number of concurrent claims on the same request exactly one sees the
    token.
    """

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    def issue(self, request_id: str) -> str:
        token = secrets.token_urlsafe(24)
        with self.store.transaction() as tx:
            request = tx.requests.get(request_id)
            if request is None:
                raise KeyError(request_id)
            request.approval_token = token
            tx.mark_dirty()
        return token

    def claim(self, request_id: str) -> Optional[str]:
        """Atomically take the token. Returns ``None`` when already claimed."""
        with self.store.transaction() as tx:
            request = tx.requests.get(request_id)
            if request is None or not request.approval_token:
                return None
            token = request.approval_token
            request.approval_token = None
            tx.mark_dirty()
        logger.debug("Claimed approval token for request {}", request_id)
        return token

    def restore(self, request_id: str, token: str) -> None:
        """Put a claimed token back after a downstream failure."""
        with self.store.transaction() as tx:
            request = tx.requests.get(request_id)
            if request is None:
                logger.warning("Cannot restore token: request {} no longer exists", request_id)
                return
            if request.approval_token:
                return
            request.approval_token = token
            tx.mark_dirty()
        logger.info("Restored approval token for request {} so it can be retried", request_id)
