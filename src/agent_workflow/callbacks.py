"""Decode and dispatch chat button callbacks.

Callback data is a colon-delimited ``action:arg1:arg2`` string, at most 64
ASCII bytes. The router acknowledges the press before doing any slow work,
then runs the handler on its own thread pool and waits at most
``timeout_seconds`` for it. A handler that overruns keeps running; only the
wait is abandoned.
"""

from __future__ import annotations

import string
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loguru import logger

from .channel import ChatChannel, undo_button
from .constants import (
    CODE_TO_STATUS,
    DEFAULT_CALLBACK_WORKERS,
    DEFAULT_HANDLER_TIMEOUT_SECONDS,
    DESIGN_TYPE_STATUS,
    ITEM_TYPE_BUG,
    ITEM_TYPE_FEATURE,
)
from .errors import CallbackParseError, UnknownActionError
from .models import CONTENTION_OUTCOMES, ActionResult, Outcome
from .phases import parse_phase
from .undo import DESIGN_REVIEW_ACTIONS, UNDO_DESIGN_CHANGES, UNDO_DESIGN_REVIEW, UNDO_REQUEST_CHANGES, UndoToken
from .utils import truncate
from .workflow import WorkflowService

UNKNOWN_ACTION_MARKER = "⚠️ Unrecognized action"


def _int_arg(value: str) -> int:
    if not (value.isascii() and value.isdigit()):
        raise ValueError("expected ASCII digits")
    return int(value)


def _str_arg(value: str) -> str:
    if not value:
        raise ValueError("must not be empty")
    return value


def _status_code_arg(value: str) -> str:
    if value not in CODE_TO_STATUS:
        raise ValueError(f"unknown status code {value!r}")
    return value


def _review_action_arg(value: str) -> str:
    if value not in DESIGN_REVIEW_ACTIONS:
        raise ValueError(f"expected one of {', '.join(DESIGN_REVIEW_ACTIONS)}")
    return value


def _design_type_arg(value: str) -> str:
    if value not in DESIGN_TYPE_STATUS:
        raise ValueError(f"expected one of {', '.join(DESIGN_TYPE_STATUS)}")
    return value


def _phase_arg(value: str) -> str:
    if parse_phase(value) is None:
        raise ValueError("expected <current>/<total>")
    return value


def _sha_arg(value: str) -> str:
    if len(value) < 7 or not all(c in string.hexdigits for c in value):
        raise ValueError("expected a hex commit prefix")
    return value.lower()


ArgSpec = tuple[str, Callable[[str], Any]]

# action -> (required args, optional args)
ACTION_SPECS: dict[str, tuple[tuple[ArgSpec, ...], tuple[ArgSpec, ...]]] = {
    "approve_request": ((("request_id", _str_arg),), ()),
    "approve_request_bl": ((("request_id", _str_arg),), ()),
    "approve_bug": ((("request_id", _str_arg),), ()),
    "approve_bug_bl": ((("request_id", _str_arg),), ()),
    "delete_request": ((("request_id", _str_arg),), ()),
    "delete_bug": ((("request_id", _str_arg),), ()),
    "route": ((("issue", _int_arg), ("destination", _str_arg)), ()),
    "approve": ((("issue", _int_arg),), (("status", _status_code_arg),)),
    "changes": ((("issue", _int_arg),), (("status", _status_code_arg),)),
    "reject": ((("issue", _int_arg),), (("status", _status_code_arg),)),
    "clarified": ((("issue", _int_arg),), ()),
    "merge": ((("issue", _int_arg), ("pr", _int_arg)), ()),
    "merge_final": ((("issue", _int_arg), ("pr", _int_arg)), ()),
    "reqchanges": ((("issue", _int_arg), ("pr", _int_arg)), ()),
    "design_approve": ((("pr", _int_arg), ("issue", _int_arg), ("design_type", _design_type_arg)), ()),
    "design_changes": ((("pr", _int_arg), ("issue", _int_arg), ("design_type", _design_type_arg)), ()),
    "rv": ((("issue", _int_arg), ("pr", _int_arg), ("sha", _sha_arg)), (("phase", _phase_arg),)),
    "merge_rv": ((("issue", _int_arg), ("revert_pr", _int_arg)), ()),
    UNDO_REQUEST_CHANGES: ((("issue", _int_arg), ("pr", _int_arg), ("ts", _int_arg)), ()),
    UNDO_DESIGN_REVIEW: (
        (("issue", _int_arg), ("action", _review_action_arg), ("status", _status_code_arg), ("ts", _int_arg)),
        (),
    ),
    UNDO_DESIGN_CHANGES: (
        (("pr", _int_arg), ("issue", _int_arg), ("design_type", _design_type_arg), ("ts", _int_arg)),
        (),
    ),
}

PROCESSING_TEXT = {
    "approve_request": "⏳ Creating issue...",
    "approve_request_bl": "⏳ Creating issue...",
    "approve_bug": "⏳ Creating issue...",
    "approve_bug_bl": "⏳ Creating issue...",
    "approve": "⏳ Approving...",
    "design_approve": "⏳ Merging design...",
    "merge": "⏳ Merging...",
    "merge_final": "⏳ Merging final PR...",
    "rv": "⏳ Opening revert PR...",
    "merge_rv": "⏳ Merging revert...",
    UNDO_REQUEST_CHANGES: "⏳ Undoing...",
    UNDO_DESIGN_REVIEW: "⏳ Undoing...",
    UNDO_DESIGN_CHANGES: "⏳ Undoing...",
}

OUTCOME_ICONS = {
    Outcome.SUCCESS: "✅",
    Outcome.ALREADY_DONE: "ℹ️",
    Outcome.EXPIRED: "⏰",
    Outcome.CONTENDED: "⏳",
    Outcome.NO_LONGER_VALID: "⚠️",
}


@dataclass(frozen=True)
class ParsedCallback:
    action: str
    args: dict[str, Any]
    raw: str


@dataclass
class CallbackQuery:
    """A button press as delivered by the chat platform."""

    id: str
    data: str
    message_id: Optional[int] = None
    message_text: str = ""
    user: Optional[str] = None


def parse_callback(raw: Optional[str]) -> ParsedCallback:
    """Decode callback data.

    Raises:
        UnknownActionError: If the action name is not recognised.
        CallbackParseError: If the arguments do not match the action.
    """
    text = (raw or "").strip()
    if not text:
        raise CallbackParseError("Empty callback data", raw or "")
    action, *values = [part.strip() for part in text.split(":")]
    action = action.lower()
    if action not in ACTION_SPECS:
        raise UnknownActionError(f"Unknown action {action!r}", text, action)

    required, optional = ACTION_SPECS[action]
    if not len(required) <= len(values) <= len(required) + len(optional):
        expected = ":".join(["<action>"] + [f"<{name}>" for name, _ in required])
        raise CallbackParseError(
            f"Expected {expected} for {action}, got {len(values)} arguments",
            text,
            action,
        )

    args: dict[str, Any] = {}
    for (name, convert), value in zip(required + optional, values):
        try:
            args[name] = convert(value)
        except ValueError as exc:
            raise CallbackParseError(f"Invalid {name} {value!r}: {exc}", text, action) from exc
    return ParsedCallback(action=action, args=args, raw=text)


class CallbackRouter:
    """Route parsed callbacks to :class:`WorkflowService` operations.

    Args:
        service: Workflow operations.
        channel: Chat channel used to answer and edit the source message.
        timeout_seconds: How long :meth:`handle` waits for a handler.
        max_workers: Size of the handler thread pool.
    """

    def __init__(
        self,
        service: WorkflowService,
        channel: ChatChannel,
        *,
        timeout_seconds: float = DEFAULT_HANDLER_TIMEOUT_SECONDS,
        max_workers: int = DEFAULT_CALLBACK_WORKERS,
    ) -> None:
        self.service = service
        self.channel = channel
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="callback")
        self._handlers: dict[str, Callable[[ParsedCallback, CallbackQuery], ActionResult]] = {
            "approve_request": self._approve_request,
            "approve_request_bl": self._approve_request,
            "approve_bug": self._approve_request,
            "approve_bug_bl": self._approve_request,
            "delete_request": self._delete_request,
            "delete_bug": self._delete_request,
            "route": self._route,
            "approve": self._review,
            "changes": self._review,
            "reject": self._review,
            "clarified": self._clarified,
            "merge": self._merge,
            "merge_final": self._merge_final,
            "reqchanges": self._request_changes,
            "design_approve": self._design_approve,
            "design_changes": self._design_changes,
            "rv": self._revert,
            "merge_rv": self._merge_revert,
            UNDO_REQUEST_CHANGES: self._undo_request_changes,
            UNDO_DESIGN_REVIEW: self._undo_design_review,
            UNDO_DESIGN_CHANGES: self._undo_design_changes,
        }

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    # -- entry point --------------------------------------------------------

    def handle(self, query: CallbackQuery) -> Optional[ActionResult]:
        """Acknowledge, dispatch and wait for a callback.

        Returns the handler result, or ``None`` if the handler is still
        running when the deadline passes.
        """
        try:
            parsed = parse_callback(query.data)
        except UnknownActionError as exc:
            logger.warning(
                "Unknown callback action {!r} (raw={!r}, user={}, message={})",
                exc.action,
                exc.raw,
                query.user,
                query.message_id,
            )
            self.channel.answer_callback(query.id, f"⚠️ Unknown action: {truncate(exc.raw, 50)}")
            self._flag_unrecognized(query, str(exc))
            return ActionResult.fail(Outcome.INVALID, str(exc))
        except CallbackParseError as exc:
            logger.error("Malformed callback {!r}: {}", exc.raw, exc)
            self.channel.answer_callback(query.id, f"⚠️ Invalid action: {truncate(str(exc), 150)}")
            self._flag_unrecognized(query, str(exc))
            return ActionResult.fail(Outcome.INVALID, str(exc))

        self.channel.answer_callback(query.id, PROCESSING_TEXT.get(parsed.action, "⏳ Processing..."))
        if query.message_id is not None:
            self.channel.edit_message(query.message_id, f"{query.message_text}\n\n⏳ Processing...".strip())

        future = self._executor.submit(self._run, parsed, query)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            logger.warning(
                "Handler for {!r} still running after {}s; leaving it in the background",
                parsed.raw,
                self.timeout_seconds,
            )
            return None

    def _flag_unrecognized(self, query: CallbackQuery, detail: str) -> None:
        if query.message_id is None or UNKNOWN_ACTION_MARKER in query.message_text:
            return
        self.channel.edit_message(
            query.message_id,
            f"{query.message_text}\n\n{UNKNOWN_ACTION_MARKER}\n{detail}\nRaw: {query.data}".strip(),
        )

    def _run(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        handler = self._handlers[parsed.action]
        try:
            result = handler(parsed, query)
        except Exception as exc:
            logger.exception("Callback {!r} failed", parsed.raw)
            result = ActionResult.fail(
                Outcome.FAILED,
                f"{parsed.action} failed: {exc}",
                issue_number=parsed.args.get("issue"),
            )
        self._report(query, parsed, result)
        return result

    def _report(self, query: CallbackQuery, parsed: ParsedCallback, result: ActionResult) -> None:
        if result.outcome == Outcome.SUCCESS:
            logger.info("{} -> {}", parsed.raw, result.message)
        elif result.outcome in CONTENTION_OUTCOMES or result.outcome == Outcome.NO_LONGER_VALID:
            logger.warning("{} -> {}: {}", parsed.raw, result.outcome.value, result.message)
        else:
            logger.error("{} -> {}: {}", parsed.raw, result.outcome.value, result.message)

        icon = OUTCOME_ICONS.get(result.outcome, "❌")
        text = f"{query.message_text}\n\n{icon} {result.message}".strip()
        buttons = list(result.buttons or []) or None
        if result.undo_callback:
            buttons = undo_button(result.undo_callback, self.service.undo.window_ms // 1000) + (buttons or [])
        if query.message_id is not None:
            self.channel.edit_message(query.message_id, text, buttons)
        else:
            self.channel.send_message(text, buttons)

    # -- handlers -----------------------------------------------------------

    def _approve_request(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        return self.service.approve_request(
            parsed.args["request_id"],
            actor=query.user,
            to_backlog=parsed.action.endswith("_bl"),
            item_type=ITEM_TYPE_BUG if parsed.action.startswith("approve_bug") else ITEM_TYPE_FEATURE,
        )

    def _delete_request(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        item_type = ITEM_TYPE_BUG if parsed.action == "delete_bug" else ITEM_TYPE_FEATURE
        return self.service.delete_request(parsed.args["request_id"], actor=query.user, item_type=item_type)

    def _route(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        return self.service.route(parsed.args["issue"], parsed.args["destination"], actor=query.user)

    def _review(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        code = parsed.args.get("status")
        return self.service.review_design(
            parsed.args["issue"],
            parsed.action,
            captured_status=CODE_TO_STATUS[code] if code else None,
            actor=query.user,
        )

    def _clarified(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        return self.service.mark_clarified(parsed.args["issue"], actor=query.user)

    def _merge(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        return self.service.merge_pr(parsed.args["issue"], parsed.args["pr"], actor=query.user)

    def _merge_final(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        return self.service.merge_final_pr(parsed.args["issue"], parsed.args["pr"], actor=query.user)

    def _request_changes(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        return self.service.request_changes(parsed.args["issue"], parsed.args["pr"], actor=query.user)

    def _undo_request_changes(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        token = UndoToken(
            kind=UNDO_REQUEST_CHANGES,
            issue_number=parsed.args["issue"],
            pr_number=parsed.args["pr"],
            issued_at_ms=parsed.args["ts"],
        )
        return self.service.undo_request_changes(token, actor=query.user)

    def _undo_design_review(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        token = UndoToken(
            kind=UNDO_DESIGN_REVIEW,
            issue_number=parsed.args["issue"],
            action=parsed.args["action"],
            previous_status=CODE_TO_STATUS[parsed.args["status"]],
            issued_at_ms=parsed.args["ts"],
        )
        return self.service.undo_design_review(token, actor=query.user)

    def _undo_design_changes(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        token = UndoToken(
            kind=UNDO_DESIGN_CHANGES,
            issue_number=parsed.args["issue"],
            pr_number=parsed.args["pr"],
            design_type=parsed.args["design_type"],
            issued_at_ms=parsed.args["ts"],
        )
        return self.service.undo_design_pr_changes(token, actor=query.user)

    def _design_approve(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        args = parsed.args
        return self.service.approve_design_pr(args["issue"], args["pr"], args["design_type"], actor=query.user)

    def _design_changes(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        args = parsed.args
        return self.service.request_design_pr_changes(args["issue"], args["pr"], args["design_type"], actor=query.user)

    def _revert(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        args = parsed.args
        return self.service.revert_merge(
            args["issue"],
            args["pr"],
            short_sha=args["sha"],
            phase=args.get("phase"),
            actor=query.user,
        )

    def _merge_revert(self, parsed: ParsedCallback, query: CallbackQuery) -> ActionResult:
        return self.service.merge_revert_pr(parsed.args["issue"], parsed.args["revert_pr"], actor=query.user)
