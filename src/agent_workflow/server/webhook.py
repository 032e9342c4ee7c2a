"""FastAPI app receiving chat button callbacks."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from loguru import logger

from ..callbacks import CallbackQuery, CallbackRouter
from .models import ChatUpdate, WebhookResponse


def create_app(router: CallbackRouter, *, project_dir: Optional[Path] = None) -> FastAPI:
    """Create the webhook application.

    Args:
        router: Callback router that handles button presses.
        project_dir: Project directory, reported by the health endpoint.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(title="agent-workflow webhook")

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "project_dir": str(project_dir or "")}

    @app.post("/api/chat-webhook", response_model=WebhookResponse)
    def chat_webhook(update: ChatUpdate) -> WebhookResponse:
        payload = update.callback_query
        if payload is None:
            logger.debug("Ignoring non-callback update {}", update.update_id)
            return WebhookResponse()

        query = CallbackQuery(
            id=payload.id,
            data=payload.data or "",
            message_id=payload.message.message_id if payload.message else None,
            message_text=(payload.message.text or "") if payload.message else "",
            user=payload.from_user.display_name if payload.from_user else None,
        )
        result = router.handle(query)
        return WebhookResponse(outcome=result.outcome.value if result is not None else "pending")

    return app
