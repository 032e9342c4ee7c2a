"""Pydantic models for the chat webhook."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatUser(BaseModel):
    """Sender of a callback."""

    model_config = ConfigDict(extra="ignore")

    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.username or self.first_name or str(self.id)


class ChatRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int


class ChatMessage(BaseModel):
    """The message a pressed button belongs to."""

    model_config = ConfigDict(extra="ignore")

    message_id: int
    text: Optional[str] = None
    chat: Optional[ChatRef] = None


class CallbackQueryPayload(BaseModel):
    """Button press."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    data: Optional[str] = None
    from_user: Optional[ChatUser] = Field(default=None, alias="from")
    message: Optional[ChatMessage] = None


class ChatUpdate(BaseModel):
    """Inbound webhook update. Only callback queries are acted on."""

    model_config = ConfigDict(extra="ignore")

    update_id: Optional[int] = None
    callback_query: Optional[CallbackQueryPayload] = None


class WebhookResponse(BaseModel):
    ok: bool = True
    outcome: Optional[str] = None
