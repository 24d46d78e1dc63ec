"""Inbound protocol events and the canonical outbound bodies built from them."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from wahook.models import (
    MessageMedia,
    MessageWebhookBody,
    SessionStatus,
    SessionWebhookBody,
)

__all__ = [
    "MESSAGE_TEXT_PATHS",
    "MessageKey",
    "MessageReceived",
    "build_message_body",
    "build_session_body",
    "extract_message_text",
    "should_ignore",
]

# Where the human-readable text of a message can live, in priority order
MESSAGE_TEXT_PATHS: tuple[tuple[str, ...], ...] = (
    ("conversation",),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
    ("documentMessage", "caption"),
    ("contactMessage", "displayName"),
    ("locationMessage", "comment"),
    ("liveLocationMessage", "caption"),
)


class MessageKey(BaseModel):
    """Addressing part of a protocol message."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    remote_jid: str | None = Field(default=None, alias="remoteJid")
    from_me: bool = Field(default=False, alias="fromMe")
    id: str | None = None


class MessageReceived(BaseModel):
    """A message delivered to one of the gateway's sessions."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    session_id: str = Field(alias="sessionId")
    key: MessageKey = Field(default_factory=MessageKey)
    message: dict[str, Any] | None = None


def _lookup(content: dict[str, Any], path: tuple[str, ...]) -> Any:
    value: Any = content
    for part in path:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def extract_message_text(content: dict[str, Any] | None) -> str | None:
    """First non-empty text or caption of a raw message, or None."""
    if not content:
        return None
    for path in MESSAGE_TEXT_PATHS:
        value = _lookup(content, path)
        if value:
            return str(value)
    return None


def should_ignore(event: MessageReceived) -> bool:
    """Self-sent and broadcast messages never reach tenant callbacks."""
    if event.key.from_me:
        return True
    return "broadcast" in (event.key.remote_jid or "")


def build_message_body(event: MessageReceived) -> MessageWebhookBody:
    # TODO: populate media once a media download collaborator exists
    return MessageWebhookBody(
        session=event.session_id,
        from_=event.key.remote_jid,
        message_id=event.key.id,
        message=extract_message_text(event.message),
        media=MessageMedia(),
    )


def build_session_body(session_id: str, status: SessionStatus) -> SessionWebhookBody:
    return SessionWebhookBody(session=session_id, status=status)
