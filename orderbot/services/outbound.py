from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

import httpx

from orderbot.logging_config import get_logger
from orderbot.services.phone_identity import Channel, for_channel

logger = get_logger("outbound")

MAX_ROW_TITLE_LENGTH = 24
MAX_ROW_DESCRIPTION_LENGTH = 72


def truncate(text: Optional[str], max_length: int) -> str:
    text = text or ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


@dataclass(frozen=True)
class TextMessage:
    text: str

    def to_payload(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ListRow:
    id: str
    title: str
    description: Optional[str] = None


@dataclass(frozen=True)
class ListPicker:
    body: str
    button: str
    rows: list[ListRow] = field(default_factory=list)
    page: int = 1
    total_pages: int = 1

    def to_payload(self) -> dict:
        return {
            "type": "list_picker",
            "body": self.body,
            "button": self.button,
            "page": self.page,
            "total_pages": self.total_pages,
            "rows": [
                {
                    "id": row.id,
                    "title": truncate(row.title, MAX_ROW_TITLE_LENGTH),
                    "description": truncate(row.description, MAX_ROW_DESCRIPTION_LENGTH),
                }
                for row in self.rows
            ],
        }


@dataclass(frozen=True)
class QuickReply:
    id: str
    title: str


@dataclass(frozen=True)
class QuickReplies:
    body: str
    options: list[QuickReply] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "type": "quick_replies",
            "body": self.body,
            "options": [{"id": option.id, "title": option.title} for option in self.options],
        }


@dataclass(frozen=True)
class MediaAttachment:
    url: str
    caption: Optional[str] = None

    def to_payload(self) -> dict:
        return {"type": "media", "url": self.url, "caption": self.caption}


OutboundMessage = Union[TextMessage, ListPicker, QuickReplies, MediaAttachment]


def message_text(message: OutboundMessage) -> str:
    """Plain-text view of any outbound message, for logs and channels without rich types."""
    if isinstance(message, TextMessage):
        return message.text
    if isinstance(message, ListPicker):
        rows = "\n".join(f"{index}. {row.title}" for index, row in enumerate(message.rows, start=1))
        return f"{message.body}\n{rows}" if rows else message.body
    if isinstance(message, QuickReplies):
        return message.body
    return message.caption or message.url


class OutboundChannel(ABC):
    @abstractmethod
    async def send(self, tenant_id: str, customer_key: str, message: OutboundMessage) -> bool:
        pass


class LoggingOutboundChannel(OutboundChannel):
    """Records what would be sent. Used when no delivery endpoint is configured."""

    async def send(self, tenant_id: str, customer_key: str, message: OutboundMessage) -> bool:
        logger.info(
            "Outbound message",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "customer_key": customer_key,
                    "type": message.to_payload()["type"],
                }
            },
        )
        return True


class HttpOutboundChannel(OutboundChannel):
    """Posts rendered messages to the delivery gateway."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def send(self, tenant_id: str, customer_key: str, message: OutboundMessage) -> bool:
        payload = {
            "tenant_id": tenant_id,
            "to": for_channel(customer_key, Channel.WHATSAPP),
            "message": message.to_payload(),
            "fallback_text": message_text(message),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/messages", json=payload)
                response.raise_for_status()
            return True
        except httpx.HTTPError as exc:
            logger.error(
                "Outbound delivery failed",
                extra={"context": {"tenant_id": tenant_id, "customer_key": customer_key, "error": str(exc)}},
            )
            return False
