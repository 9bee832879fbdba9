"""
Boundary types between the engine and messaging channels.

The engine never speaks a channel protocol. Inbound events arrive as
``InboundEvent``; everything a flow wants to say leaves as an
``OutboundMessage`` handed to an injected ``ChannelAdapter``.
"""

from typing import Any, Dict, List, Optional, Protocol

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class InboundEvent(BaseModel):
    conversation_id: int
    contact_id: int
    company_id: Optional[int] = None
    channel_id: int
    channel_type: Optional[str] = None
    # {"text": "..."} for messages, {"event": "..."} for named events, plus any
    # structured fields a data_capture step can read
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        value = self.payload.get("text", self.payload.get("message", ""))
        return "" if value is None else str(value)


class OutboundMessage(BaseModel):
    conversation_id: int
    channel_id: Optional[int] = None
    content: str = ""
    type: str = "text"
    media_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChannelAdapter(Protocol):
    def send(self, message: OutboundMessage) -> None:
        """Deliver a message. Raise TransientExternalError for retryable failures."""
        ...


class LoggingChannelAdapter:
    """Adapter that only logs; used when no real channel is wired in."""

    def __init__(self):
        self.sent: List[OutboundMessage] = []

    def send(self, message: OutboundMessage) -> None:
        self.sent.append(message)
        logger.info(
            "outbound_message",
            conversation_id=message.conversation_id,
            channel_id=message.channel_id,
            type=message.type,
            content=message.content,
        )
