"""MessageChannel ABC — normalizes text transports to plain inbound/outbound text.

Different messaging transports (Twilio SMS / WhatsApp, WhatsApp Web
bridges) identify users and deliver text in different shapes.  The
MessageChannel interface lets the flow machine work exclusively with an
``InboundMessage`` coming in and ``send(user_id, text)`` going out.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

_DISALLOWED = re.compile(r"[^\w\s.,!?@\-+']", re.UNICODE)


def sanitize_input(text: str) -> str:
    """Strip everything but letters, digits, whitespace and ``.,!?@-_+'``."""
    return _DISALLOWED.sub("", text or "").strip()


@dataclass
class InboundMessage:
    """One text message received from a user."""

    user_id: str                 # e.g. "whatsapp:+15551234567"
    text: str
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message_id: str = ""


class MessageChannel(ABC):
    """Abstract outbound text channel."""

    @abstractmethod
    async def send(self, user_id: str, text: str) -> bool:
        """Deliver *text* to *user_id*.

        Returns:
            True if the transport accepted the message.  Failures are
            logged by the channel and reported as False, never raised.
        """

    async def close(self) -> None:
        """Release transport resources.  Safe to call multiple times."""
