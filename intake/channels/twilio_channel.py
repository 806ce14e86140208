"""TwilioMessagingChannel — MessageChannel for Twilio SMS and WhatsApp.

Inbound messages arrive as Twilio's form-encoded webhook; outbound
messages go through the Messages REST resource with basic auth.

Protocol reference:
  https://www.twilio.com/docs/messaging/guides/webhook-request
  https://www.twilio.com/docs/usage/security#validating-requests

Webhook fields used:
  From        "whatsapp:+15551234567" or "+15551234567"
  Body        message text
  MessageSid  "SM..."

Outbound:
  POST {api}/Accounts/{AccountSid}/Messages.json  From=…&To=…&Body=…
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

import httpx

from intake.channels.base import InboundMessage, MessageChannel, sanitize_input
from intake.store import redact_pii

log = logging.getLogger("intake.twilio")

# Twilio rejects message bodies longer than this
MAX_BODY_CHARS = 1600


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Twilio request signature: base64 HMAC-SHA1 over URL + sorted params."""
    payload = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    digest = hmac.new(auth_token.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_signature(
    auth_token: str, url: str, params: Mapping[str, str], signature: str
) -> bool:
    if not signature:
        return False
    expected = compute_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature)


def split_body(text: str, limit: int = MAX_BODY_CHARS) -> list[str]:
    """Split *text* into chunks of at most *limit* chars, on line boundaries."""
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def parse_webhook(form: Mapping[str, str]) -> Optional[InboundMessage]:
    """Build an InboundMessage from Twilio's webhook form, or None if unusable."""
    user_id = (form.get("From") or "").strip()
    if not user_id:
        return None
    return InboundMessage(
        user_id=user_id,
        text=sanitize_input(form.get("Body") or ""),
        received_at=datetime.now(timezone.utc),
        message_id=form.get("MessageSid") or "",
    )


class TwilioMessagingChannel(MessageChannel):
    """MessageChannel implementation over Twilio's Messages REST API.

    Usage::

        channel = TwilioMessagingChannel(account_sid, auth_token, "+15550001111")
        await channel.send("whatsapp:+15551234567", "Hello!")
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        api_url: str = "https://api.twilio.com/2010-04-01",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._api_url = api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=15)
        self._owns_client = client is None

    @property
    def messages_url(self) -> str:
        return f"{self._api_url}/Accounts/{self._account_sid}/Messages.json"

    def sender_for(self, user_id: str) -> str:
        """Reply from the WhatsApp sender when the user wrote over WhatsApp."""
        if user_id.startswith("whatsapp:") and not self._from_number.startswith("whatsapp:"):
            return f"whatsapp:{self._from_number}"
        return self._from_number

    async def send(self, user_id: str, text: str) -> bool:
        if not (self._account_sid and self._auth_token and self._from_number):
            log.warning("Cannot send to %s: Twilio not configured", redact_pii(user_id))
            return False

        for chunk in split_body(text):
            try:
                resp = await self._client.post(
                    self.messages_url,
                    data={"From": self.sender_for(user_id), "To": user_id, "Body": chunk},
                    auth=(self._account_sid, self._auth_token),
                )
            except httpx.HTTPError as e:
                log.error("Twilio send to %s failed: %s", redact_pii(user_id), e)
                return False
            if resp.status_code >= 400:
                log.error(
                    "Twilio send to %s rejected (%d): %s",
                    redact_pii(user_id), resp.status_code, resp.text[:200],
                )
                return False
        log.info("Sent %d chars to %s", len(text), redact_pii(user_id))
        return True

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
