# /flowbot/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import List, Optional, Protocol

from flowbot.config.settings import settings
from flowbot.models.flow import Button
from flowbot.models.project import Project
from flowbot.utils.circuit_breaker import breaker_for
from flowbot.utils.metrics import outbound_messages_counter

logger = logging.getLogger(__name__)

MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_TEXT_BODY = 4096
MAX_CAPTION = 1024
SUPPORTED_MEDIA_TYPES = ("image", "document", "video", "audio", "sticker")


class MessagingGateway(Protocol):
    """What the flow engine needs from a messaging provider. Sends return a message id, or None on failure."""

    async def send_text(self, to: str, text: str) -> Optional[str]: ...

    async def send_buttons(self, to: str, text: str, buttons: List[Button]) -> Optional[str]: ...

    async def send_media(
        self, to: str, url: str, media_type: str, caption: Optional[str] = None, filename: Optional[str] = None
    ) -> Optional[str]: ...


class WhatsAppService:
    """WhatsApp Cloud API sender for a single business phone number."""

    def __init__(self, access_token: str, phone_id: str, http_client: Optional[httpx.AsyncClient] = None,
                 base_url: str = settings.whatsapp_api_base_url):
        self.access_token = access_token
        self.phone_id = phone_id
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        self.base_url = base_url.rstrip("/")
        self.circuit_breaker = breaker_for(f"whatsapp:{phone_id}")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_whatsapp_request(self, payload: dict) -> Optional[str]:
        """POST a message payload; returns the wamid or None."""
        to_phone = payload.get("to")
        message_type = payload.get("type", "unknown")
        try:
            url = f"{self.base_url}/{self.phone_id}/messages"
            headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

            if response.status_code == 200:
                message_id = response.json().get("messages", [{}])[0].get("id")
                logger.info(f"WhatsApp {message_type} message sent to {to_phone}, wamid: {message_id}")
                outbound_messages_counter.labels(message_type=message_type, status="sent").inc()
                return message_id

            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            outbound_messages_counter.labels(message_type=message_type, status="failed").inc()
            return None
        except Exception as e:
            logger.error(f"whatsapp_send_error to {to_phone}: {e}", exc_info=True)
            outbound_messages_counter.labels(message_type=message_type, status="error").inc()
            return None

    def _base_payload(self, to: str) -> dict:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": re.sub(r"[^\d+]", "", to),
        }

    async def send_text(self, to: str, text: str) -> Optional[str]:
        payload = self._base_payload(to)
        payload["type"] = "text"
        payload["text"] = {"body": (text or "No message body")[:MAX_TEXT_BODY]}
        return await self.send_whatsapp_request(payload)

    async def send_buttons(self, to: str, text: str, buttons: List[Button]) -> Optional[str]:
        """Interactive reply-button message. The provider accepts at most three buttons."""
        if len(buttons) > MAX_BUTTONS:
            logger.warning(f"Dropping {len(buttons) - MAX_BUTTONS} button(s) over the provider limit for {to}")
        formatted = [
            {"type": "reply", "reply": {"id": button.reply_id(index), "title": button.title[:MAX_BUTTON_TITLE]}}
            for index, button in enumerate(buttons[:MAX_BUTTONS], start=1)
        ]
        payload = self._base_payload(to)
        payload["type"] = "interactive"
        payload["interactive"] = {
            "type": "button",
            "body": {"text": (text or "No message body")[:MAX_TEXT_BODY]},
            "action": {"buttons": formatted},
        }
        return await self.send_whatsapp_request(payload)

    async def send_media(self, to: str, url: str, media_type: str, caption: Optional[str] = None,
                         filename: Optional[str] = None) -> Optional[str]:
        if media_type not in SUPPORTED_MEDIA_TYPES:
            logger.error(f"Unsupported media type '{media_type}' for message to {to}")
            return None
        if not url:
            logger.error(f"Missing media url for {media_type} message to {to}")
            return None

        media: dict = {"link": url}
        if media_type in ("image", "video", "document"):
            media["caption"] = (caption or "")[:MAX_CAPTION]
        if media_type == "document":
            media["filename"] = filename or "file.pdf"

        payload = self._base_payload(to)
        payload["type"] = media_type
        payload[media_type] = media
        return await self.send_whatsapp_request(payload)


# Shared connection pool for every project's sender
http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)


def gateway_for_project(project: Project) -> WhatsAppService:
    if not project.phone_number_id or not project.access_token:
        raise RuntimeError(f"WhatsApp credentials not configured for project {project.id}")
    return WhatsAppService(project.access_token, project.phone_number_id, http_client)
