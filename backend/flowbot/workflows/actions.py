# /flowbot/workflows/actions.py

from typing import Optional

import structlog

from flowbot.config import strings
from flowbot.models.flow import Button
from flowbot.services.http_service import ExternalApiClient, external_api_client
from flowbot.services.whatsapp_service import MessagingGateway
from flowbot.workflows.errors import ExternalAPIError
from flowbot.workflows.templating import extract_field, render_template, render_value, static_resolver, stringify

# Smart buttons: a button whose configuration carries an `action` is handled
# here, independently of where the user is in the flow. Nothing in this module
# reads or writes conversation state.

log = structlog.get_logger(__name__)

FETCH_AND_SEND_MEDIA = "FETCH_AND_SEND_MEDIA"


class ActionResolver:
    def __init__(self, gateway: MessagingGateway, api_client: Optional[ExternalApiClient] = None):
        self.gateway = gateway
        self.api_client = api_client or external_api_client

    async def handle_button_action(self, button: Button, sender: str, project_id: str) -> bool:
        """Run the button's action for `sender`. Returns True when the result was delivered."""
        action = button.action
        if action is None:
            return False

        bound = log.bind(project_id=project_id, sender=sender, button_id=button.id, action=action.type)
        if action.type != FETCH_AND_SEND_MEDIA:
            bound.warning("unsupported_button_action")
            await self.gateway.send_text(sender, strings.ACTION_FALLBACK)
            return False

        resolve = static_resolver({
            "senderWaPhoneNo": sender,
            "senderIdentity": sender,
            "sender": sender,
            "projectId": project_id,
        })
        mapping = action.response_mapping
        try:
            url = await render_template(action.request.url, resolve, url_encode=True)
            headers = {key: await render_template(value, resolve) for key, value in action.request.headers.items()}
            body = await render_value(action.request.body, resolve)
            payload = await self.api_client.request(action.request.method, url, headers, body, source="button_action")

            result = extract_field(payload, mapping.response_key)
            media_url = stringify(extract_field(result, mapping.media_url_field))
            caption = stringify(extract_field(result, mapping.caption_field)) if mapping.caption_field else None
        except ExternalAPIError as e:
            bound.warning("button_action_failed", error=str(e))
            await self.gateway.send_text(sender, strings.ACTION_FALLBACK)
            return False

        message_id = await self.gateway.send_media(sender, media_url, mapping.media_type, caption)
        if not message_id:
            bound.warning("button_action_send_failed", media_url=media_url)
            return False
        bound.info("button_action_completed", message_id=message_id)
        return True
