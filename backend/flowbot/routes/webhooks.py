# /flowbot/routes/webhooks.py

import json
import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from flowbot.config.settings import settings
from flowbot.services import conversation_service
from flowbot.utils.dependencies import verify_webhook_signature
from flowbot.utils.metrics import response_time_histogram
from flowbot.utils.rate_limiter import limiter

# WhatsApp webhook endpoints. Messages are acknowledged immediately and run
# through the flow engine as background tasks.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Queue every inbound message in the payload for flow processing."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except ValueError:
            raise HTTPException(status_code=400, detail="Malformed JSON body")

        if data.get("object") not in (None, "whatsapp_business_account"):
            log.info("Ignoring webhook for unrelated object.", object=data.get("object"))
            return JSONResponse({"status": "ignored"}, status_code=404)

        queued = 0
        for phone_number_id, message in conversation_service.parse_webhook_payload(data):
            background_tasks.add_task(
                conversation_service.conversation_service.process_webhook_message, phone_number_id, message
            )
            queued += 1

        log.info("Webhook processing complete.", queued=queued)
        return JSONResponse({"status": "success", "queued": queued})
