from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from wabot.config import settings
from wabot.logging_config import get_logger
from wabot.schemas.webhook import WebhookResponse
from wabot.services.errors import InvalidPayloadError
from wabot.services.pipeline import IntakePipeline
from wabot.services.registry import get_pipeline

logger = get_logger("webhook")

router = APIRouter(tags=["webhook"])


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: str = Query(default="", alias="hub.mode"),
    hub_verify_token: str = Query(default="", alias="hub.verify_token"),
    hub_challenge: str = Query(default="", alias="hub.challenge"),
):
    """WhatsApp Cloud API verification handshake."""
    expected = settings.whatsapp_verify_token
    if hub_mode == "subscribe" and expected and hub_verify_token == expected:
        return hub_challenge
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, pipeline: IntakePipeline = Depends(get_pipeline)):
    """Handle a WhatsApp Cloud API delivery. Always acknowledged with 200."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not JSON")
        return WebhookResponse(success=False, status="invalid")

    try:
        outcome = await run_in_threadpool(pipeline.handle_inbound_message, payload)
    except InvalidPayloadError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        return WebhookResponse(success=False, status="invalid")

    return WebhookResponse(
        success=True,
        status=outcome.status,
        message_id=outcome.message_id,
        handler=outcome.handler,
    )
