"""Example webhook receiver — how a merchant verifies StacksGate deliveries."""

import json

import structlog
from fastapi import APIRouter, HTTPException, Request

from stacksgate.core.config import get_settings
from stacksgate.services.webhooks import verify_webhook_payload

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/receiver")
async def receive_webhook(request: Request):
    """Verify ``X-StacksGate-Signature`` over the raw body and acknowledge."""
    settings = get_settings()
    if not settings.receiver_webhook_secret:
        logger.error("receiver_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Webhook receiver is not configured")

    try:
        body = (await request.body()).decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Webhook body must be UTF-8 encoded JSON")
    sig_header = request.headers.get("x-stacksgate-signature")
    event_type = request.headers.get("x-stacksgate-event")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing webhook signature")

    valid, error = verify_webhook_payload(
        body,
        sig_header,
        settings.receiver_webhook_secret,
        tolerance=settings.signature_tolerance_seconds,
    )
    if not valid:
        logger.warning("webhook_signature_invalid", event_type=event_type, reason=error)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON in request body")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    logger.info("webhook_received", event_type=event.get("type", event_type), event_id=event.get("id"))
    return {"received": True}
