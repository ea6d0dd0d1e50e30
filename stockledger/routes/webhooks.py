import json

from fastapi import APIRouter, Depends, HTTPException, Request

from stockledger.core.enums import WebhookStatus
from stockledger.dependencies import get_secret, get_webhook_processor
from stockledger.services.webhook_processor import WebhookProcessor, verify_signature

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "X-Webhook-Signature"


async def verify_webhook_signature(request: Request, webhook_secret: str = Depends(get_secret)):
    """Verify the HMAC signature of the raw body"""
    body = await request.body()
    verify_signature(webhook_secret, body, request.headers.get(SIGNATURE_HEADER))


@router.post("/webhooks/{marketplace}/{event_type}")
async def marketplace_webhook(
    marketplace: str,
    event_type: str,
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    _: None = Depends(verify_webhook_signature),
):
    """Endpoint to receive order webhooks from a marketplace"""
    try:
        payload = json.loads(await request.body())
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    result = await processor.process(marketplace, event_type, payload)
    if result["status"] == WebhookStatus.FAILED.value:
        raise HTTPException(status_code=422, detail=result["error"])
    return result
