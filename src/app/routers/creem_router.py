"""
Creem Webhook Router

- HMAC-SHA256 signature verification (fail closed)
- modern / legacy envelope normalization
- per-event handlers for subscriptions, checkouts, payments, refunds and disputes
"""
import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from core.responses import success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks", "creem"])

webhook_gateway = None


def set_dependencies(gateway):
    """의존성 주입"""
    global webhook_gateway
    webhook_gateway = gateway


@router.get("/creem")
async def creem_webhook_get():
    return success_response(data={"ok": True}, message="creem webhook alive")


@router.post("/creem")
async def creem_webhook(
    request: Request,
    creem_signature: str | None = Header(default=None, alias="creem-signature"),
    x_creem_signature: str | None = Header(default=None, alias="x-creem-signature"),
    x_creem_timestamp: str | None = Header(default=None, alias="x-creem-timestamp"),
):
    if webhook_gateway is None:
        logger.error("[CREEM] webhook gateway not initialized")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    raw = await request.body()
    outcome = await webhook_gateway.handle(raw, creem_signature or x_creem_signature, x_creem_timestamp)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
