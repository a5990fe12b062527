"""
Webhook API Endpoints
Receives session callbacks from the WhatsApp API service
"""
import logging

from fastapi import APIRouter, Depends, status

from app.middleware.webhook_auth import get_webhook_secret
from app.models.webhook import WebhookAckResponse, WhatsAppSessionWebhook
from app.services.session_registry import get_session_registry
from app.services.session_transport import parse_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post(
    "/whatsapp",
    response_model=WebhookAckResponse,
    status_code=status.HTTP_200_OK,
    summary="Receive WhatsApp session event",
    description="Callback target of the WhatsApp API service (qr, ready, auth_failure, disconnected, message, ...)"
)
async def whatsapp_webhook(
    payload: WhatsAppSessionWebhook,
    secret: str = Depends(get_webhook_secret)
):
    """
    Route one WhatsApp API callback to the owning session.

    Always answers 200 so the API service does not keep re-sending; failures
    are reported in the body and the log.
    """
    logger.info(f"📡 WhatsApp webhook: session={payload.sessionId}, dataType={payload.dataType}")

    try:
        event = parse_webhook_event(payload.dataType, payload.data)
        if event is None:
            return WebhookAckResponse(success=True, status="ignored", reason=f"unhandled_data_type:{payload.dataType}")

        delivered = await get_session_registry().route_event(payload.sessionId, event)
        if not delivered:
            return WebhookAckResponse(success=True, status="ignored", reason="no_live_session")

        return WebhookAckResponse(success=True, status="processed")

    except Exception as e:
        logger.error(f"❌ Error processing WhatsApp webhook: {e}", exc_info=True)
        return WebhookAckResponse(success=False, status="error", reason="internal_error")
