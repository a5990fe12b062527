"""
WebSocket API Endpoint
Real-time WhatsApp session status for the dashboard
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from app.middleware.webhook_auth import is_valid_secret
from app.services.status_broadcaster import get_status_broadcaster

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/status/{organization_id}")
async def status_websocket(
    websocket: WebSocket,
    organization_id: str,
    token: Optional[str] = Query(None, description="Shared API key")
):
    """
    Push `whatsapp_status_update` messages for every account of an organization.

    **Connection URL:**
    ```
    ws://your-api.com/ws/status/{organization_id}?token={api_key}
    ```

    **Message:**
    ```json
    {
        "type": "whatsapp_status_update",
        "data": {
            "accountId": "account-uuid",
            "organizationId": "org-uuid",
            "connected": false,
            "pairingImage": "data:image/png;base64,...",
            "lastError": null,
            "status": "pending_pairing",
            "updatedAt": "2025-10-21T15:30:00+00:00"
        }
    }
    ```

    The current state of each account is sent right after the connection is
    accepted. Incoming client messages are ignored.
    """
    if not is_valid_secret(token):
        logger.warning(f"WebSocket connection rejected for org {organization_id}: invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    broadcaster = get_status_broadcaster()
    await websocket.accept()
    await broadcaster.register_listener(websocket, organization_id)

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: org={organization_id}")
    finally:
        broadcaster.unregister_listener(websocket)
