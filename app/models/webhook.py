"""
Webhook Models
Pydantic models for callbacks from the WhatsApp API service
"""
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.session import SessionSnapshot


# ============================================
# INCOMING
# ============================================

class WhatsAppSessionWebhook(BaseModel):
    """Session callback from whatsapp-web.js (chrishubert/whatsapp-api)"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "dataType": "message",
                "sessionId": "ea799531-14ff-400a-9380-cd2a9c16af5c",
                "data": {
                    "message": {
                        "_data": {
                            "id": {"fromMe": False, "remote": "6289505130799@c.us", "id": "3EB0C767D2"},
                            "body": "What are your business hours?",
                            "type": "chat",
                            "from": "6289505130799@c.us",
                            "to": "62881024580401@c.us",
                            "notifyName": "Budi"
                        }
                    }
                }
            }
        },
    )

    dataType: str = Field(..., description="Event type (qr, ready, authenticated, auth_failure, disconnected, message, ...)")
    sessionId: str = Field(..., description="WhatsApp session ID (= account id)")
    # Any, not Dict: some events carry a bare string
    data: Optional[Any] = Field(default=None, description="Event payload")


# ============================================
# RESPONSES
# ============================================

class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the WhatsApp API service"""
    success: bool = Field(..., description="Whether the event was accepted")
    status: str = Field(..., description="processed / ignored / error")
    reason: Optional[str] = Field(None, description="Why the event was ignored or failed")


class SessionListResponse(BaseModel):
    sessions: List[SessionSnapshot] = Field(default_factory=list)
    total: int = Field(0, description="Number of sessions")


class SessionRestartResponse(BaseModel):
    success: bool
    account_id: str
    session: SessionSnapshot
    message: str


class HealthResponse(BaseModel):
    status: str = Field("ok")
    sessions: int = Field(0, description="Registered sessions")
    connected: int = Field(0, description="Sessions in 'connected' state")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
