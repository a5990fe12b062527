"""
Session Models
State machine types for the per-account messaging session
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# ==========================================
# ENUMS
# ==========================================

class SessionStatus(str, Enum):
    PENDING_PAIRING = "pending_pairing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    # In-memory only, never written to the account row
    LOGGING_OUT = "logging_out"


class TransportEventType(str, Enum):
    """Events emitted by the messaging transport."""
    PAIRING_CHALLENGE = "pairing_challenge"
    READY = "ready"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    TRANSPORT_ERROR = "transport_error"
    MESSAGE = "message"


class SessionEvent(str, Enum):
    """Inputs of the session state machine."""
    STARTED = "started"
    PAIRING_CHALLENGE = "pairing_challenge"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    TRANSPORT_ERROR = "transport_error"
    LOGOUT = "logout"
    REINITIALIZED = "reinitialized"
    REINIT_FAILED = "reinit_failed"
    INIT_FAILED = "init_failed"


# ==========================================
# MODELS
# ==========================================

class AccountContext(BaseModel):
    """Binds a session manager to one (organization, account) pair"""
    organization_id: str = Field(..., description="Organization UUID")
    account_id: str = Field(..., description="WhatsApp account UUID (also the transport session id)")


class TransportEvent(BaseModel):
    """Normalized event coming from the transport"""
    type: TransportEventType
    payload: Any = None
    reason: Optional[str] = None


class InboundMessage(BaseModel):
    """Normalized inbound chat message"""
    chat_id: str = Field(..., description="Remote address, e.g. 628123456789@c.us")
    body: Optional[str] = Field(None, description="Message text")
    sender_name: Optional[str] = Field(None, description="notifyName from the sender profile")
    message_id: Optional[str] = Field(None, description="Transport message id")
    message_type: str = Field(default="text", description="Transport message type")
    from_me: bool = Field(default=False, description="Sent by this account")
    raw: Dict[str, Any] = Field(default_factory=dict, description="Raw transport payload")


class SessionSnapshot(BaseModel):
    """Point-in-time view of a live session"""
    account_id: Optional[str] = None
    organization_id: Optional[str] = None
    status: SessionStatus
    connected: bool
    pairing_image: Optional[str] = None
    last_error: Optional[str] = None
    phone_number: Optional[str] = None
    display_name: Optional[str] = None
    updated_at: datetime
