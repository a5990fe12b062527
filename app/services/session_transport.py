"""
Session Transport
One WhatsApp connection, as seen from this process.

The browser automation runs inside the external WhatsApp API service; this
object drives it over HTTP and receives its events through the webhook.
Handlers are registered per event type and dropped on destroy(), so events
for a destroyed connection go nowhere.
"""
import inspect
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from app.config import settings
from app.models.session import InboundMessage, TransportEvent, TransportEventType
from app.services.whatsapp_service import WhatsAppService, get_whatsapp_service

logger = logging.getLogger(__name__)

Handler = Callable[[TransportEvent], Union[None, Awaitable[None]]]

# dataType values of the WhatsApp API webhook
_DATA_TYPE_MAP = {
    "qr": TransportEventType.PAIRING_CHALLENGE,
    "ready": TransportEventType.READY,
    "authenticated": TransportEventType.AUTHENTICATED,
    "auth_failure": TransportEventType.AUTH_FAILURE,
    "disconnected": TransportEventType.DISCONNECTED,
    "message": TransportEventType.MESSAGE,
    "error": TransportEventType.TRANSPORT_ERROR,
    "unhandled_rejection": TransportEventType.TRANSPORT_ERROR,
}


def _extract_message(data: Dict[str, Any]) -> Optional[InboundMessage]:
    wrapper = data.get("message") or data.get("messageMedia") or {}
    if not isinstance(wrapper, dict):
        return None
    content = wrapper.get("_data") or wrapper

    raw_id = content.get("id")
    from_me = bool(content.get("fromMe"))
    message_id = None
    if isinstance(raw_id, dict):
        from_me = from_me or bool(raw_id.get("fromMe"))
        message_id = raw_id.get("id") or raw_id.get("_serialized")
    elif raw_id:
        message_id = str(raw_id)

    chat_id = content.get("from")
    if not chat_id:
        return None

    message_type = content.get("type") or "chat"
    return InboundMessage(
        chat_id=chat_id,
        body=content.get("body"),
        sender_name=content.get("notifyName"),
        message_id=message_id,
        message_type="text" if message_type == "chat" else message_type,
        from_me=from_me,
        raw=content,
    )


def _reason(data: Any) -> Optional[str]:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        for key in ("reason", "msg", "message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def parse_webhook_event(data_type: str, data: Any) -> Optional[TransportEvent]:
    """
    Map a WhatsApp API webhook callback to a TransportEvent.

    Returns:
        TransportEvent, or None for callbacks the session does not care about
        (loading_screen, change_state, message_create, status broadcasts, ...)
    """
    event_type = _DATA_TYPE_MAP.get(data_type)
    if event_type is None:
        return None

    data = data if data is not None else {}

    if event_type == TransportEventType.PAIRING_CHALLENGE:
        qr = data.get("qr") if isinstance(data, dict) else data
        return TransportEvent(type=event_type, payload=qr)

    if event_type == TransportEventType.MESSAGE:
        if not isinstance(data, dict):
            return None
        message = _extract_message(data)
        if message is None or message.raw.get("isStatus") or message.chat_id == "status@broadcast":
            return None
        return TransportEvent(type=event_type, payload=message)

    return TransportEvent(type=event_type, payload=data, reason=_reason(data))


class WhatsAppTransport:
    """HTTP-driven WhatsApp connection for one account"""

    def __init__(
        self,
        session_id: str,
        api: Optional[WhatsAppService] = None,
        auth_dir: Optional[str] = None,
        cache_dir: Optional[str] = None,
    ):
        self.session_id = session_id
        self.api = api or get_whatsapp_service()
        self.auth_dir = auth_dir or settings.SESSION_AUTH_DIR
        self.cache_dir = cache_dir or settings.SESSION_CACHE_DIR
        self.destroyed = False
        self._handlers: Dict[TransportEventType, List[Handler]] = {}

    @property
    def session_dirs(self) -> List[str]:
        """On-disk state removed on logout (LocalAuth dir + web cache)."""
        return [
            os.path.join(self.auth_dir, f"session-{self.session_id}"),
            self.cache_dir,
        ]

    def on(self, event_type: TransportEventType, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    async def emit(self, event: TransportEvent) -> bool:
        """
        Deliver an event to the registered handlers.

        Returns:
            False when nobody is listening (e.g. the connection was destroyed)
        """
        handlers = list(self._handlers.get(event.type, []))
        if self.destroyed or not handlers:
            return False
        for handler in handlers:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        return True

    async def initialize(self) -> None:
        await self.api.register_session(self.session_id)

    async def destroy(self) -> None:
        self.destroyed = True
        self._handlers.clear()
        await self.api.terminate_session(self.session_id)

    async def send_text(self, chat_id: str, text: str) -> Dict[str, Any]:
        return await self.api.send_text_message(self.session_id, chat_id, text)

    async def render_pairing_image(self, payload: Any) -> Optional[str]:
        """PNG data URL of the current QR, or the raw code when no image is available."""
        image = await self.api.get_qr_image(self.session_id)
        if image:
            return image
        return str(payload) if payload else None

    async def get_identity(self) -> Tuple[Optional[str], Optional[str]]:
        """(phone_number, display_name) of the paired account."""
        info = await self.api.get_client_class_info(self.session_id)
        wid = info.get("wid") or info.get("me") or {}
        phone = wid.get("user") if isinstance(wid, dict) else None
        return phone, info.get("pushname")


def create_transport(session_id: str) -> WhatsAppTransport:
    """Default transport factory."""
    return WhatsAppTransport(session_id)
