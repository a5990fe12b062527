"""
Session Lifecycle Manager
Owns one WhatsApp connection for one (organization, account) pair.

State machine:

    pending_pairing ──ready──▶ connected ──disconnected──▶ disconnected
          ▲                                                    │
          │                                 reason == "logout" │
          └──── reinitialized ◀──── logging_out ◀──────────────┘

    auth_failure / transport_error / init or reinit failure ──▶ error

Transport events enter through handle_event(), which never raises: one
account's fault must not take down its siblings or the process.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from app.config import settings
from app.models.session import (
    AccountContext,
    InboundMessage,
    SessionEvent,
    SessionSnapshot,
    SessionStatus,
    TransportEvent,
    TransportEventType,
)
from app.services.account_service import AccountService, get_account_service
from app.services.message_dispatcher import get_message_dispatcher
from app.services.session_transport import WhatsAppTransport, create_transport
from app.services.status_broadcaster import StatusBroadcaster, get_status_broadcaster
from app.utils.background import BackgroundTaskSet
from app.utils.file_cleanup import delete_dir_safely

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], WhatsAppTransport]

# Target state per event. LOGOUT is guarded separately.
_TRANSITIONS: Dict[SessionEvent, SessionStatus] = {
    SessionEvent.STARTED: SessionStatus.PENDING_PAIRING,
    SessionEvent.PAIRING_CHALLENGE: SessionStatus.PENDING_PAIRING,
    SessionEvent.READY: SessionStatus.CONNECTED,
    SessionEvent.AUTH_FAILURE: SessionStatus.ERROR,
    SessionEvent.DISCONNECTED: SessionStatus.DISCONNECTED,
    SessionEvent.TRANSPORT_ERROR: SessionStatus.ERROR,
    SessionEvent.LOGOUT: SessionStatus.LOGGING_OUT,
    SessionEvent.REINITIALIZED: SessionStatus.PENDING_PAIRING,
    SessionEvent.REINIT_FAILED: SessionStatus.ERROR,
    SessionEvent.INIT_FAILED: SessionStatus.ERROR,
}

_LOGOUT_SOURCES = {SessionStatus.CONNECTED, SessionStatus.DISCONNECTED}
_TEARDOWN_EVENTS = {SessionEvent.REINITIALIZED, SessionEvent.REINIT_FAILED}


def next_status(current: SessionStatus, event: SessionEvent) -> Optional[SessionStatus]:
    """
    The single transition function of the session state machine.

    Returns:
        The next status, or None when the event is not accepted in ``current``
    """
    if event == SessionEvent.LOGOUT:
        return SessionStatus.LOGGING_OUT if current in _LOGOUT_SOURCES else None

    # Only the teardown itself may leave logging_out
    if current == SessionStatus.LOGGING_OUT:
        return _TRANSITIONS[event] if event in _TEARDOWN_EVENTS else None

    if event == SessionEvent.REINITIALIZED:
        return None

    return _TRANSITIONS.get(event)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionLifecycleManager:
    """Lifecycle of one account's messaging session"""

    def __init__(
        self,
        transport_factory: Optional[TransportFactory] = None,
        account_service: Optional[AccountService] = None,
        broadcaster: Optional[StatusBroadcaster] = None,
        dispatcher=None,
        logout_grace_delay: Optional[float] = None,
        reinit_delay: Optional[float] = None,
        cleanup_attempts: Optional[int] = None,
        cleanup_backoff: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport_factory = transport_factory or create_transport
        self.account_service = account_service or get_account_service()
        self.broadcaster = broadcaster or get_status_broadcaster()
        self._dispatcher = dispatcher

        self.logout_grace_delay = settings.LOGOUT_GRACE_DELAY if logout_grace_delay is None else logout_grace_delay
        self.reinit_delay = settings.REINIT_DELAY if reinit_delay is None else reinit_delay
        self.cleanup_attempts = cleanup_attempts or settings.CLEANUP_ATTEMPTS
        self.cleanup_backoff = settings.CLEANUP_BACKOFF if cleanup_backoff is None else cleanup_backoff
        self._sleep = sleep

        self.context: Optional[AccountContext] = None
        self.transport: Optional[WhatsAppTransport] = None
        self.status = SessionStatus.PENDING_PAIRING
        self.pairing_image: Optional[str] = None
        self.last_error: Optional[str] = None
        self.phone_number: Optional[str] = None
        self.display_name: Optional[str] = None
        self.updated_at = _now()

        self._teardown_task: Optional[asyncio.Task] = None
        self.message_tasks = BackgroundTaskSet("dispatch")

    @property
    def account_id(self) -> Optional[str]:
        return self.context.account_id if self.context else None

    @property
    def dispatcher(self):
        if self._dispatcher is None:
            self._dispatcher = get_message_dispatcher()
        return self._dispatcher

    @property
    def bound_dispatcher(self):
        """The dispatcher, if one was injected or has been used; None otherwise."""
        return self._dispatcher

    # ==========================================
    # PUBLIC API
    # ==========================================

    async def start(self, context: AccountContext) -> bool:
        """
        Bind to an account and bring up a fresh connection.

        Never raises; an initialization failure leaves the session in 'error'.

        Returns:
            True if the transport initialized
        """
        self.context = context
        logger.info(f"🚀 Starting WhatsApp session for account {context.account_id} (org {context.organization_id})")
        return await self._launch(SessionEvent.STARTED, SessionEvent.INIT_FAILED, "Initialization failed")

    async def handle_event(self, event: TransportEvent) -> bool:
        """
        Deliver a transport event to the live connection's handlers.

        Never raises.

        Returns:
            False if the event was dropped (no live connection)
        """
        transport = self.transport
        if transport is None:
            logger.info(f"ℹ️ [{self.account_id}] No live connection, dropping {event.type.value}")
            return False
        try:
            return await transport.emit(event)
        except Exception as e:
            logger.error(f"❌ [{self.account_id}] Handler for {event.type.value} failed: {e}", exc_info=True)
            try:
                await self._on_transport_error(TransportEvent(
                    type=TransportEventType.TRANSPORT_ERROR, reason=str(e),
                ))
            except Exception as nested:
                logger.error(f"❌ [{self.account_id}] Could not record handler failure: {nested}")
            return False

    async def restart(self) -> bool:
        """
        External restart policy hook: tear down and start a new connection.

        Refused while a logout teardown is running.
        """
        if not self.context:
            logger.warning("⚠️ restart() called before start()")
            return False
        if self.status == SessionStatus.LOGGING_OUT:
            logger.warning(f"⚠️ [{self.account_id}] Restart refused, logout teardown in progress")
            return False

        logger.info(f"🔄 [{self.account_id}] Restarting WhatsApp session")
        await self._destroy_transport()
        return await self._launch(SessionEvent.STARTED, SessionEvent.INIT_FAILED, "Initialization failed")

    async def stop(self) -> None:
        """Shutdown: cancel a pending teardown and in-flight replies, release the connection."""
        if self._teardown_task and not self._teardown_task.done():
            self._teardown_task.cancel()
            try:
                await self._teardown_task
            except asyncio.CancelledError:
                pass
        await self.message_tasks.cancel_all()
        await self._destroy_transport()
        logger.info(f"🛑 [{self.account_id}] WhatsApp session stopped")

    async def wait_for_teardown(self) -> None:
        """Await a running logout teardown, if any."""
        if self._teardown_task is not None:
            await asyncio.gather(self._teardown_task, return_exceptions=True)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            account_id=self.account_id,
            organization_id=self.context.organization_id if self.context else None,
            status=self.status,
            connected=self.status == SessionStatus.CONNECTED,
            pairing_image=self.pairing_image,
            last_error=self.last_error,
            phone_number=self.phone_number,
            display_name=self.display_name,
            updated_at=self.updated_at,
        )

    # ==========================================
    # STATE
    # ==========================================

    def _apply(self, event: SessionEvent) -> bool:
        new_status = next_status(self.status, event)
        if new_status is None:
            logger.info(f"ℹ️ [{self.account_id}] Ignoring {event.value} while {self.status.value}")
            return False
        if new_status != self.status:
            logger.info(f"🔀 [{self.account_id}] {self.status.value} -> {new_status.value} ({event.value})")
        self.status = new_status
        self.updated_at = _now()
        return True

    async def _publish(self) -> None:
        try:
            await self.broadcaster.publish_status(
                account_id=self.account_id,
                organization_id=self.context.organization_id if self.context else None,
                connected=self.status == SessionStatus.CONNECTED,
                pairing_image=self.pairing_image,
                last_error=self.last_error,
                status=self.status.value,
            )
        except Exception as e:
            logger.error(f"❌ [{self.account_id}] Status broadcast failed: {e}")

    async def _persist(self, error_message: Optional[str] = None) -> None:
        if not self.account_id:
            return
        try:
            await self.account_service.update_account_status(
                self.account_id, self.status.value, error_message=error_message,
            )
        except Exception as e:
            logger.error(f"❌ [{self.account_id}] Failed to persist status {self.status.value}: {e}")

    async def _fail(self, event: SessionEvent, error: str) -> None:
        if not self._apply(event):
            return
        self.last_error = error
        self.pairing_image = None
        await self._publish()
        await self._persist(error_message=error)

    # ==========================================
    # CONNECTION
    # ==========================================

    def _bind(self, transport: WhatsAppTransport) -> None:
        transport.on(TransportEventType.PAIRING_CHALLENGE, self._on_pairing_challenge)
        transport.on(TransportEventType.READY, self._on_ready)
        transport.on(TransportEventType.AUTHENTICATED, self._on_authenticated)
        transport.on(TransportEventType.AUTH_FAILURE, self._on_auth_failure)
        transport.on(TransportEventType.DISCONNECTED, self._on_disconnected)
        transport.on(TransportEventType.TRANSPORT_ERROR, self._on_transport_error)
        transport.on(TransportEventType.MESSAGE, self._on_message)

    async def _launch(self, ok_event: SessionEvent, fail_event: SessionEvent, failure_prefix: str) -> bool:
        try:
            transport = self.transport_factory(self.account_id)
            self._bind(transport)
        except Exception as e:
            await self._fail(fail_event, f"{failure_prefix}: {e}")
            return False

        self.transport = transport
        # Enter pending_pairing before initialize(): qr/ready callbacks may arrive before it returns
        if self._apply(ok_event):
            self.pairing_image = None
            self.last_error = None
            await self._publish()

        try:
            await transport.initialize()
            logger.info(f"✅ [{self.account_id}] WhatsApp client initialized")
            return True
        except Exception as e:
            logger.error(f"❌ [{self.account_id}] {failure_prefix}: {e}")
            await self._fail(fail_event, f"{failure_prefix}: {e}")
            return False

    async def _destroy_transport(self) -> None:
        transport, self.transport = self.transport, None
        if transport is None:
            return
        try:
            await transport.destroy()
            logger.info(f"✅ [{self.account_id}] Client destroyed")
        except Exception as e:
            # Already destroyed is fine
            logger.warning(f"⚠️ [{self.account_id}] Error destroying client (may already be destroyed): {e}")

    # ==========================================
    # TRANSPORT HANDLERS
    # ==========================================

    async def _on_pairing_challenge(self, event: TransportEvent) -> None:
        logger.info(f"📱 [{self.account_id}] QR received, scan with WhatsApp")
        if not self._apply(SessionEvent.PAIRING_CHALLENGE):
            return

        image = None
        transport = self.transport
        if transport is not None:
            try:
                image = await transport.render_pairing_image(event.payload)
            except Exception as e:
                logger.warning(f"⚠️ [{self.account_id}] Could not render QR image: {e}")
        self.pairing_image = image or (str(event.payload) if event.payload else None)
        self.last_error = None

        await self._publish()
        await self._persist()

    async def _on_ready(self, event: TransportEvent) -> None:
        logger.info(f"✅ [{self.account_id}] WhatsApp client is ready!")
        if not self._apply(SessionEvent.READY):
            return
        self.pairing_image = None
        self.last_error = None
        await self._publish()
        await self._persist()
        await self._resolve_identity()

    async def _resolve_identity(self) -> None:
        transport = self.transport
        if transport is None:
            return
        try:
            phone_number, display_name = await transport.get_identity()
        except Exception as e:
            logger.warning(f"⚠️ [{self.account_id}] Could not resolve phone number: {e}")
            return
        if not phone_number:
            return
        self.phone_number = phone_number
        self.display_name = display_name
        logger.info(f"📞 [{self.account_id}] WhatsApp number: {phone_number}")
        try:
            await self.account_service.update_account_identity(self.account_id, phone_number, display_name)
        except Exception as e:
            logger.error(f"❌ [{self.account_id}] Failed to persist phone number: {e}")

    async def _on_authenticated(self, event: TransportEvent) -> None:
        logger.info(f"✅ [{self.account_id}] WhatsApp authenticated")

    async def _on_auth_failure(self, event: TransportEvent) -> None:
        reason = event.reason or "Authentication failure"
        logger.error(f"❌ [{self.account_id}] Auth failure: {reason}")
        await self._fail(SessionEvent.AUTH_FAILURE, reason)

    async def _on_disconnected(self, event: TransportEvent) -> None:
        reason = event.reason or "unknown"
        logger.warning(f"⚠️ [{self.account_id}] WhatsApp client disconnected: {reason}")
        if not self._apply(SessionEvent.DISCONNECTED):
            return
        self.pairing_image = None
        self.last_error = reason
        await self._publish()
        await self._persist()

        if reason.strip().lower() == "logout" and self._apply(SessionEvent.LOGOUT):
            logger.info(f"🚪 [{self.account_id}] User logged out from phone, cleaning up session...")
            await self._publish()
            self._teardown_task = asyncio.create_task(self._logout_teardown())
            self._teardown_task.set_name(f"logout-teardown-{self.account_id}")

    async def _on_transport_error(self, event: TransportEvent) -> None:
        error = event.reason or "Unknown transport error"
        logger.error(f"❌ [{self.account_id}] WhatsApp client error: {error}")
        await self._fail(SessionEvent.TRANSPORT_ERROR, error)

    async def _on_message(self, event: TransportEvent) -> None:
        message: InboundMessage = event.payload
        if message is None or message.from_me:
            return
        if not self.context or self.transport is None:
            logger.warning(f"⚠️ [{self.account_id}] Message received without a bound session, skipping")
            return
        self.message_tasks.spawn(
            self.dispatcher.handle_message(message, self.context, self.transport),
            label=f"message-{message.message_id or message.chat_id}",
        )

    # ==========================================
    # LOGOUT TEARDOWN
    # ==========================================

    async def _logout_teardown(self) -> None:
        """destroy -> grace delay -> delete session dirs -> delay -> reinitialize"""
        try:
            session_dirs = list(self.transport.session_dirs) if self.transport else []
            await self._destroy_transport()

            await self._sleep(self.logout_grace_delay)
            for path in session_dirs:
                logger.info(f"🗑️ [{self.account_id}] Deleting session data: {path}")
                await delete_dir_safely(
                    path,
                    attempts=self.cleanup_attempts,
                    delay=self.cleanup_backoff,
                    sleep=self._sleep,
                )

            await self._sleep(self.reinit_delay)
            logger.info(f"🔄 [{self.account_id}] Reinitializing WhatsApp client...")
            await self._launch(SessionEvent.REINITIALIZED, SessionEvent.REINIT_FAILED, "Reinitialization failed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ [{self.account_id}] Logout teardown failed: {e}", exc_info=True)
            await self._fail(SessionEvent.REINIT_FAILED, f"Reinitialization failed: {e}")
