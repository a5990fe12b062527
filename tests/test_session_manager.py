import asyncio
from typing import Any, List, Optional

import pytest

from app.models.session import (
    AccountContext,
    InboundMessage,
    SessionEvent,
    SessionStatus,
    TransportEvent,
    TransportEventType,
)
from app.services.account_service import AccountService
from app.services.session_manager import SessionLifecycleManager, next_status
from app.services.session_registry import SessionRegistry
from app.services.status_broadcaster import StatusBroadcaster
from conftest import FakeSupabase, FakeTransport


class _TransportFactory:
    def __init__(self, tmp_path=None) -> None:
        self.tmp_path = tmp_path
        self.created: List[FakeTransport] = []
        self.fail_on: dict = {}

    def __call__(self, session_id: str) -> FakeTransport:
        auth_dir = cache_dir = ""
        if self.tmp_path is not None:
            auth_dir = str(self.tmp_path / "sessions" / f"session-{session_id}")
            cache_dir = str(self.tmp_path / ".wwebjs_cache")
        transport = FakeTransport(session_id, auth_dir=auth_dir, cache_dir=cache_dir)
        failure = self.fail_on.get(len(self.created))
        if failure is not None:
            transport.fail_initialize = failure
        self.created.append(transport)
        return transport


class _RecordingDispatcher:
    def __init__(self) -> None:
        self.handled: List[InboundMessage] = []
        self.drained: List[Any] = []

    async def handle_message(self, message, context, transport) -> None:
        self.handled.append(message)

    async def drain(self, timeout=None) -> None:
        self.drained.append(timeout)


async def _no_sleep(_seconds: float) -> None:
    return None


def _manager(db: FakeSupabase, factory: _TransportFactory, broadcaster: Optional[StatusBroadcaster] = None, **kwargs) -> SessionLifecycleManager:
    return SessionLifecycleManager(
        transport_factory=factory,
        account_service=AccountService(db),
        broadcaster=broadcaster or StatusBroadcaster(),
        dispatcher=kwargs.pop("dispatcher", _RecordingDispatcher()),
        logout_grace_delay=0,
        reinit_delay=0,
        cleanup_attempts=2,
        cleanup_backoff=0,
        sleep=kwargs.pop("sleep", _no_sleep),
        **kwargs,
    )


def _event(event_type: TransportEventType, payload=None, reason: Optional[str] = None) -> TransportEvent:
    return TransportEvent(type=event_type, payload=payload, reason=reason)


@pytest.fixture
def accounts_db(fake_supabase: FakeSupabase) -> FakeSupabase:
    fake_supabase.tables["whatsapp_accounts"] = [{"id": "acc-1", "org_id": "org-1", "status": "pending_pairing"}]
    return fake_supabase


# ==========================================
# TRANSITION FUNCTION
# ==========================================

@pytest.mark.parametrize("current,event,expected", [
    (SessionStatus.PENDING_PAIRING, SessionEvent.PAIRING_CHALLENGE, SessionStatus.PENDING_PAIRING),
    (SessionStatus.PENDING_PAIRING, SessionEvent.READY, SessionStatus.CONNECTED),
    (SessionStatus.CONNECTED, SessionEvent.DISCONNECTED, SessionStatus.DISCONNECTED),
    (SessionStatus.CONNECTED, SessionEvent.LOGOUT, SessionStatus.LOGGING_OUT),
    (SessionStatus.DISCONNECTED, SessionEvent.LOGOUT, SessionStatus.LOGGING_OUT),
    (SessionStatus.CONNECTED, SessionEvent.AUTH_FAILURE, SessionStatus.ERROR),
    (SessionStatus.DISCONNECTED, SessionEvent.TRANSPORT_ERROR, SessionStatus.ERROR),
    (SessionStatus.LOGGING_OUT, SessionEvent.REINITIALIZED, SessionStatus.PENDING_PAIRING),
    (SessionStatus.LOGGING_OUT, SessionEvent.REINIT_FAILED, SessionStatus.ERROR),
    (SessionStatus.PENDING_PAIRING, SessionEvent.REINIT_FAILED, SessionStatus.ERROR),
    (SessionStatus.ERROR, SessionEvent.STARTED, SessionStatus.PENDING_PAIRING),
])
def test_next_status_accepts(current: SessionStatus, event: SessionEvent, expected: SessionStatus) -> None:
    assert next_status(current, event) == expected


@pytest.mark.parametrize("current,event", [
    (SessionStatus.PENDING_PAIRING, SessionEvent.LOGOUT),
    (SessionStatus.ERROR, SessionEvent.LOGOUT),
    (SessionStatus.LOGGING_OUT, SessionEvent.READY),
    (SessionStatus.LOGGING_OUT, SessionEvent.DISCONNECTED),
    (SessionStatus.LOGGING_OUT, SessionEvent.STARTED),
    (SessionStatus.CONNECTED, SessionEvent.REINITIALIZED),
])
def test_next_status_rejects(current: SessionStatus, event: SessionEvent) -> None:
    assert next_status(current, event) is None


# ==========================================
# LIFECYCLE
# ==========================================

@pytest.mark.asyncio
async def test_pairing_then_ready(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    factory = _TransportFactory()
    broadcaster = StatusBroadcaster()
    manager = _manager(accounts_db, factory, broadcaster)

    assert await manager.start(account_context) is True
    assert manager.status == SessionStatus.PENDING_PAIRING
    assert factory.created[0].initialized

    await manager.handle_event(_event(TransportEventType.PAIRING_CHALLENGE, payload="QR-CODE"))
    assert manager.pairing_image == "data:image/png;base64,QR-CODE"
    account = accounts_db.rows("whatsapp_accounts")[0]
    assert account["status"] == "pending_pairing"
    assert account["last_pairing_at"]
    assert broadcaster.get_state("acc-1")["pairingImage"] == "data:image/png;base64,QR-CODE"

    await manager.handle_event(_event(TransportEventType.READY))
    assert manager.status == SessionStatus.CONNECTED
    assert manager.pairing_image is None
    assert account["status"] == "connected"
    assert account["last_connected_at"]
    assert account["phone_number"] == "628111222333"
    assert account["display_name"] == "Demo Shop"
    state = broadcaster.get_state("acc-1")
    assert state["connected"] is True
    assert state["lastError"] is None


@pytest.mark.asyncio
async def test_auth_failure_moves_to_error_without_retry(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    factory = _TransportFactory()
    manager = _manager(accounts_db, factory)
    await manager.start(account_context)

    await manager.handle_event(_event(TransportEventType.AUTH_FAILURE, reason="bad credentials"))

    assert manager.status == SessionStatus.ERROR
    assert manager.last_error == "bad credentials"
    assert len(factory.created) == 1
    account = accounts_db.rows("whatsapp_accounts")[0]
    assert account["status"] == "error"
    assert account["notes"] == "Error: bad credentials"


@pytest.mark.asyncio
async def test_transport_error_never_raises(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    manager = _manager(accounts_db, _TransportFactory())
    await manager.start(account_context)

    await manager.handle_event(_event(TransportEventType.TRANSPORT_ERROR, reason="browser crashed"))

    snapshot = manager.snapshot()
    assert snapshot.status == SessionStatus.ERROR
    assert snapshot.last_error == "browser crashed"
    assert snapshot.connected is False


@pytest.mark.asyncio
async def test_handler_crash_is_contained(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    class _ExplodingTransport(FakeTransport):
        async def get_identity(self):
            raise RuntimeError("identity lookup exploded")

        async def render_pairing_image(self, payload):
            raise RuntimeError("renderer exploded")

    manager = _manager(accounts_db, lambda session_id: _ExplodingTransport(session_id))
    await manager.start(account_context)

    await manager.handle_event(_event(TransportEventType.PAIRING_CHALLENGE, payload="RAW-QR"))
    assert manager.pairing_image == "RAW-QR"

    await manager.handle_event(_event(TransportEventType.READY))
    assert manager.status == SessionStatus.CONNECTED
    assert manager.phone_number is None


@pytest.mark.asyncio
async def test_emit_failure_is_reported_as_error(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    class _BrokenTransport(FakeTransport):
        async def emit(self, event):
            raise RuntimeError("handler blew up")

    manager = _manager(accounts_db, lambda session_id: _BrokenTransport(session_id))
    await manager.start(account_context)

    delivered = await manager.handle_event(_event(TransportEventType.READY))

    assert delivered is False
    assert manager.status == SessionStatus.ERROR
    assert manager.last_error == "handler blew up"


@pytest.mark.asyncio
async def test_initialization_failure(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    factory = _TransportFactory()
    factory.fail_on[0] = RuntimeError("api unreachable")
    manager = _manager(accounts_db, factory)

    assert await manager.start(account_context) is False
    assert manager.status == SessionStatus.ERROR
    assert manager.last_error == "Initialization failed: api unreachable"


@pytest.mark.asyncio
async def test_plain_disconnect_waits_for_restart(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    factory = _TransportFactory()
    manager = _manager(accounts_db, factory)
    await manager.start(account_context)
    await manager.handle_event(_event(TransportEventType.READY))

    await manager.handle_event(_event(TransportEventType.DISCONNECTED, reason="NAVIGATION"))
    await manager.wait_for_teardown()

    assert manager.status == SessionStatus.DISCONNECTED
    assert manager.last_error == "NAVIGATION"
    assert len(factory.created) == 1

    assert await manager.restart() is True
    assert manager.status == SessionStatus.PENDING_PAIRING
    assert factory.created[0].destroyed
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_messages_are_dispatched_as_tasks(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    dispatcher = _RecordingDispatcher()
    manager = _manager(accounts_db, _TransportFactory(), dispatcher=dispatcher)
    await manager.start(account_context)
    await manager.handle_event(_event(TransportEventType.READY))

    mine = InboundMessage(chat_id="628123@c.us", body="echo", from_me=True)
    theirs = InboundMessage(chat_id="628123@c.us", body="hello")
    await manager.handle_event(_event(TransportEventType.MESSAGE, payload=mine))
    await manager.handle_event(_event(TransportEventType.MESSAGE, payload=theirs))
    await manager.message_tasks.join()

    assert dispatcher.handled == [theirs]


# ==========================================
# LOGOUT TEARDOWN
# ==========================================

@pytest.mark.asyncio
async def test_logout_cleans_up_and_reinitializes(accounts_db: FakeSupabase, account_context: AccountContext, tmp_path) -> None:
    factory = _TransportFactory(tmp_path)
    manager = _manager(accounts_db, factory)
    await manager.start(account_context)
    await manager.handle_event(_event(TransportEventType.READY))

    auth_dir = tmp_path / "sessions" / "session-acc-1" / "Default"
    auth_dir.mkdir(parents=True)
    (auth_dir / "Cookies").write_text("x")
    (tmp_path / ".wwebjs_cache").mkdir()
    (tmp_path / ".wwebjs_cache" / "index.html").write_text("x")

    await manager.handle_event(_event(TransportEventType.DISCONNECTED, reason="LOGOUT"))
    await manager.wait_for_teardown()

    assert manager.status == SessionStatus.PENDING_PAIRING
    assert factory.created[0].destroyed
    assert len(factory.created) == 2
    assert factory.created[1].initialized
    assert manager.transport is factory.created[1]
    assert not (tmp_path / "sessions" / "session-acc-1").exists()
    assert not (tmp_path / ".wwebjs_cache").exists()


@pytest.mark.asyncio
async def test_logout_with_failed_reinit_ends_in_error(accounts_db: FakeSupabase, account_context: AccountContext, tmp_path) -> None:
    factory = _TransportFactory(tmp_path)
    factory.fail_on[1] = RuntimeError("browser did not launch")
    manager = _manager(accounts_db, factory)
    await manager.start(account_context)
    await manager.handle_event(_event(TransportEventType.READY))

    await manager.handle_event(_event(TransportEventType.DISCONNECTED, reason="logout"))
    await manager.wait_for_teardown()

    assert manager.status == SessionStatus.ERROR
    assert manager.last_error == "Reinitialization failed: browser did not launch"
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_logout_survives_destroy_failure(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    factory = _TransportFactory()
    manager = _manager(accounts_db, factory)
    await manager.start(account_context)
    await manager.handle_event(_event(TransportEventType.READY))
    factory.created[0].fail_destroy = RuntimeError("already destroyed")

    await manager.handle_event(_event(TransportEventType.DISCONNECTED, reason="LOGOUT"))
    await manager.wait_for_teardown()

    assert manager.status == SessionStatus.PENDING_PAIRING
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_events_during_teardown_are_ignored(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    gate = asyncio.Event()

    async def gated_sleep(_seconds: float) -> None:
        await gate.wait()

    factory = _TransportFactory()
    manager = _manager(accounts_db, factory, sleep=gated_sleep)
    await manager.start(account_context)
    await manager.handle_event(_event(TransportEventType.READY))

    await manager.handle_event(_event(TransportEventType.DISCONNECTED, reason="LOGOUT"))
    await asyncio.sleep(0)
    assert manager.status == SessionStatus.LOGGING_OUT

    assert await manager.handle_event(_event(TransportEventType.READY)) is False
    assert await manager.restart() is False
    assert manager.status == SessionStatus.LOGGING_OUT

    gate.set()
    await manager.wait_for_teardown()
    assert manager.status == SessionStatus.PENDING_PAIRING


@pytest.mark.asyncio
async def test_stop_cancels_pending_teardown(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    async def never(_seconds: float) -> None:
        await asyncio.Event().wait()

    manager = _manager(accounts_db, _TransportFactory(), sleep=never)
    await manager.start(account_context)
    await manager.handle_event(_event(TransportEventType.READY))
    await manager.handle_event(_event(TransportEventType.DISCONNECTED, reason="LOGOUT"))

    await manager.stop()

    assert manager.transport is None


# ==========================================
# REGISTRY
# ==========================================

@pytest.mark.asyncio
async def test_one_account_fault_does_not_affect_another(accounts_db: FakeSupabase) -> None:
    accounts_db.tables["whatsapp_accounts"].append({"id": "acc-2", "org_id": "org-1"})
    factory = _TransportFactory()
    registry = SessionRegistry(manager_factory=lambda: _manager(accounts_db, factory))

    await registry.start_all([
        AccountContext(organization_id="org-1", account_id="acc-1"),
        AccountContext(organization_id="org-1", account_id="acc-2"),
    ])
    await registry.route_event("acc-1", _event(TransportEventType.READY))
    await registry.route_event("acc-2", _event(TransportEventType.READY))

    await registry.route_event("acc-1", _event(TransportEventType.TRANSPORT_ERROR, reason="crash"))

    assert registry.get("acc-1").status == SessionStatus.ERROR
    assert registry.get("acc-2").status == SessionStatus.CONNECTED
    assert await registry.route_event("unknown", _event(TransportEventType.READY)) is False

    await registry.shutdown()
    assert all(t.destroyed for t in factory.created)


@pytest.mark.asyncio
async def test_shutdown_drains_a_shared_dispatcher_once(accounts_db: FakeSupabase) -> None:
    accounts_db.tables["whatsapp_accounts"].append({"id": "acc-2", "org_id": "org-1"})
    dispatcher = _RecordingDispatcher()
    registry = SessionRegistry(manager_factory=lambda: _manager(accounts_db, _TransportFactory(), dispatcher=dispatcher))
    await registry.start_all([
        AccountContext(organization_id="org-1", account_id="acc-1"),
        AccountContext(organization_id="org-1", account_id="acc-2"),
    ])

    await registry.shutdown(drain_timeout=2.5)

    assert dispatcher.drained == [2.5]


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_replies(accounts_db: FakeSupabase, account_context: AccountContext) -> None:
    class _SlowDispatcher(_RecordingDispatcher):
        def __init__(self) -> None:
            super().__init__()
            self.started = asyncio.Event()
            self.cancelled = False

        async def handle_message(self, message, context, transport) -> None:
            self.started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise

    dispatcher = _SlowDispatcher()
    manager = _manager(accounts_db, _TransportFactory(), dispatcher=dispatcher)
    await manager.start(account_context)
    await manager.handle_event(_event(TransportEventType.READY))
    await manager.handle_event(_event(TransportEventType.MESSAGE, payload=InboundMessage(chat_id="628123@c.us", body="hello")))
    await dispatcher.started.wait()

    await manager.stop()

    assert manager.message_tasks.pending == 0
    assert dispatcher.cancelled is True
    assert manager.transport is None
