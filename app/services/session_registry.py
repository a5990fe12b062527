"""
Session Registry
account_id -> SessionLifecycleManager, one isolated manager per account.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from app.models.session import AccountContext, SessionSnapshot, TransportEvent
from app.services.session_manager import SessionLifecycleManager

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Holds the live session managers of this process"""

    def __init__(self, manager_factory: Optional[Callable[[], SessionLifecycleManager]] = None):
        self.manager_factory = manager_factory or SessionLifecycleManager
        self.managers: Dict[str, SessionLifecycleManager] = {}

    def get(self, account_id: str) -> Optional[SessionLifecycleManager]:
        return self.managers.get(account_id)

    async def start_account(self, context: AccountContext) -> SessionLifecycleManager:
        """Create (or reuse) the account's manager and start it."""
        manager = self.managers.get(context.account_id)
        if manager is None:
            manager = self.manager_factory()
            self.managers[context.account_id] = manager
        await manager.start(context)
        return manager

    async def start_all(self, contexts: List[AccountContext]) -> None:
        """Start every account concurrently. One failing start does not affect the others."""
        results = await asyncio.gather(
            *(self.start_account(context) for context in contexts),
            return_exceptions=True,
        )
        for context, result in zip(contexts, results):
            if isinstance(result, Exception):
                logger.error(f"❌ Failed to start session for account {context.account_id}: {result}")

        logger.info(f"✅ {len(self.managers)} WhatsApp session(s) registered")

    async def route_event(self, account_id: str, event: TransportEvent) -> bool:
        """
        Hand a transport event to the owning manager.

        Returns:
            False if no manager owns ``account_id`` or the event was dropped
        """
        manager = self.managers.get(account_id)
        if manager is None:
            logger.warning(f"⚠️ No session registered for account {account_id}, dropping {event.type.value}")
            return False
        return await manager.handle_event(event)

    def snapshots(self) -> List[SessionSnapshot]:
        return [manager.snapshot() for manager in self.managers.values()]

    async def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        """Stop every session, then let queued message writes finish (bounded)."""
        managers = list(self.managers.values())
        await asyncio.gather(
            *(manager.stop() for manager in managers),
            return_exceptions=True,
        )

        # Managers usually share one dispatcher
        dispatchers = {id(d): d for d in (m.bound_dispatcher for m in managers) if d is not None}
        results = await asyncio.gather(
            *(d.drain(drain_timeout) for d in dispatchers.values()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"❌ Failed to drain pending writes: {result}")

        logger.info("🛑 All WhatsApp sessions stopped")


_session_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    """Get or create SessionRegistry singleton"""
    global _session_registry
    if _session_registry is None:
        _session_registry = SessionRegistry()
    return _session_registry
