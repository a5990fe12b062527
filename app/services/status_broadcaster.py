"""
Status Broadcaster
Mirrors WhatsApp session status to dashboard clients over WebSocket.

One-way: publishers never wait for, or depend on, delivery. The latest state
of every account is kept so a dashboard that connects later gets it at once.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

from app.config import settings

logger = logging.getLogger(__name__)

STATUS_MESSAGE_TYPE = "whatsapp_status_update"


class ConnectionManager:
    """
    Manages WebSocket connections per organization.

    Status updates only go to listeners of the account's organization.
    """

    def __init__(self):
        # Structure: {organization_id: Set[WebSocket]}
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # Structure: {WebSocket: organization_id}
        self.connection_orgs: Dict[WebSocket, str] = {}

    def connect(self, websocket: WebSocket, organization_id: str) -> None:
        """
        Register an accepted WebSocket connection.

        Args:
            websocket: WebSocket connection instance (already accepted)
            organization_id: Organization UUID
        """
        self.active_connections.setdefault(organization_id, set()).add(websocket)
        self.connection_orgs[websocket] = organization_id

        logger.info(
            f"✅ WebSocket connected: org={organization_id}, "
            f"total_connections={len(self.active_connections[organization_id])}"
        )

    def disconnect(self, websocket: WebSocket) -> None:
        organization_id = self.connection_orgs.pop(websocket, None)
        if organization_id and organization_id in self.active_connections:
            self.active_connections[organization_id].discard(websocket)
            if not self.active_connections[organization_id]:
                del self.active_connections[organization_id]

        logger.info(f"🔌 WebSocket disconnected: org={organization_id}")

    async def send_personal_message(self, message: dict, websocket: WebSocket) -> None:
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"❌ Failed to send personal message: {e}")
            self.disconnect(websocket)

    async def broadcast_to_organization(self, message: dict, organization_id: str) -> None:
        """
        Broadcast message to all connections in an organization.

        Dead connections are dropped.
        """
        connections = list(self.active_connections.get(organization_id, ()))
        if not connections:
            logger.debug(f"No active connections for organization {organization_id}")
            return

        failed_connections = []
        for connection in connections:
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"❌ Failed to broadcast to connection: {e}")
                failed_connections.append(connection)

        for failed in failed_connections:
            self.disconnect(failed)

        logger.debug(
            f"📢 Broadcast to organization {organization_id}: "
            f"sent={len(connections) - len(failed_connections)}, failed={len(failed_connections)}"
        )

    def get_connection_count(self, organization_id: Optional[str] = None) -> int:
        if organization_id:
            return len(self.active_connections.get(organization_id, set()))
        return sum(len(connections) for connections in self.active_connections.values())


class StatusBroadcaster:
    """Latest-state store plus fan-out of session status changes"""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None, enabled: bool = True):
        self.connections = connection_manager or ConnectionManager()
        self.enabled = enabled
        # Structure: {account_id: {"organizationId", "accountId", "connected", ...}}
        self.states: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _message(state: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": STATUS_MESSAGE_TYPE, "data": state}

    async def publish_status(
        self,
        account_id: str,
        organization_id: Optional[str],
        connected: bool,
        pairing_image: Optional[str] = None,
        last_error: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record the account's status and push it to the organization's listeners.

        Never raises.

        Returns:
            The merged state that was published
        """
        state = {
            **self.states.get(account_id, {}),
            "accountId": account_id,
            "organizationId": organization_id,
            "connected": connected,
            "pairingImage": pairing_image,
            "lastError": last_error,
            "status": status,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        }
        self.states[account_id] = state

        if not self.enabled or not organization_id:
            return state

        try:
            await self.connections.broadcast_to_organization(self._message(state), organization_id)
        except Exception as e:
            logger.error(f"❌ Status broadcast failed for account {account_id}: {e}")
        return state

    def get_state(self, account_id: str) -> Optional[Dict[str, Any]]:
        return self.states.get(account_id)

    def states_for_organization(self, organization_id: str) -> List[Dict[str, Any]]:
        return [s for s in self.states.values() if s.get("organizationId") == organization_id]

    async def register_listener(self, websocket: WebSocket, organization_id: str) -> None:
        """Attach an accepted socket and send it the current state of every account."""
        self.connections.connect(websocket, organization_id)
        for state in self.states_for_organization(organization_id):
            await self.connections.send_personal_message(self._message(state), websocket)

    def unregister_listener(self, websocket: WebSocket) -> None:
        self.connections.disconnect(websocket)


_status_broadcaster: Optional[StatusBroadcaster] = None


def get_status_broadcaster() -> StatusBroadcaster:
    """Get or create StatusBroadcaster singleton"""
    global _status_broadcaster
    if _status_broadcaster is None:
        _status_broadcaster = StatusBroadcaster(enabled=settings.WEBSOCKET_ENABLED)
    return _status_broadcaster
