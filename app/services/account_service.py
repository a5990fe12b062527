"""
WhatsApp Account Service
Reads and updates WhatsApp account records in Supabase

Lifecycle (persisted statuses):
1. Account created by the admin surface -> 'pending_pairing'
2. Pairing code issued                  -> 'pending_pairing' (+ last_pairing_at)
3. Client ready                         -> 'connected' (+ last_connected_at, phone_number)
4. Connection lost                      -> 'disconnected'
5. Auth failure / transport error       -> 'error'
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.models.session import AccountContext, SessionStatus
from app.services.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

PERSISTED_STATUSES = {
    SessionStatus.PENDING_PAIRING.value,
    SessionStatus.CONNECTED.value,
    SessionStatus.DISCONNECTED.value,
    SessionStatus.ERROR.value,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AccountService:
    """Service for WhatsApp account records"""

    def __init__(self, supabase):
        """
        Initialize Account Service

        Args:
            supabase: Supabase client instance (None when not configured)
        """
        self.supabase = supabase

    async def get_account_by_id(self, account_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a single WhatsApp account by ID

        Args:
            account_id: WhatsApp account UUID

        Returns:
            Account row or None if missing / on error
        """
        if not self.supabase or not account_id:
            return None
        try:
            res = await asyncio.to_thread(
                lambda: self.supabase.table("whatsapp_accounts")
                .select("*")
                .eq("id", account_id)
                .limit(1)
                .execute()
            )
            return res.data[0] if res.data else None
        except Exception as e:
            logger.error(f"❌ Error fetching WhatsApp account {account_id}: {e}")
            return None

    async def get_first_account(self) -> Optional[Dict[str, Any]]:
        """Oldest account, for single-account deployments."""
        if not self.supabase:
            return None
        try:
            res = await asyncio.to_thread(
                lambda: self.supabase.table("whatsapp_accounts")
                .select("id, org_id")
                .order("created_at")
                .limit(1)
                .execute()
            )
            return res.data[0] if res.data else None
        except Exception as e:
            logger.error(f"❌ Error fetching first WhatsApp account: {e}")
            return None

    async def load_account_context(self) -> Optional[AccountContext]:
        """
        Resolve the (organization, account) pair this worker serves.

        Returns:
            AccountContext or None when no account exists yet
        """
        if not self.supabase:
            logger.warning("⚠️ Cannot load context: Supabase not configured")
            return None

        account = await self.get_first_account()
        if not account:
            logger.warning("⚠️ No WhatsApp account found in database. Messages will not be persisted until one exists.")
            return None

        context = AccountContext(organization_id=account["org_id"], account_id=account["id"])
        logger.info(f"📋 WhatsApp context loaded: org={context.organization_id}, account={context.account_id}")
        return context

    async def load_account_contexts(self, account_ids: Optional[List[str]] = None) -> List[AccountContext]:
        """
        Resolve contexts for an explicit list of accounts, or the first account.

        Unknown ids are logged and skipped.
        """
        if not account_ids:
            context = await self.load_account_context()
            return [context] if context else []

        contexts = []
        for account_id in account_ids:
            account = await self.get_account_by_id(account_id)
            if not account:
                logger.warning(f"⚠️ WhatsApp account {account_id} not found. Skipping.")
                continue
            contexts.append(AccountContext(organization_id=account["org_id"], account_id=account["id"]))
        return contexts

    async def update_account_status(
        self,
        account_id: str,
        status: str,
        phone_number: Optional[str] = None,
        display_name: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Update account status and lifecycle timestamps.

        Best-effort: errors are logged and None is returned.

        Args:
            account_id: WhatsApp account UUID
            status: One of pending_pairing / connected / disconnected / error
            phone_number: WhatsApp phone number (optional)
            display_name: Display name from WhatsApp (optional)
            error_message: Stored in notes when status is 'error'

        Returns:
            Updated account row or None
        """
        if not self.supabase or not account_id:
            return None

        status = getattr(status, "value", status)
        if status not in PERSISTED_STATUSES:
            logger.error(f"❌ Invalid account status: {status}. Must be one of: {', '.join(sorted(PERSISTED_STATUSES))}")
            return None

        updates: Dict[str, Any] = {"status": status}
        if status == SessionStatus.PENDING_PAIRING.value:
            updates["last_pairing_at"] = _now_iso()
        elif status == SessionStatus.CONNECTED.value:
            updates["last_connected_at"] = _now_iso()

        if phone_number:
            updates["phone_number"] = phone_number
        if display_name:
            updates["display_name"] = display_name
        if error_message and status == SessionStatus.ERROR.value:
            updates["notes"] = f"Error: {error_message}"

        try:
            res = await asyncio.to_thread(
                lambda: self.supabase.table("whatsapp_accounts")
                .update(updates)
                .eq("id", account_id)
                .execute()
            )
            logger.info(f"✅ Updated account {account_id} status to: {status}")
            return res.data[0] if res.data else None
        except Exception as e:
            logger.error(f"❌ Error updating account status for {account_id}: {e}")
            return None

    async def update_account_identity(
        self,
        account_id: str,
        phone_number: Optional[str],
        display_name: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Persist the phone number / push name once the client is ready."""
        if not self.supabase or not account_id or not phone_number:
            return None

        updates: Dict[str, Any] = {"phone_number": phone_number}
        if display_name:
            updates["display_name"] = display_name

        try:
            res = await asyncio.to_thread(
                lambda: self.supabase.table("whatsapp_accounts")
                .update(updates)
                .eq("id", account_id)
                .execute()
            )
            logger.info(f"✅ Updated account phone: {phone_number}")
            return res.data[0] if res.data else None
        except Exception as e:
            logger.error(f"❌ Error updating account phone number: {e}")
            return None


_account_service: Optional[AccountService] = None


def get_account_service() -> AccountService:
    """Get or create AccountService singleton"""
    global _account_service
    if _account_service is None:
        _account_service = AccountService(get_supabase_client())
    return _account_service
