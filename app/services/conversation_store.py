"""
Conversation Store
Persists WhatsApp exchanges to Supabase for analytics.

Contact -> Conversation -> Messages, all scoped to (organization, account).
Find-or-create steps are idempotent, so a failed save is simply re-run by the
next message. Messages are append-only.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.models.conversation import ConversationStatus, MessageDirection, SenderType
from app.services.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100


class ConversationStoreError(Exception):
    """A persistence step failed"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _raw_message_id(raw_message: Optional[Dict[str, Any]]) -> Optional[str]:
    if not raw_message:
        return None
    raw_id = raw_message.get("id")
    if isinstance(raw_id, dict):
        return raw_id.get("id") or raw_id.get("_serialized")
    return raw_id


class ConversationStore:
    """Contact / conversation / message persistence"""

    def __init__(self, supabase):
        """
        Initialize Conversation Store

        Args:
            supabase: Supabase client instance
        """
        self.supabase = supabase

    def _require_client(self):
        if not self.supabase:
            raise ConversationStoreError("Supabase client not configured")
        return self.supabase

    async def find_or_create_contact(
        self,
        org_id: str,
        wa_account_id: str,
        wa_number: str,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Find or create a contact for a WhatsApp number.

        Repeat calls bump last_seen_at (and the name when one is given).

        Args:
            org_id: Organization UUID
            wa_account_id: WhatsApp account UUID
            wa_number: Remote address (e.g. 1234567890@c.us)
            name: Contact display name, if known

        Returns:
            Contact row

        Raises:
            ConversationStoreError: If the lookup or insert fails
        """
        client = self._require_client()
        try:
            existing = await asyncio.to_thread(
                lambda: client.table("contacts")
                .select("*")
                .eq("org_id", org_id)
                .eq("wa_account_id", wa_account_id)
                .eq("wa_number", wa_number)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise ConversationStoreError(f"Contact lookup failed: {e}") from e

        if existing.data:
            contact = existing.data[0]
            updates: Dict[str, Any] = {"last_seen_at": _now_iso()}
            if name:
                updates["name"] = name
            try:
                await asyncio.to_thread(
                    lambda: client.table("contacts").update(updates).eq("id", contact["id"]).execute()
                )
                contact = {**contact, **updates}
            except Exception as e:
                logger.warning(f"⚠️ Failed to update contact last_seen_at: {e}")
            return contact

        now = _now_iso()
        try:
            created = await asyncio.to_thread(
                lambda: client.table("contacts")
                .insert({
                    "org_id": org_id,
                    "wa_account_id": wa_account_id,
                    "wa_number": wa_number,
                    "name": name,
                    "first_seen_at": now,
                    "last_seen_at": now,
                })
                .execute()
            )
        except Exception as e:
            raise ConversationStoreError(f"Contact insert failed: {e}") from e

        if not created.data:
            raise ConversationStoreError("Contact insert returned no row")

        logger.info(f"✅ Created new contact: {wa_number}")
        return created.data[0]

    async def find_or_create_conversation(
        self,
        org_id: str,
        wa_account_id: str,
        contact_id: str,
    ) -> Dict[str, Any]:
        """
        Find the open (non-deleted) conversation for a contact or start one.

        Raises:
            ConversationStoreError: If the lookup or insert fails
        """
        client = self._require_client()
        try:
            existing = await asyncio.to_thread(
                lambda: client.table("conversations")
                .select("*")
                .eq("org_id", org_id)
                .eq("wa_account_id", wa_account_id)
                .eq("contact_id", contact_id)
                .is_("deleted_at", "null")
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise ConversationStoreError(f"Conversation lookup failed: {e}") from e

        if existing.data:
            return existing.data[0]

        try:
            created = await asyncio.to_thread(
                lambda: client.table("conversations")
                .insert({
                    "org_id": org_id,
                    "wa_account_id": wa_account_id,
                    "contact_id": contact_id,
                    "status": ConversationStatus.OPEN.value,
                    "created_at": _now_iso(),
                })
                .execute()
            )
        except Exception as e:
            raise ConversationStoreError(f"Conversation insert failed: {e}") from e

        if not created.data:
            raise ConversationStoreError("Conversation insert returned no row")

        logger.info(f"✅ Created new conversation for contact: {contact_id}")
        return created.data[0]

    async def append_message(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one message row. Never updates."""
        client = self._require_client()
        record = {**record, "created_at": record.get("created_at") or _now_iso()}
        try:
            created = await asyncio.to_thread(lambda: client.table("messages").insert(record).execute())
        except Exception as e:
            raise ConversationStoreError(f"Message insert failed: {e}") from e

        if not created.data:
            raise ConversationStoreError("Message insert returned no row")
        return created.data[0]

    async def update_conversation_preview(self, conversation_id: str, body: Optional[str]) -> None:
        """Denormalized last-message fields for list views."""
        client = self._require_client()
        preview = body[:PREVIEW_LENGTH] if body else "(no text)"
        try:
            await asyncio.to_thread(
                lambda: client.table("conversations")
                .update({"last_message_at": _now_iso(), "last_message_preview": preview})
                .eq("id", conversation_id)
                .execute()
            )
        except Exception as e:
            raise ConversationStoreError(f"Conversation preview update failed: {e}") from e

    async def _save(
        self,
        org_id: str,
        wa_account_id: str,
        contact_phone: str,
        contact_name: Optional[str],
        message_fields: Dict[str, Any],
    ) -> Dict[str, Any]:
        contact = await self.find_or_create_contact(org_id, wa_account_id, contact_phone, contact_name)
        conversation = await self.find_or_create_conversation(org_id, wa_account_id, contact["id"])
        message = await self.append_message({
            "org_id": org_id,
            "conversation_id": conversation["id"],
            "wa_account_id": wa_account_id,
            **message_fields,
        })
        await self.update_conversation_preview(conversation["id"], message_fields.get("body"))
        return message

    async def save_incoming_message(
        self,
        org_id: str,
        wa_account_id: str,
        contact_phone: str,
        body: str,
        contact_name: Optional[str] = None,
        raw_message: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Save an inbound WhatsApp message.

        Returns:
            Saved message row, or None if any step failed (logged)
        """
        try:
            logger.info(f"💾 Saving incoming message from {contact_phone}...")
            message = await self._save(org_id, wa_account_id, contact_phone, contact_name, {
                "direction": MessageDirection.INBOUND.value,
                "sender_type": SenderType.USER.value,
                "wa_message_id": _raw_message_id(raw_message),
                "body": body,
                "message_type": (raw_message or {}).get("type") or "text",
                "ai_used": False,
            })
            logger.info(f"✅ Saved incoming message: {message.get('id')}")
            return message
        except Exception as e:
            logger.error(f"❌ Error saving incoming message: {e}", exc_info=True)
            return None

    async def save_outgoing_message(
        self,
        org_id: str,
        wa_account_id: str,
        contact_phone: str,
        body: str,
        ai_used: bool = False,
        ai_model: Optional[str] = None,
        ai_latency_ms: Optional[int] = None,
        sender_type: str = SenderType.BOT.value,
        raw_message: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Save an outbound message (bot or human agent reply).

        Returns:
            Saved message row, or None if any step failed (logged)
        """
        try:
            logger.info(f"💾 Saving outgoing message to {contact_phone}...")
            message = await self._save(org_id, wa_account_id, contact_phone, None, {
                "direction": MessageDirection.OUTBOUND.value,
                "sender_type": getattr(sender_type, "value", sender_type),
                "wa_message_id": _raw_message_id(raw_message),
                "body": body,
                "message_type": "text",
                "ai_used": ai_used,
                "ai_model": ai_model,
                "ai_latency_ms": ai_latency_ms,
            })
            logger.info(f"✅ Saved outgoing message: {message.get('id')}")
            return message
        except Exception as e:
            logger.error(f"❌ Error saving outgoing message: {e}", exc_info=True)
            return None


_conversation_store: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    """Get or create ConversationStore singleton"""
    global _conversation_store
    if _conversation_store is None:
        _conversation_store = ConversationStore(get_supabase_client())
    return _conversation_store


async def save_incoming_message(**kwargs) -> Optional[Dict[str, Any]]:
    return await get_conversation_store().save_incoming_message(**kwargs)


async def save_outgoing_message(**kwargs) -> Optional[Dict[str, Any]]:
    return await get_conversation_store().save_outgoing_message(**kwargs)
