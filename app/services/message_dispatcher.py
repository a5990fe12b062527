"""
Message Dispatcher
Per-inbound-message handler: retrieve -> generate -> send -> persist

Each message runs as its own task. Persistence is best-effort async
persistence: writes are spawned on `self.background` and never awaited by the
reply path, so a reply can reach the user without being recorded.
"""
import asyncio
import logging
import time
from typing import Any, Coroutine, Dict, List, Optional, Tuple

from app.config import settings
from app.models.conversation import SenderType
from app.models.session import AccountContext, InboundMessage
from app.services.ai_response_service import AIResponseService, get_ai_response_service
from app.services.conversation_store import ConversationStore, get_conversation_store
from app.services.knowledge_retriever import KnowledgeRetriever, get_knowledge_retriever
from app.utils.background import BackgroundTaskSet

logger = logging.getLogger(__name__)

HEALTHCHECK_REPLY = "pong 🏓 (WhatsApp bot + Gemini AI is online)"
APOLOGY_REPLY = "Sorry, something went wrong on my side."


class MessageDispatcher:
    """Glues the grounded-reply pipeline to a live connection"""

    def __init__(
        self,
        retriever: Optional[KnowledgeRetriever] = None,
        ai_service: Optional[AIResponseService] = None,
        store: Optional[ConversationStore] = None,
        top_k: Optional[int] = None,
        healthcheck_token: Optional[str] = None,
    ):
        self.retriever = retriever or get_knowledge_retriever()
        self.ai_service = ai_service or get_ai_response_service()
        self.store = store or get_conversation_store()
        self.top_k = settings.KB_TOP_K if top_k is None else top_k
        self.healthcheck_token = (healthcheck_token or settings.HEALTHCHECK_TOKEN).strip().lower()
        self.background = BackgroundTaskSet("persistence")
        # Structure: {(account_id, chat_id): [lock, tasks still holding or waiting on it]}
        self._chat_locks: Dict[Tuple[str, str], List[Any]] = {}

    def _spawn_persistence(self, context: AccountContext, chat_id: str, coro: Coroutine[Any, Any, Any], label: str) -> None:
        # Writes for one chat run in spawn order; chats never wait on each other
        key = (context.account_id, chat_id)
        entry = self._chat_locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        lock = entry[0]

        async def run() -> None:
            async with lock:
                await coro

        task = self.background.spawn(run(), label=label)
        task.add_done_callback(lambda _task: self._release_chat_lock(key, coro))

    def _release_chat_lock(self, key: Tuple[str, str], coro: Coroutine[Any, Any, Any]) -> None:
        # No-op once awaited; silences "never awaited" when cancelled before start
        coro.close()
        entry = self._chat_locks.get(key)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del self._chat_locks[key]

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Give queued persistence writes up to ``timeout`` seconds to finish, then cancel the rest.
        """
        timeout = settings.SHUTDOWN_DRAIN_TIMEOUT if timeout is None else timeout
        if not self.background.pending:
            return
        logger.info(f"⏳ Waiting for {self.background.pending} pending write(s)...")
        try:
            await asyncio.wait_for(self.background.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ {self.background.pending} write(s) still pending after {timeout}s, cancelling")
            await self.background.cancel_all()

    def _persist_incoming(self, context: AccountContext, message: InboundMessage, body: str) -> None:
        self._spawn_persistence(
            context,
            message.chat_id,
            self.store.save_incoming_message(
                org_id=context.organization_id,
                wa_account_id=context.account_id,
                contact_phone=message.chat_id,
                body=body,
                contact_name=message.sender_name,
                raw_message=message.raw,
            ),
            label=f"save-incoming-{message.chat_id}",
        )

    def _persist_outgoing(
        self,
        context: AccountContext,
        chat_id: str,
        body: str,
        ai_used: bool = False,
        ai_model: Optional[str] = None,
        ai_latency_ms: Optional[int] = None,
    ) -> None:
        self._spawn_persistence(
            context,
            chat_id,
            self.store.save_outgoing_message(
                org_id=context.organization_id,
                wa_account_id=context.account_id,
                contact_phone=chat_id,
                body=body,
                ai_used=ai_used,
                ai_model=ai_model,
                ai_latency_ms=ai_latency_ms,
                sender_type=SenderType.BOT.value,
            ),
            label=f"save-outgoing-{chat_id}",
        )

    async def handle_message(self, message: InboundMessage, context: AccountContext, transport) -> None:
        """
        Answer one inbound message over ``transport``.

        Never raises.

        Args:
            message: Normalized inbound message
            context: Organization/account the session is bound to
            transport: Connection the message arrived on (used for the reply)
        """
        body = (message.body or "").strip()
        if not body:
            return

        chat_id = message.chat_id
        logger.info(f"📩 [{context.account_id}] Message from {chat_id}: {body[:80]}")

        self._persist_incoming(context, message, body)

        try:
            if body.lower() == self.healthcheck_token:
                await transport.send_text(chat_id, HEALTHCHECK_REPLY)
                self._persist_outgoing(context, chat_id, HEALTHCHECK_REPLY)
                return

            started = time.monotonic()
            kb_matches = await self.retriever.search(
                body,
                top_k=self.top_k,
                org_id=context.organization_id,
                wa_account_id=context.account_id,
            )
            logger.info(f"🔍 [{context.account_id}] KB matches: {len(kb_matches)}")

            result = await self.ai_service.generate_reply_with_meta(body, kb_matches)
            latency_ms = int((time.monotonic() - started) * 1000)

            await transport.send_text(chat_id, result.text)
            logger.info(f"📤 [{context.account_id}] Replied to {chat_id} in {latency_ms} ms (ai_used={result.ai_used})")

            self._persist_outgoing(
                context,
                chat_id,
                result.text,
                ai_used=result.ai_used,
                ai_model=result.model,
                ai_latency_ms=latency_ms,
            )

        except Exception as e:
            logger.error(f"❌ [{context.account_id}] Error handling message from {chat_id}: {e}", exc_info=True)
            try:
                await transport.send_text(chat_id, APOLOGY_REPLY)
                self._persist_outgoing(context, chat_id, APOLOGY_REPLY)
            except Exception as send_error:
                logger.error(f"❌ [{context.account_id}] Failed to send error message: {send_error}")


_message_dispatcher: Optional[MessageDispatcher] = None


def get_message_dispatcher() -> MessageDispatcher:
    """Get or create MessageDispatcher singleton"""
    global _message_dispatcher
    if _message_dispatcher is None:
        _message_dispatcher = MessageDispatcher()
    return _message_dispatcher
