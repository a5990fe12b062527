"""
Knowledge Retriever
Top-K knowledge base search scoped by organization and (optionally) account.

Preferred path is the `search_kb_chunks` pgvector RPC. When it is missing or
fails, ready chunks are fetched (capped) and ranked in process with cosine
similarity. Every failure mode returns an empty list.
"""
import asyncio
import json
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from app.config import settings
from app.models.knowledge import KnowledgeMatch
from app.services.account_service import AccountService, get_account_service
from app.services.gemini_service import GeminiService, get_gemini_service
from app.services.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

SENTINEL_LOW_SCORE = -1.0
EPSILON = 1e-10


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """
    dot(a, b) / (|a| * |b| + eps)

    Returns SENTINEL_LOW_SCORE when either vector is missing or the lengths differ.
    """
    if not a or not b or len(a) != len(b):
        return SENTINEL_LOW_SCORE

    dot = 0.0
    na = 0.0
    nb = 0.0
    for x, y in zip(a, b):
        dot += x * y
        na += x * x
        nb += y * y

    return dot / (math.sqrt(na) * math.sqrt(nb) + EPSILON)


def _parse_embedding(raw: Any) -> Optional[List[float]]:
    # pgvector columns come back from PostgREST as "[0.1,0.2,...]"
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("⚠️ Could not parse embedding string")
            return None
    if not isinstance(raw, list):
        return None
    return raw


class KnowledgeRetriever:
    """Semantic search over kb_chunks"""

    def __init__(
        self,
        supabase=None,
        gemini: Optional[GeminiService] = None,
        account_service: Optional[AccountService] = None,
        scan_limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.supabase = supabase if supabase is not None else get_supabase_client()
        self.gemini = gemini or get_gemini_service()
        self.account_service = account_service or get_account_service()
        self.scan_limit = scan_limit or settings.KB_FALLBACK_SCAN_LIMIT
        self.timeout = timeout or settings.KB_SEARCH_TIMEOUT

    async def _execute(self, build_query):
        return await asyncio.wait_for(asyncio.to_thread(lambda: build_query().execute()), timeout=self.timeout)

    async def _resolve_org_id(self, org_id: Optional[str], wa_account_id: Optional[str]) -> Optional[str]:
        if org_id:
            return org_id
        if not wa_account_id:
            return None
        account = await self.account_service.get_account_by_id(wa_account_id)
        return account.get("org_id") if account else None

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        org_id: Optional[str] = None,
        wa_account_id: Optional[str] = None,
    ) -> List[KnowledgeMatch]:
        """
        Search the knowledge base.

        Args:
            query: Search query text
            top_k: Maximum number of matches (default: KB_TOP_K)
            org_id: Organization scope (resolved from the account if omitted)
            wa_account_id: Optional account scope

        Returns:
            Matches sorted by descending score, at most ``top_k`` long
        """
        top_k = settings.KB_TOP_K if top_k is None else top_k
        if top_k <= 0 or not query or not query.strip():
            return []

        if not self.supabase:
            logger.error("❌ Supabase client not configured")
            return []

        try:
            org_id = await self._resolve_org_id(org_id, wa_account_id)
        except Exception as e:
            logger.error(f"❌ Could not resolve org for KB search: {e}")
            return []

        if not org_id:
            logger.warning("⚠️ No org_id available for KB search")
            return []

        try:
            query_embedding = await asyncio.wait_for(self.gemini.embed_text(query), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("❌ Query embedding timed out")
            return []

        if not query_embedding:
            logger.error("❌ Failed to generate query embedding")
            return []

        try:
            matches = await self._search_rpc(query_embedding, top_k, org_id, wa_account_id)
            if matches is not None:
                return matches

            logger.info("📝 Using in-memory similarity computation (search_kb_chunks RPC unavailable)")
            return await self._search_in_memory(query_embedding, top_k, org_id, wa_account_id)

        except asyncio.TimeoutError:
            logger.error("❌ KB search timed out")
            return []
        except Exception as e:
            logger.error(f"❌ Error in KB search: {e}", exc_info=True)
            return []

    async def _search_rpc(
        self,
        query_embedding: List[float],
        top_k: int,
        org_id: str,
        wa_account_id: Optional[str],
    ) -> Optional[List[KnowledgeMatch]]:
        """Server-side nearest neighbours. None means "use the fallback"."""
        params = {
            "query_embedding": query_embedding,
            "match_threshold": 0.0,
            "match_count": top_k * 3,
            "filter_org_id": org_id,
            "filter_wa_account_id": wa_account_id,
        }
        try:
            res = await self._execute(lambda: self.supabase.rpc("search_kb_chunks", params))
        except asyncio.TimeoutError:
            logger.warning("⚠️ search_kb_chunks RPC timed out, falling back")
            return None
        except Exception as e:
            logger.info(f"ℹ️ search_kb_chunks RPC failed: {e}")
            return None

        rows = res.data
        if not isinstance(rows, list):
            return None

        if wa_account_id:
            rows = [r for r in rows if r.get("wa_account_id") == wa_account_id]

        matches = [
            KnowledgeMatch(
                id=str(r.get("id")),
                text=r.get("text") or "",
                title=r.get("title") or "Unknown",
                score=float(r.get("similarity") or r.get("score") or 0),
                index=r.get("chunk_index"),
                wa_account_id=r.get("wa_account_id"),
                metadata=r.get("metadata") or {},
            )
            for r in rows
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def _search_in_memory(
        self,
        query_embedding: List[float],
        top_k: int,
        org_id: str,
        wa_account_id: Optional[str],
    ) -> List[KnowledgeMatch]:
        """Fetch ready chunks (capped) and rank them locally."""

        def build_query():
            q = (
                self.supabase.table("kb_chunks")
                .select(
                    "id, text, chunk_index, embedding, metadata, "
                    "kb_sources!inner(id, title, wa_account_id, org_id, status)"
                )
                .eq("kb_sources.org_id", org_id)
                .eq("kb_sources.status", "ready")
            )
            if wa_account_id:
                q = q.eq("kb_sources.wa_account_id", wa_account_id)
            return q.limit(self.scan_limit)

        res = await self._execute(build_query)
        chunks: List[Dict[str, Any]] = res.data or []
        if not chunks:
            return []

        scored: List[KnowledgeMatch] = []
        for chunk in chunks:
            embedding = _parse_embedding(chunk.get("embedding"))
            if embedding is None or len(embedding) != len(query_embedding):
                continue

            score = cosine_similarity(query_embedding, embedding)
            if score <= 0:
                continue

            source = chunk.get("kb_sources") or {}
            scored.append(KnowledgeMatch(
                id=str(chunk.get("id")),
                text=chunk.get("text") or "",
                title=source.get("title") or "Unknown",
                score=score,
                index=chunk.get("chunk_index"),
                wa_account_id=source.get("wa_account_id"),
                metadata=chunk.get("metadata") or {},
            ))

        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]


_knowledge_retriever: Optional[KnowledgeRetriever] = None


def get_knowledge_retriever() -> KnowledgeRetriever:
    """Get or create KnowledgeRetriever singleton"""
    global _knowledge_retriever
    if _knowledge_retriever is None:
        _knowledge_retriever = KnowledgeRetriever()
    return _knowledge_retriever


async def search(
    query: str,
    top_k: Optional[int] = None,
    org_id: Optional[str] = None,
    wa_account_id: Optional[str] = None,
) -> List[KnowledgeMatch]:
    """Module-level entry point using the shared retriever."""
    return await get_knowledge_retriever().search(query, top_k=top_k, org_id=org_id, wa_account_id=wa_account_id)
