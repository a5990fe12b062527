"""
AI Response Service
Builds a grounded prompt from knowledge base matches and asks Gemini for a reply

Flow:
1. Render up to K matches as ordered snippets (title + similarity score)
2. Build the user turn (snippets + question, or an explicit "no snippets" note)
3. Call Gemini with the system instruction
4. Map every failure to a fixed user-safe string; never return an empty reply
"""
import logging
from typing import List, Optional, Sequence, Union

import httpx

from app.config import settings
from app.models.knowledge import KnowledgeMatch, ReplyResult
from app.services.gemini_service import GeminiAPIError, GeminiService, get_gemini_service

logger = logging.getLogger(__name__)

# User-visible fallbacks. Never include internal error details here.
GENERATION_ERROR_REPLY = "Sorry, I'm unable to generate a response right now. Please try again in a moment."
UNEXPECTED_ERROR_REPLY = "Sorry, something went wrong while preparing my reply. Please try again."
REPHRASE_REPLY = "I'm not sure, could you rephrase?"

NO_SNIPPETS_NOTE = (
    "No knowledge base snippets were retrieved. Answer from general knowledge, "
    "but keep the answer relevant to this business."
)

MatchLike = Union[KnowledgeMatch, dict]


def _as_match(match: MatchLike) -> KnowledgeMatch:
    if isinstance(match, KnowledgeMatch):
        return match
    return KnowledgeMatch(**match)


def _format_score(score: Optional[float]) -> str:
    if score is None:
        return "n/a"
    return f"{score:.3f}"


def build_kb_context(kb_matches: Sequence[MatchLike], max_snippets: Optional[int] = None) -> str:
    """Render matches as numbered snippets, keeping the given order."""
    limit = max_snippets if max_snippets is not None else settings.KB_TOP_K
    snippets = []
    for i, raw in enumerate(list(kb_matches)[:limit]):
        m = _as_match(raw)
        snippets.append(f'Snippet {i + 1} (from "{m.title}", score: {_format_score(m.score)}):\n{m.text}')
    return "\n\n".join(snippets)


def build_user_prompt(user_message: str, kb_matches: Sequence[MatchLike], max_snippets: Optional[int] = None) -> str:
    """Assemble the user turn sent to the model."""
    kb_context = build_kb_context(kb_matches, max_snippets)
    if kb_context:
        return (
            f"Use these knowledge base snippets when relevant:\n\n{kb_context}"
            f"\n\nUser question:\n{user_message}"
        )
    return f"{NO_SNIPPETS_NOTE}\n\nUser question:\n{user_message}"


class AIResponseService:
    """Grounded reply generation on top of Gemini."""

    def __init__(
        self,
        gemini: Optional[GeminiService] = None,
        system_instruction: Optional[str] = None,
        max_snippets: Optional[int] = None,
    ):
        self.gemini = gemini or get_gemini_service()
        self.system_instruction = system_instruction or settings.SYSTEM_INSTRUCTION
        self.max_snippets = max_snippets if max_snippets is not None else settings.KB_TOP_K

    @property
    def model(self) -> str:
        return self.gemini.model

    async def generate_reply_with_meta(
        self,
        user_message: str,
        kb_matches: Optional[List[MatchLike]] = None,
        system_instruction: Optional[str] = None,
    ) -> ReplyResult:
        """
        Generate a reply and report whether the model actually produced it.

        Never raises.
        """
        kb_matches = kb_matches or []
        model = self.model

        try:
            user_prompt = build_user_prompt(user_message, kb_matches, self.max_snippets)
            output = await self.gemini.generate_content(
                system_instruction or self.system_instruction,
                user_prompt,
            )
        except GeminiAPIError as e:
            logger.error(f"❌ Gemini Text Error {e.status_code}: {e.detail}")
            return ReplyResult(text=GENERATION_ERROR_REPLY, ai_used=False, model=model, error=str(e))
        except httpx.HTTPError as e:
            logger.error(f"❌ Gemini request failed: {e!r}")
            return ReplyResult(text=GENERATION_ERROR_REPLY, ai_used=False, model=model, error=repr(e))
        except Exception as e:
            logger.error(f"❌ generate_reply Error: {e}", exc_info=True)
            return ReplyResult(text=UNEXPECTED_ERROR_REPLY, ai_used=False, model=model, error=str(e))

        if not output or not output.strip():
            logger.warning("⚠️ Gemini returned an empty reply, using rephrase fallback")
            return ReplyResult(text=REPHRASE_REPLY, ai_used=False, model=model, error="empty_generation")

        return ReplyResult(text=output.strip(), ai_used=True, model=model)

    async def generate_reply(
        self,
        user_message: str,
        kb_matches: Optional[List[MatchLike]] = None,
        system_instruction: Optional[str] = None,
    ) -> str:
        """
        Generate a grounded reply text.

        Args:
            user_message: Raw text from the end user
            kb_matches: Retrieved knowledge chunks, best first
            system_instruction: Override for the default system instruction

        Returns:
            Non-empty reply text (a fixed fallback on any failure)
        """
        result = await self.generate_reply_with_meta(user_message, kb_matches, system_instruction)
        return result.text


_ai_response_service: Optional[AIResponseService] = None


def get_ai_response_service() -> AIResponseService:
    """Get or create AIResponseService singleton"""
    global _ai_response_service
    if _ai_response_service is None:
        _ai_response_service = AIResponseService()
    return _ai_response_service


async def generate_reply(
    user_message: str,
    kb_matches: Optional[List[MatchLike]] = None,
    system_instruction: Optional[str] = None,
) -> str:
    """Module-level entry point using the shared service."""
    return await get_ai_response_service().generate_reply(user_message, kb_matches, system_instruction)
