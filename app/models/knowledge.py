"""
Knowledge Models
Retrieval results and generated replies
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class KnowledgeMatch(BaseModel):
    """One retrieved knowledge base chunk"""
    id: str = Field(..., description="Chunk UUID")
    text: str = Field(..., description="Chunk text")
    title: str = Field(default="Unknown", description="Title of the parent source")
    score: float = Field(..., description="Similarity score (higher is closer)")
    index: Optional[int] = Field(None, description="Position of the chunk inside its source")
    wa_account_id: Optional[str] = Field(None, description="Owning account, None for shared KB")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReplyResult(BaseModel):
    """Generated reply plus what the analytics trail needs to know about it"""
    text: str
    ai_used: bool = Field(..., description="True only when the model produced the text")
    model: Optional[str] = Field(None, description="Model that was called, if any")
    error: Optional[str] = Field(None, description="Internal failure reason, never shown to users")
