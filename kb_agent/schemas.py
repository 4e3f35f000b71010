"""Pydantic request/response schemas and the records passed between layers.

Defines the public contracts used by the FastAPI endpoints and the agent tool:
- ArticleRecord: Storage-agnostic view of a stored article.
- ArticleResult: Article as returned by search (content carries a "(Source: url)" suffix).
- SourceRef: Citation attached to an agent answer.
- SendMessageRequest / SendMessageResponse: Agent conversation turn.
- SearchRequest: Direct article search.
- LimitResult / LimitValue / ConsumeRequest / ResetRequest: Rate-limit administration.
- ArticleIn / ArticleCreated / BackfillResult: Article ingestion.
- ArticleView / ArticlePage: Article reads.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ArticleRecord(BaseModel):
    """A stored article, detached from any database session."""
    id: str
    original_id: Optional[int] = None
    title: str
    subtitle: Optional[str] = None
    content: str = ""
    link: str = ""
    channel_id: Optional[int] = None
    author_id: Optional[int] = None
    status: Optional[int] = None
    embedding: Optional[List[float]] = None
    embedding_truncated: bool = False


class ArticleResult(BaseModel):
    """Search hit prepared for LLM consumption.

    Attributes:
        id: Article identifier.
        title: Article title.
        content: Article body with "(Source: <url>)" appended; the stored body is untouched.
        subtitle: Optional subtitle.
        link: The article's link slug as stored.
        reconstructed_link: Public URL built from the channel slug and link slug.
    """
    id: str
    title: str
    content: str
    subtitle: Optional[str] = None
    link: str
    reconstructed_link: str


class SourceRef(BaseModel):
    title: str
    link: str
    truncated_content: str


class SendMessageRequest(BaseModel):
    """Request body for one agent conversation turn.

    Attributes:
        conversation_id: Existing thread to continue; a new one is created when absent.
        prompt: The user message.
        owner_id: Optional owner recorded on newly created threads.
        sponsored_contributor_ids: Contributor allowlist for sponsored results.
    """
    conversation_id: Optional[str] = None
    prompt: str = Field(..., min_length=1, description="User message")
    owner_id: Optional[str] = None
    sponsored_contributor_ids: Optional[List[int]] = None


class SendMessageResponse(BaseModel):
    """Agent answer with organic and sponsored citations.

    sources is None when the search tool was never called, and an empty list when it
    was called but returned nothing citable. sponsored_sources is None when no
    allowlist was supplied.
    """
    thread_id: str
    response_text: str
    sources: Optional[List[SourceRef]] = None
    sponsored_sources: Optional[List[SourceRef]] = None


MAX_SEARCH_LIMIT = 50


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    filter_channel: Optional[str] = None
    filter_status: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1, le=MAX_SEARCH_LIMIT)
    conversation_id: Optional[str] = None


class LimitResult(BaseModel):
    ok: bool
    retry_after_ms: Optional[int] = None


class LimitValue(BaseModel):
    value: float
    timestamp: float  # last refill, epoch milliseconds


class ConsumeRequest(BaseModel):
    key: Optional[str] = None
    count: int = Field(default=1, ge=1)


class ResetRequest(BaseModel):
    key: Optional[str] = None


class ArticleIn(BaseModel):
    """Article fields accepted on create and full update."""
    original_id: Optional[int] = None
    title: str = Field(..., min_length=1)
    subtitle: Optional[str] = None
    content: str = ""
    link: str = ""
    channel_id: Optional[int] = None
    author_id: Optional[int] = None
    status: Optional[int] = None
    publish_date: Optional[datetime] = None
    last_updated: Optional[datetime] = None


class ArticleCreated(BaseModel):
    id: str


class BackfillResult(BaseModel):
    processed: int
    total: int
    message: str
    is_done: bool
    continue_cursor: Optional[str] = None


class ArticleView(BaseModel):
    """An article as returned by the read endpoints; the vector itself is omitted."""
    id: str
    original_id: Optional[int] = None
    title: str
    subtitle: Optional[str] = None
    content: str = ""
    link: str = ""
    channel_id: Optional[int] = None
    author_id: Optional[int] = None
    status: Optional[int] = None
    has_embedding: bool = False
    embedding_truncated: bool = False

    @classmethod
    def from_record(cls, record: ArticleRecord) -> "ArticleView":
        return cls(
            has_embedding=record.embedding is not None,
            **record.model_dump(exclude={"embedding"}),
        )


class ArticlePage(BaseModel):
    """One page of articles, newest id first. Pass continue_cursor back for the next page."""
    articles: List[ArticleView]
    is_done: bool
    continue_cursor: Optional[str] = None
