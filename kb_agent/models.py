"""Database ORM models.

Defines persistent entities used by the knowledge base:
- Article: a published piece of content with a nullable pgvector embedding used for
  nearest-neighbour search. Indexed on author, channel and original id.
- Channel: a content channel, mapping its legacy numeric id to a public slug.
- Contributor: an author identity keyed by a legacy numeric id.
- Thread / ThreadMessage: the conversation log consumed by the agent.

Rate-limit buckets are not stored here; they live in Redis (see kb_agent.rate_limit).
"""
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from kb_agent.db import Base

# Must match Settings.EMBEDDING_DIM and the embedding model.
EMBEDDING_DIM = 1536


def _new_id() -> str:
    return uuid.uuid4().hex


class Article(Base):
    """Knowledge-base article.

    The embedding is filled in asynchronously by the embedding worker after the row
    is created or updated, so it stays NULL for a short window. When the text sent to
    the embedding model had to be cut to the configured maximum, embedding_truncated
    is set and the vector only approximates the full article.
    """
    __tablename__ = "articles"

    id = Column(String(32), primary_key=True, default=_new_id)
    original_id = Column(Integer, nullable=True)

    title = Column(String(1024), nullable=False)
    subtitle = Column(Text, nullable=True)
    content = Column(Text, nullable=False, default="")
    link = Column(String(1024), nullable=False, default="")  # slug, not a full URL

    channel_id = Column(Integer, nullable=True)  # Channel.original_id
    author_id = Column(Integer, nullable=True)  # Contributor.original_id
    status = Column(Integer, nullable=True)
    publish_date = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, nullable=True)

    embedding = Column(Vector(dim=EMBEDDING_DIM), nullable=True)
    embedding_truncated = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_articles_author", "author_id"),
        Index("idx_articles_channel", "channel_id"),
        Index("idx_articles_original", "original_id"),
    )


class Channel(Base):
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    original_id = Column(Integer, nullable=False, unique=True)
    slug = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=True)


class Contributor(Base):
    __tablename__ = "contributors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    original_id = Column(Integer, nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    wp_user_id = Column(Integer, nullable=True)  # legacy user id


class Thread(Base):
    """Conversation handle; its id scopes the per-conversation rate limit."""
    __tablename__ = "threads"

    id = Column(String(32), primary_key=True, default=_new_id)
    owner_id = Column(String(255), nullable=True)
    title = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ThreadMessage(Base):
    __tablename__ = "thread_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(String(32), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(16), nullable=False)  # user | assistant
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (Index("idx_thread_messages_thread", "thread_id", "id"),)
