"""Article storage interface and its SQLAlchemy/pgvector implementation.

The retrievers, the ingestion service and the embedding worker only talk to
ArticleStore, so tests can substitute an in-memory implementation. SqlArticleStore
opens one short transaction per call and returns detached ArticleRecord values.
Database errors surface as StoreError.
"""
import abc
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

import redis
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from kb_agent.cache import cached_lookup
from kb_agent.db import session_scope
from kb_agent.errors import StoreError
from kb_agent.filters import SearchFilter
from kb_agent.models import Article, Channel
from kb_agent.schemas import ArticleIn, ArticleRecord
from kb_agent.vector_index import nearest_ids

logger = logging.getLogger(__name__)


class ArticleStore(abc.ABC):
    """Storage operations needed by retrieval and ingestion."""

    @abc.abstractmethod
    def get(self, article_id: str) -> Optional[ArticleRecord]: ...

    @abc.abstractmethod
    def get_many(self, article_ids: Sequence[str]) -> List[ArticleRecord]:
        """Hydrate ids in the given order; ids with no row are dropped."""

    @abc.abstractmethod
    def by_authors(self, author_ids: Sequence[int]) -> List[ArticleRecord]: ...

    @abc.abstractmethod
    def channel_id_for_slug(self, slug: str) -> Optional[int]: ...

    @abc.abstractmethod
    def channel_slug_for_id(self, channel_id: int) -> Optional[str]: ...

    @abc.abstractmethod
    def nearest(self, vector: Sequence[float], k: int, flt: SearchFilter) -> List[str]:
        """Ids of the k most similar embedded articles matching flt, best first."""

    @abc.abstractmethod
    def create(self, data: ArticleIn) -> str: ...

    @abc.abstractmethod
    def update(self, article_id: str, data: ArticleIn) -> bool:
        """Overwrite an article's fields in place; False if it does not exist."""

    @abc.abstractmethod
    def set_embedding(self, article_id: str, vector: Sequence[float], truncated: bool) -> bool: ...

    @abc.abstractmethod
    def missing_embeddings(self, limit: int, after_id: Optional[str] = None) -> List[str]:
        """Ids of articles with no embedding, ordered by id, strictly after after_id."""

    @abc.abstractmethod
    def list_articles(
        self,
        limit: int,
        before_id: Optional[str] = None,
        channel_id: Optional[int] = None,
        author_id: Optional[int] = None,
    ) -> List[ArticleRecord]:
        """Up to limit articles in descending id order, strictly before before_id.

        channel_id and author_id, when given, must both match.
        """


def _to_record(a: Article) -> ArticleRecord:
    return ArticleRecord(
        id=a.id,
        original_id=a.original_id,
        title=a.title,
        subtitle=a.subtitle,
        content=a.content or "",
        link=a.link or "",
        channel_id=a.channel_id,
        author_id=a.author_id,
        status=a.status,
        # pgvector hands back numpy arrays
        embedding=[float(x) for x in a.embedding] if a.embedding is not None else None,
        embedding_truncated=bool(a.embedding_truncated),
    )


class SqlArticleStore(ArticleStore):
    """ArticleStore over PostgreSQL with pgvector."""

    def __init__(
        self,
        session_factory: sessionmaker,
        cache: Optional[redis.Redis] = None,
        cache_ttl_seconds: int = 600,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with session_scope(self.session_factory) as db:
                yield db
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def get(self, article_id: str) -> Optional[ArticleRecord]:
        with self._session() as db:
            row = db.get(Article, article_id)
            return _to_record(row) if row is not None else None

    def get_many(self, article_ids: Sequence[str]) -> List[ArticleRecord]:
        if not article_ids:
            return []
        with self._session() as db:
            rows = db.execute(select(Article).where(Article.id.in_(list(article_ids)))).scalars().all()
            by_id = {r.id: _to_record(r) for r in rows}
        return [by_id[i] for i in article_ids if i in by_id]

    def by_authors(self, author_ids: Sequence[int]) -> List[ArticleRecord]:
        if not author_ids:
            return []
        with self._session() as db:
            rows = db.execute(
                select(Article).where(Article.author_id.in_(list(author_ids))).order_by(Article.id)
            ).scalars().all()
            return [_to_record(r) for r in rows]

    def channel_id_for_slug(self, slug: str) -> Optional[int]:
        def load() -> Optional[int]:
            with self._session() as db:
                return db.execute(select(Channel.original_id).where(Channel.slug == slug)).scalar_one_or_none()

        return cached_lookup(self.cache, "channel_id", slug, load, self.cache_ttl_seconds)

    def channel_slug_for_id(self, channel_id: int) -> Optional[str]:
        def load() -> Optional[str]:
            with self._session() as db:
                return db.execute(
                    select(Channel.slug).where(Channel.original_id == channel_id)
                ).scalar_one_or_none()

        return cached_lookup(self.cache, "channel_slug", channel_id, load, self.cache_ttl_seconds)

    def nearest(self, vector: Sequence[float], k: int, flt: SearchFilter) -> List[str]:
        with self._session() as db:
            return nearest_ids(db, vector, k, flt)

    def create(self, data: ArticleIn) -> str:
        with self._session() as db:
            row = Article(**data.model_dump(), embedding=None, embedding_truncated=False)
            db.add(row)
            db.flush()
            return row.id

    def update(self, article_id: str, data: ArticleIn) -> bool:
        with self._session() as db:
            row = db.get(Article, article_id)
            if row is None:
                return False
            for field, value in data.model_dump().items():
                setattr(row, field, value)
            return True

    def set_embedding(self, article_id: str, vector: Sequence[float], truncated: bool) -> bool:
        with self._session() as db:
            row = db.get(Article, article_id)
            if row is None:
                return False
            row.embedding = list(vector)
            row.embedding_truncated = truncated
            return True

    def missing_embeddings(self, limit: int, after_id: Optional[str] = None) -> List[str]:
        stmt = select(Article.id).where(Article.embedding.is_(None))
        if after_id is not None:
            stmt = stmt.where(Article.id > after_id)
        with self._session() as db:
            return list(db.execute(stmt.order_by(Article.id).limit(limit)).scalars().all())

    def list_articles(
        self,
        limit: int,
        before_id: Optional[str] = None,
        channel_id: Optional[int] = None,
        author_id: Optional[int] = None,
    ) -> List[ArticleRecord]:
        stmt = select(Article)
        if before_id is not None:
            stmt = stmt.where(Article.id < before_id)
        if channel_id is not None:
            stmt = stmt.where(Article.channel_id == channel_id)
        if author_id is not None:
            stmt = stmt.where(Article.author_id == author_id)
        with self._session() as db:
            rows = db.execute(stmt.order_by(Article.id.desc()).limit(limit)).scalars().all()
            return [_to_record(r) for r in rows]
