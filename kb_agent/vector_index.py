"""Nearest-neighbour search over article embeddings with pgvector.

Similarity ordering is delegated to PostgreSQL: rows are sorted by cosine distance
(`<=>`, served by the HNSW index created in kb_agent.db.init_db), so the returned ids
are already ranked most-similar first. Articles without an embedding never match.
"""
from typing import List, Optional, Sequence

from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from kb_agent.filters import ByBoth, ByChannel, ByStatus, MatchNothing, NoFilter, SearchFilter
from kb_agent.models import Article


def filter_clause(flt: SearchFilter) -> Optional[ColumnElement]:
    """Translate a SearchFilter into a WHERE clause; None means unrestricted.

    Raises:
        ValueError: For MatchNothing, which has no SQL form (callers skip the query).
        TypeError: For anything that is not a SearchFilter.
    """
    if isinstance(flt, NoFilter):
        return None
    if isinstance(flt, ByChannel):
        return Article.channel_id == flt.channel_id
    if isinstance(flt, ByStatus):
        return Article.status == flt.status
    if isinstance(flt, ByBoth):
        return and_(Article.channel_id == flt.channel_id, Article.status == flt.status)
    if isinstance(flt, MatchNothing):
        raise ValueError("MatchNothing has no SQL clause")
    raise TypeError(f"unsupported filter: {flt!r}")


def nearest_statement(vector: Sequence[float], k: int, flt: SearchFilter) -> Optional[Select]:
    """Build the nearest-neighbour SELECT, or None when the filter matches nothing."""
    if isinstance(flt, MatchNothing):
        return None
    stmt = select(Article.id).where(Article.embedding.is_not(None))
    clause = filter_clause(flt)
    if clause is not None:
        stmt = stmt.where(clause)
    return stmt.order_by(Article.embedding.cosine_distance(list(vector))).limit(k)


def nearest_ids(db: Session, vector: Sequence[float], k: int, flt: SearchFilter) -> List[str]:
    """Return up to k article ids, most similar first."""
    stmt = nearest_statement(vector, k, flt)
    if stmt is None:
        return []
    return list(db.execute(stmt).scalars().all())
