"""Article and sponsored-article retrieval.

This module implements:
- reconstruct_link: Public URL from the article's channel slug and link slug
- ArticleRetriever: query embedding + filtered nearest-neighbour search + hydration
- SponsoredRetriever: exhaustive scan of allowlisted contributors' articles, ranked
  in memory by cosine similarity

Both retrievers fail closed: any embedding, search or storage failure is logged and
the call returns an empty list, so callers always get a (possibly empty) result.
"""
import logging
from typing import List, Optional, Sequence

from kb_agent.embedding import EmbeddingGateway
from kb_agent.errors import EmbeddingError, RetrievalDegraded, StoreError
from kb_agent.filters import resolve_filter
from kb_agent.obs import span
from kb_agent.ranking import rank
from kb_agent.schemas import ArticleRecord, ArticleResult
from kb_agent.store import ArticleStore

logger = logging.getLogger(__name__)


def reconstruct_link(store: ArticleStore, article: ArticleRecord, site_base: str) -> str:
    """Build the public URL for an article.

    The channel segment is omitted when the article has no channel or its slug cannot
    be resolved.

    Args:
        store: Used to resolve the channel id into its slug.
        article: Article to link.
        site_base: Public host (and optional path prefix) without a trailing slash.

    Returns:
        str: "<site_base>/<channel-slug>/<link>" or "<site_base>/<link>".
    """
    base = site_base.rstrip("/")
    if article.channel_id is not None:
        try:
            slug = store.channel_slug_for_id(article.channel_id)
        except StoreError:
            logger.warning(
                "Channel slug lookup failed for channel %s (article %s)", article.channel_id, article.id, exc_info=True
            )
            slug = None
        if slug:
            return f"{base}/{slug}/{article.link}"
    return f"{base}/{article.link}"


def to_result(store: ArticleStore, article: ArticleRecord, site_base: str) -> ArticleResult:
    """Shape a stored article for LLM consumption, appending its source URL to the content."""
    url = reconstruct_link(store, article, site_base)
    return ArticleResult(
        id=article.id,
        title=article.title,
        content=f"{article.content}\n\n(Source: {url})",
        subtitle=article.subtitle or None,
        link=article.link,
        reconstructed_link=url,
    )


def _query_vector(embedder: EmbeddingGateway, query: str) -> List[float]:
    try:
        return embedder.embed(query)
    except EmbeddingError as e:
        raise RetrievalDegraded(f"query embedding failed: {e}") from e


class ArticleRetriever:
    """Organic search over the whole knowledge base."""

    def __init__(self, store: ArticleStore, embedder: EmbeddingGateway, site_base: str, default_limit: int = 10):
        self.store = store
        self.embedder = embedder
        self.site_base = site_base
        self.default_limit = default_limit

    def retrieve(
        self,
        query: str,
        channel: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ArticleResult]:
        """Return articles relevant to query, most similar first.

        Args:
            query: Free-text search.
            channel: Optional channel slug; an unknown slug matches nothing.
            status: Optional numeric status code as text; ignored if not numeric.
            limit: Maximum results (defaults to the configured search limit).

        Returns:
            List[ArticleResult]: Hits in vector-index order; empty on any failure.
        """
        k = limit or self.default_limit
        with span("retrieve_articles", {"limit": k, "channel": channel or "", "status": status or ""}):
            try:
                return self._retrieve(query, channel, status, k)
            except RetrievalDegraded as e:
                logger.error("Article retrieval degraded to empty result: %s", e)
                return []

    def _retrieve(self, query: str, channel: Optional[str], status: Optional[str], k: int) -> List[ArticleResult]:
        qvec = _query_vector(self.embedder, query)
        flt = resolve_filter(channel, status, self.store.channel_id_for_slug)
        try:
            ids = self.store.nearest(qvec, k, flt)
        except StoreError as e:
            raise RetrievalDegraded(f"vector search failed: {e}") from e
        if not ids:
            return []
        try:
            docs = self.store.get_many(ids)
        except StoreError as e:
            raise RetrievalDegraded(f"hydration failed: {e}") from e
        if len(docs) < len(ids):
            logger.info("Dropped %d search hits that could not be hydrated", len(ids) - len(docs))
        return [to_result(self.store, d, self.site_base) for d in docs]


class SponsoredRetriever:
    """Search restricted to an explicit contributor allowlist.

    Runs independently of ArticleRetriever so a failure here never touches organic
    results.
    """

    def __init__(self, store: ArticleStore, embedder: EmbeddingGateway, site_base: str, default_limit: int = 3):
        self.store = store
        self.embedder = embedder
        self.site_base = site_base
        self.default_limit = default_limit

    def retrieve(self, query: str, contributor_ids: Sequence[int], limit: Optional[int] = None) -> List[ArticleResult]:
        """Return the allowlisted contributors' articles most similar to query.

        An empty allowlist returns [] without touching storage or the embedding API.
        """
        if not contributor_ids:
            return []
        k = limit or self.default_limit
        with span("retrieve_sponsored", {"limit": k, "contributors": len(contributor_ids)}):
            try:
                return self._retrieve(query, contributor_ids, k)
            except RetrievalDegraded as e:
                logger.error("Sponsored retrieval degraded to empty result: %s", e)
                return []

    def _retrieve(self, query: str, contributor_ids: Sequence[int], k: int) -> List[ArticleResult]:
        try:
            articles = self.store.by_authors(list(contributor_ids))
        except StoreError as e:
            raise RetrievalDegraded(f"contributor article fetch failed: {e}") from e
        logger.info("Found %d articles from %d sponsored contributors", len(articles), len(contributor_ids))
        if not articles:
            return []

        qvec = _query_vector(self.embedder, query)
        ranked = rank(qvec, [(i, a.embedding) for i, a in enumerate(articles)], k)
        return [to_result(self.store, articles[c.id], self.site_base) for c in ranked]
