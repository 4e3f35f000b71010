"""Article writes with embedding scheduling, and paged article reads.

Embeddings are never computed inline. A created or updated article is stored with its
old (or no) embedding and an embedding job is queued; it becomes searchable once the
worker (kb_agent.worker) has processed the job.
"""
import logging
from typing import Optional

from kb_agent.jobs import EmbeddingJobQueue
from kb_agent.schemas import ArticleIn, ArticlePage, ArticleView, BackfillResult
from kb_agent.store import ArticleStore

logger = logging.getLogger(__name__)


class ArticleService:
    def __init__(self, store: ArticleStore, queue: EmbeddingJobQueue):
        self.store = store
        self.queue = queue

    def create_article(self, data: ArticleIn) -> str:
        article_id = self.store.create(data)
        self.queue.enqueue(article_id)
        logger.info("Created article %s (%s)", article_id, data.title[:50])
        return article_id

    def update_article(self, article_id: str, data: ArticleIn) -> bool:
        """Overwrite an article and queue a fresh embedding; False if it does not exist."""
        if not self.store.update(article_id, data):
            return False
        self.queue.enqueue(article_id)
        logger.info("Updated article %s", article_id)
        return True

    def backfill_missing_embeddings(self, limit: int = 50, cursor: Optional[str] = None) -> BackfillResult:
        """Queue embedding jobs for one page of articles that have no embedding.

        Articles without a title or content are skipped (logged), since there is
        nothing meaningful to embed.

        Args:
            limit: Page size.
            cursor: continue_cursor from the previous page, or None to start over.

        Returns:
            BackfillResult: processed is the number of jobs queued, total the page size.
        """
        limit = max(1, limit)
        # One extra id tells whether another page exists
        ids = self.store.missing_embeddings(limit + 1, after_id=cursor)
        page, has_more = ids[:limit], len(ids) > limit
        if not page:
            return BackfillResult(
                processed=0,
                total=0,
                message="No more articles found with missing embeddings.",
                is_done=True,
                continue_cursor=None,
            )

        queued = 0
        for article in self.store.get_many(page):
            if not article.title or not article.content:
                logger.warning("Skipping article %s: title or content missing", article.id)
                continue
            self.queue.enqueue(article.id)
            queued += 1

        message = f"Processed batch: queued embedding generation for {queued} out of {len(page)} articles."
        logger.info(message)
        return BackfillResult(
            processed=queued,
            total=len(page),
            message=message,
            is_done=not has_more,
            continue_cursor=page[-1] if has_more else None,
        )

    def get_article(self, article_id: str) -> Optional[ArticleView]:
        record = self.store.get(article_id)
        return ArticleView.from_record(record) if record is not None else None

    def list_articles(
        self,
        limit: int = 20,
        cursor: Optional[str] = None,
        channel_id: Optional[int] = None,
        author_id: Optional[int] = None,
    ) -> ArticlePage:
        """One page of articles, newest id first, optionally filtered by channel and author.

        Args:
            limit: Page size.
            cursor: continue_cursor from the previous page, or None for the first page.
            channel_id: Only articles in this channel.
            author_id: Only articles by this contributor.
        """
        limit = max(1, limit)
        rows = self.store.list_articles(limit + 1, before_id=cursor, channel_id=channel_id, author_id=author_id)
        page, has_more = rows[:limit], len(rows) > limit
        return ArticlePage(
            articles=[ArticleView.from_record(r) for r in page],
            is_done=not has_more,
            continue_cursor=page[-1].id if has_more else None,
        )
