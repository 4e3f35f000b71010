"""Embedding job queue (Redis reliable queue) and the worker that drains it.

Jobs are JSON payloads {"article_id": ...} on the list `<queue>`; reserve() moves a job
atomically onto `<queue>:processing` and ack() removes it from there. A worker that
dies mid-job leaves the payload on the processing list; requeue_inflight() moves such
jobs back at worker start-up, so delivery is at-least-once. Embedding the same article
twice is harmless because the worker always embeds the article's current content.
"""
import json
import logging
import time
from typing import Optional

import redis

from kb_agent.embedding import EmbeddingGateway, embedding_text
from kb_agent.errors import EmbeddingError, StoreError
from kb_agent.store import ArticleStore

logger = logging.getLogger(__name__)


class EmbeddingJobQueue:
    def __init__(self, r: redis.Redis, name: str = "kb:jobs:embedding"):
        self.redis = r
        self.name = name
        self.processing = f"{name}:processing"

    def enqueue(self, article_id: str) -> None:
        self.redis.rpush(self.name, json.dumps({"article_id": article_id}))
        logger.debug("Enqueued embedding job for article %s", article_id)

    def reserve(self, timeout: int = 0) -> Optional[str]:
        """Move the oldest job to the processing list and return its payload.

        Args:
            timeout: Seconds to block waiting for a job; 0 returns immediately.

        Returns:
            Optional[str]: Raw job payload, or None when the queue is empty.
        """
        if timeout > 0:
            return self.redis.blmove(self.name, self.processing, timeout, "LEFT", "RIGHT")
        return self.redis.lmove(self.name, self.processing, "LEFT", "RIGHT")

    def ack(self, payload: str) -> None:
        self.redis.lrem(self.processing, 1, payload)

    def requeue_inflight(self) -> int:
        """Return every job left on the processing list to the queue."""
        moved = 0
        while self.redis.lmove(self.processing, self.name, "RIGHT", "LEFT") is not None:
            moved += 1
        if moved:
            logger.warning("Requeued %d in-flight embedding jobs", moved)
        return moved

    def __len__(self) -> int:
        return self.redis.llen(self.name)


class EmbeddingWorker:
    """Computes and stores article embeddings for queued jobs."""

    def __init__(self, queue: EmbeddingJobQueue, store: ArticleStore, embedder: EmbeddingGateway, max_chars: int):
        self.queue = queue
        self.store = store
        self.embedder = embedder
        self.max_chars = max_chars

    def process(self, article_id: str) -> bool:
        """Embed one article. Returns False when the article no longer exists.

        Raises:
            EmbeddingError, StoreError: The job should be retried.
        """
        article = self.store.get(article_id)
        if article is None:
            logger.warning("Article %s not found; dropping embedding job", article_id)
            return False
        text, truncated = embedding_text(article.title, article.content, article.subtitle, article.link, self.max_chars)
        if truncated:
            logger.warning("Embedding text for article %s truncated to %d characters", article_id, self.max_chars)
        vector = self.embedder.embed(text)
        self.store.set_embedding(article_id, vector, truncated)
        logger.info("Stored embedding for article %s", article_id)
        return True

    def run_once(self, timeout: int = 0) -> bool:
        """Handle at most one job.

        Failed jobs stay on the processing list for redelivery via requeue_inflight.

        Returns:
            bool: True if a job was taken from the queue.
        """
        payload = self.queue.reserve(timeout)
        if payload is None:
            return False
        try:
            article_id = json.loads(payload)["article_id"]
        except (ValueError, KeyError, TypeError):
            logger.error("Discarding malformed embedding job %r", payload)
            self.queue.ack(payload)
            return True
        try:
            self.process(article_id)
        except (EmbeddingError, StoreError):
            logger.exception("Embedding job for article %s failed; left for redelivery", article_id)
            return True
        self.queue.ack(payload)
        return True

    def run_forever(self, poll_seconds: int = 5, retry_delay: float = 5.0) -> None:
        self.queue.requeue_inflight()
        logger.info("Embedding worker listening on %s", self.queue.name)
        while True:
            try:
                self.run_once(timeout=poll_seconds)
            except redis.RedisError:
                logger.exception("Redis unavailable; retrying in %.0fs", retry_delay)
                time.sleep(retry_delay)
