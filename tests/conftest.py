"""Shared fixtures: in-memory stores, a scripted embedder/generator and fakeredis."""
import uuid
from typing import Callable, Dict, List, Optional, Sequence

import fakeredis
import pytest

from kb_agent.config import GLOBAL_LIMIT, MINUTE_MS, TEST_LIMIT, THREAD_LIMIT, LimitConfig
from kb_agent.conversations import ConversationStore
from kb_agent.errors import EmbeddingError, StoreError
from kb_agent.filters import ByBoth, ByChannel, ByStatus, MatchNothing, SearchFilter
from kb_agent.generation import GenerationResult, Tool, ToolInvocation
from kb_agent.ranking import rank
from kb_agent.schemas import ArticleIn, ArticleRecord
from kb_agent.store import ArticleStore

DIM = 3
SITE = "kb.example.com"


class InMemoryArticleStore(ArticleStore):
    """ArticleStore backed by dicts. Set fail_* flags to simulate outages."""

    def __init__(self):
        self.articles: Dict[str, ArticleRecord] = {}
        self.channels: Dict[str, int] = {}
        self.fail_nearest = False
        self.fail_authors = False
        self.fail_slugs = False

    def add(self, title: str, embedding: Optional[List[float]] = None, **fields) -> ArticleRecord:
        rec = ArticleRecord(id=fields.pop("id", uuid.uuid4().hex), title=title, embedding=embedding, **fields)
        self.articles[rec.id] = rec
        return rec

    def get(self, article_id):
        return self.articles.get(article_id)

    def get_many(self, article_ids):
        return [self.articles[i] for i in article_ids if i in self.articles]

    def by_authors(self, author_ids):
        if self.fail_authors:
            raise StoreError("authors unavailable")
        return [a for a in self.articles.values() if a.author_id in set(author_ids)]

    def channel_id_for_slug(self, slug):
        return self.channels.get(slug)

    def channel_slug_for_id(self, channel_id):
        if self.fail_slugs:
            raise StoreError("channels unavailable")
        for slug, cid in self.channels.items():
            if cid == channel_id:
                return slug
        return None

    @staticmethod
    def _matches(a: ArticleRecord, flt: SearchFilter) -> bool:
        if isinstance(flt, ByChannel):
            return a.channel_id == flt.channel_id
        if isinstance(flt, ByStatus):
            return a.status == flt.status
        if isinstance(flt, ByBoth):
            return a.channel_id == flt.channel_id and a.status == flt.status
        return True

    def nearest(self, vector, k, flt):
        if self.fail_nearest:
            raise StoreError("index unavailable")
        if isinstance(flt, MatchNothing):
            return []
        cands = [(a.id, a.embedding) for a in self.articles.values() if self._matches(a, flt)]
        return [c.id for c in rank(vector, cands, k)]

    def create(self, data: ArticleIn) -> str:
        rec = self.add(**data.model_dump(exclude={"publish_date", "last_updated"}))
        return rec.id

    def update(self, article_id, data: ArticleIn) -> bool:
        old = self.articles.get(article_id)
        if old is None:
            return False
        fields = data.model_dump(exclude={"publish_date", "last_updated"})
        self.articles[article_id] = old.model_copy(update=fields)
        return True

    def set_embedding(self, article_id, vector, truncated):
        old = self.articles.get(article_id)
        if old is None:
            return False
        self.articles[article_id] = old.model_copy(update={"embedding": list(vector), "embedding_truncated": truncated})
        return True

    def missing_embeddings(self, limit, after_id=None):
        ids = sorted(i for i, a in self.articles.items() if a.embedding is None)
        if after_id is not None:
            ids = [i for i in ids if i > after_id]
        return ids[:limit]

    def list_articles(self, limit, before_id=None, channel_id=None, author_id=None):
        rows = sorted(self.articles.values(), key=lambda a: a.id, reverse=True)
        if before_id is not None:
            rows = [a for a in rows if a.id < before_id]
        if channel_id is not None:
            rows = [a for a in rows if a.channel_id == channel_id]
        if author_id is not None:
            rows = [a for a in rows if a.author_id == author_id]
        return rows[:limit]


class InMemoryConversationStore(ConversationStore):
    def __init__(self):
        self.threads: Dict[str, dict] = {}
        self.messages: Dict[str, List[Dict[str, str]]] = {}
        self.fail_create = False
        self.fail_append = False

    def create_conversation(self, owner_id=None, title=None):
        if self.fail_create:
            raise StoreError("threads unavailable")
        tid = uuid.uuid4().hex
        self.threads[tid] = {"owner_id": owner_id, "title": title}
        self.messages[tid] = []
        return tid

    def exists(self, conversation_id):
        return conversation_id in self.threads

    def recent_messages(self, conversation_id, limit):
        return list(self.messages.get(conversation_id, []))[-limit:] if limit > 0 else []

    def append_message(self, conversation_id, role, content):
        if self.fail_append:
            raise StoreError("messages unavailable")
        self.messages.setdefault(conversation_id, []).append({"role": role, "content": content})


class FakeEmbedder:
    """Returns the vector registered for a text, else `default`. Counts calls."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default: Optional[List[float]] = None):
        self.vectors = vectors or {}
        self.default = default or [1.0, 0.0, 0.0]
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.vectors.get(text, self.default)

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        return [self.embed(t) for t in texts]


class ScriptedGenerator:
    """Stands in for ToolCallingGenerator.

    `tool_calls` is a list of (tool_name, arguments) the "model" makes before answering
    with `text`. Real tool handlers run, so results flow through like in production.
    """

    model = "test-model"

    def __init__(self, text: str = "answer", tool_calls=None, error: Optional[Exception] = None,
                 before: Optional[Callable[[], None]] = None):
        self.text = text
        self.tool_calls = tool_calls or []
        self.error = error
        self.before = before
        self.calls: List[dict] = []

    def generate(self, prompt, system, history=(), tools=(), max_steps=5):
        self.calls.append({"prompt": prompt, "system": system, "history": list(history), "tools": list(tools)})
        if self.before is not None:
            self.before()
        if self.error is not None:
            raise self.error
        by_name: Dict[str, Tool] = {t.name: t for t in tools}
        invocations = []
        for name, args in self.tool_calls[:max_steps]:
            invocations.append(ToolInvocation(tool_name=name, arguments=args, result=by_name[name].handler(**args)))
        return GenerationResult(
            text=self.text,
            tool_invocations=invocations,
            usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        )


def failing_embedder() -> FakeEmbedder:
    e = FakeEmbedder()
    e.error = EmbeddingError("embedding service down")
    return e


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def limits():
    return {
        GLOBAL_LIMIT: LimitConfig(rate=1000, period_ms=60 * MINUTE_MS, capacity=100, shards=10),
        THREAD_LIMIT: LimitConfig(rate=60, period_ms=60 * MINUTE_MS, capacity=10),
        TEST_LIMIT: LimitConfig(rate=3, period_ms=MINUTE_MS, capacity=2),
    }


@pytest.fixture
def article_store():
    return InMemoryArticleStore()


@pytest.fixture
def conversation_store():
    return InMemoryConversationStore()
