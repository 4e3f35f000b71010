from conftest import SITE, FakeEmbedder, failing_embedder

from kb_agent.retrieval import ArticleRetriever, SponsoredRetriever, reconstruct_link

QUERY = "retirement planning"


def _retriever(store, embedder=None, limit=10):
    return ArticleRetriever(store, embedder or FakeEmbedder(), SITE, default_limit=limit)


def test_reconstruct_link_with_and_without_channel(article_store):
    article_store.channels["retirement"] = 9
    with_channel = article_store.add("A", link="how-to-save", channel_id=9)
    no_channel = article_store.add("B", link="orphan")
    unknown_channel = article_store.add("C", link="lost", channel_id=404)

    assert reconstruct_link(article_store, with_channel, SITE) == "kb.example.com/retirement/how-to-save"
    assert reconstruct_link(article_store, no_channel, SITE) == "kb.example.com/orphan"
    assert reconstruct_link(article_store, unknown_channel, SITE) == "kb.example.com/lost"


def test_reconstruct_link_survives_slug_lookup_failure(article_store):
    article_store.channels["retirement"] = 9
    article_store.fail_slugs = True
    a = article_store.add("A", link="how-to-save", channel_id=9)
    assert reconstruct_link(article_store, a, SITE + "/") == "kb.example.com/how-to-save"


def test_limit_returns_only_the_most_similar(article_store):
    a = article_store.add("Article A", [0.9, 0.43589, 0.0], content="A body", link="a")
    article_store.add("Article B", [0.3, 0.95394, 0.0], content="B body", link="b")

    results = _retriever(article_store).retrieve(QUERY, limit=1)

    assert [r.id for r in results] == [a.id]
    assert results[0].reconstructed_link == "kb.example.com/a"
    assert results[0].content == "A body\n\n(Source: kb.example.com/a)"


def test_results_ordered_by_similarity(article_store):
    far = article_store.add("far", [0.0, 1.0, 0.0])
    near = article_store.add("near", [1.0, 0.05, 0.0])
    mid = article_store.add("mid", [1.0, 1.0, 0.0])
    assert [r.id for r in _retriever(article_store).retrieve(QUERY)] == [near.id, mid.id, far.id]


def test_unknown_channel_fails_closed(article_store):
    article_store.channels["markets"] = 7
    article_store.add("Markets piece", [1.0, 0.0, 0.0], channel_id=7)
    article_store.add("Unfiled piece", [1.0, 0.0, 0.0])

    assert _retriever(article_store).retrieve(QUERY, channel="nonexistent-slug") == []


def test_channel_and_status_filters(article_store):
    article_store.channels["markets"] = 7
    hit = article_store.add("hit", [1.0, 0.0, 0.0], channel_id=7, status=1)
    article_store.add("wrong status", [1.0, 0.0, 0.0], channel_id=7, status=2)
    article_store.add("wrong channel", [1.0, 0.0, 0.0], channel_id=8, status=1)

    results = _retriever(article_store).retrieve(QUERY, channel="markets", status="1")
    assert [r.id for r in results] == [hit.id]


def test_articles_without_embedding_are_invisible(article_store):
    article_store.add("pending", None)
    assert _retriever(article_store).retrieve(QUERY) == []


def test_embedding_failure_degrades_to_empty(article_store):
    article_store.add("A", [1.0, 0.0, 0.0])
    assert _retriever(article_store, failing_embedder()).retrieve(QUERY) == []


def test_vector_search_failure_degrades_to_empty(article_store):
    article_store.add("A", [1.0, 0.0, 0.0])
    article_store.fail_nearest = True
    assert _retriever(article_store).retrieve(QUERY) == []


def test_sponsored_only_returns_allowlisted_authors(article_store):
    mine = article_store.add("sponsored", [0.2, 1.0, 0.0], author_id=42, link="s")
    article_store.add("better but organic", [1.0, 0.0, 0.0], author_id=7)

    results = SponsoredRetriever(article_store, FakeEmbedder(), SITE).retrieve(QUERY, [42])
    assert [r.id for r in results] == [mine.id]


def test_sponsored_ranks_by_similarity(article_store):
    low = article_store.add("low", [0.0, 1.0, 0.0], author_id=1)
    high = article_store.add("high", [1.0, 0.0, 0.0], author_id=2)
    article_store.add("no vector", None, author_id=1)

    results = SponsoredRetriever(article_store, FakeEmbedder(), SITE, default_limit=3).retrieve(QUERY, [1, 2])
    assert [r.id for r in results] == [high.id, low.id]


def test_sponsored_empty_allowlist_skips_embedding(article_store):
    embedder = FakeEmbedder()
    article_store.add("A", [1.0, 0.0, 0.0], author_id=1)
    assert SponsoredRetriever(article_store, embedder, SITE).retrieve(QUERY, []) == []
    assert embedder.calls == []


def test_sponsored_failures_degrade_to_empty(article_store):
    article_store.add("A", [1.0, 0.0, 0.0], author_id=1)
    assert SponsoredRetriever(article_store, failing_embedder(), SITE).retrieve(QUERY, [1]) == []

    article_store.fail_authors = True
    assert SponsoredRetriever(article_store, FakeEmbedder(), SITE).retrieve(QUERY, [1]) == []
