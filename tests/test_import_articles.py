import json

import pytest

from kb_agent.articles import ArticleService
from kb_agent.ingestion.import_articles import import_lines, parse_article
from kb_agent.jobs import EmbeddingJobQueue


@pytest.fixture
def service(article_store, redis_client):
    return ArticleService(article_store, EmbeddingJobQueue(redis_client, "test:jobs"))


def _line(**fields):
    return json.dumps(fields)


def test_parse_article_maps_export_fields():
    a = parse_article(
        {
            "id": 101,
            "title": "Roth IRAs",
            "content": "body",
            "link": "roth-iras",
            "author_wpid": 7,
            "channel_id": 3,
            "status": "1",
            "publish_date": "2024-05-01T10:00:00",
            "unknown_field": "ignored",
        }
    )
    assert a.original_id == 101
    assert a.author_id == 7
    assert a.status == 1
    assert a.publish_date.year == 2024


def test_import_skips_bad_lines_and_continues(service, article_store):
    lines = [
        _line(original_id=1, title="First", content="a"),
        "",
        "{broken json",
        _line(original_id=2, content="no title"),
        json.dumps([1, 2, 3]),
        _line(original_id=3, title="Second", content="b"),
    ]
    stats = import_lines(service, lines)
    assert (stats.created, stats.skipped, stats.failed) == (2, 3, 0)
    assert sorted(a.title for a in article_store.articles.values()) == ["First", "Second"]
    assert len(service.queue) == 2


def test_import_start_line_and_pacing(service, article_store):
    lines = [_line(original_id=i, title=f"A{i}", content="x") for i in range(1, 6)]
    pauses = []
    stats = import_lines(service, lines, start_line=3, batch_size=2, batch_delay=1.5, sleep=pauses.append)
    assert stats.created == 3
    assert sorted(a.original_id for a in article_store.articles.values()) == [3, 4, 5]
    assert pauses == [1.5]
