import pytest
from sqlalchemy.dialects import postgresql

from kb_agent.filters import ByBoth, ByChannel, ByStatus, MatchNothing, NoFilter, parse_status, resolve_filter
from kb_agent.vector_index import filter_clause, nearest_statement

CHANNELS = {"markets": 7, "retirement": 9}


def lookup(slug):
    return CHANNELS.get(slug)


def test_parse_status():
    assert parse_status("3") == 3
    assert parse_status(" 12 ") == 12
    assert parse_status(None) is None
    assert parse_status("published") is None


@pytest.mark.parametrize(
    "channel,status,expected",
    [
        (None, None, NoFilter()),
        ("markets", None, ByChannel(channel_id=7)),
        (None, "1", ByStatus(status=1)),
        ("retirement", "2", ByBoth(channel_id=9, status=2)),
        ("markets", "draft", ByChannel(channel_id=7)),
        (None, "draft", NoFilter()),
    ],
)
def test_resolve_filter(channel, status, expected):
    assert resolve_filter(channel, status, lookup) == expected


def test_unknown_channel_matches_nothing_even_with_status():
    assert isinstance(resolve_filter("nonexistent-slug", None, lookup), MatchNothing)
    assert isinstance(resolve_filter("nonexistent-slug", "1", lookup), MatchNothing)


def test_channel_lookup_failure_matches_nothing():
    def broken(slug):
        raise RuntimeError("db down")

    assert isinstance(resolve_filter("markets", None, broken), MatchNothing)


def _sql(stmt):
    return str(stmt.compile(dialect=postgresql.dialect()))


def test_nearest_statement_uses_cosine_distance_and_filter():
    sql = _sql(nearest_statement([0.1, 0.2, 0.3], 5, ByBoth(channel_id=7, status=1)))
    assert "<=>" in sql
    assert "articles.embedding IS NOT NULL" in sql
    assert "articles.channel_id" in sql
    assert "articles.status" in sql
    assert "LIMIT" in sql


def test_nearest_statement_without_filter():
    sql = _sql(nearest_statement([0.1, 0.2, 0.3], 5, NoFilter()))
    assert "channel_id =" not in sql
    assert "status =" not in sql


def test_match_nothing_has_no_statement():
    assert nearest_statement([0.1], 5, MatchNothing(reason="unknown channel")) is None
    with pytest.raises(ValueError):
        filter_clause(MatchNothing(reason="x"))


def test_filter_clause_rejects_unknown_types():
    with pytest.raises(TypeError):
        filter_clause("channel=7")
