import math

import pytest

from kb_agent.ranking import cosine_similarity, rank


def test_cosine_similarity_basic():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)
    assert cosine_similarity([1, 1], [1, 0]) == pytest.approx(1 / math.sqrt(2))


def test_cosine_similarity_rejects_bad_vectors():
    with pytest.raises(ValueError):
        cosine_similarity([], [])
    with pytest.raises(ValueError):
        cosine_similarity([0, 0], [1, 0])
    with pytest.raises(ValueError):
        cosine_similarity([1, 0, 0], [1, 0])


def test_rank_orders_by_similarity_and_truncates():
    q = [1.0, 0.0]
    cands = [("low", [0.0, 1.0]), ("high", [1.0, 0.1]), ("mid", [1.0, 1.0])]
    out = rank(q, cands, top_k=2)
    assert [c.id for c in out] == ["high", "mid"]
    assert out[0].score > out[1].score


def test_rank_ties_keep_input_order():
    q = [1.0, 0.0]
    cands = [("a", [2.0, 0.0]), ("b", [1.0, 0.0]), ("c", [5.0, 0.0])]
    assert [c.id for c in rank(q, cands, top_k=3)] == ["a", "b", "c"]


def test_rank_skips_unusable_vectors():
    q = [1.0, 0.0]
    cands = [
        ("none", None),
        ("empty", []),
        ("zero", [0.0, 0.0]),
        ("wrong_dim", [1.0, 0.0, 0.0]),
        ("ok", [0.5, 0.5]),
    ]
    assert [c.id for c in rank(q, cands, top_k=10)] == ["ok"]


def test_rank_empty_inputs():
    assert rank([1.0, 0.0], [], top_k=3) == []
    assert rank([0.0, 0.0], [("a", [1.0, 0.0])], top_k=3) == []
    assert rank([1.0, 0.0], [("a", [1.0, 0.0])], top_k=0) == []


def test_rank_scores_match_cosine_similarity():
    q = [0.3, -0.7, 0.2]
    cands = [("a", [0.1, 0.2, 0.9]), ("b", [-0.5, -0.5, 0.0]), ("c", [3.0, 1.0, -2.0])]
    for c in rank(q, cands, top_k=3):
        assert c.score == cosine_similarity(q, dict(cands)[c.id])
