import pytest

from agentmem.errors import DimensionMismatchError
from agentmem.services.similarity import cosine_similarity, find_top_k_similar, safe_similarity


def test_cosine_similarity_basic_cases():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_cosine_similarity_rejects_mismatched_dimensions():
    with pytest.raises(DimensionMismatchError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])
    assert safe_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) is None
    assert safe_similarity(None, [1.0]) is None


def test_find_top_k_skips_mismatched_candidates():
    candidates = [
        ("short", [1.0, 0.0]),
        ("match", [1.0, 0.0, 0.0]),
        ("partial", [1.0, 1.0, 0.0]),
        ("orthogonal", [0.0, 0.0, 1.0]),
    ]
    matches = find_top_k_similar([1.0, 0.0, 0.0], candidates, k=5, min_similarity=0.1)
    assert [match.item for match in matches] == ["match", "partial"]
    assert matches[0].similarity == pytest.approx(1.0)


def test_find_top_k_keeps_input_order_on_ties():
    candidates = [("first", [1.0, 0.0]), ("second", [2.0, 0.0]), ("third", [0.0, 1.0])]
    matches = find_top_k_similar([1.0, 0.0], candidates, k=2)
    assert [match.item for match in matches] == ["first", "second"]
    assert find_top_k_similar([1.0, 0.0], candidates, k=0) == []
