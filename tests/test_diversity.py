import math

import pytest

from cinegraph.recommender.diversity import (
    DiversityReranker,
    balance_genres,
    genre_balance,
    genre_overlap,
    inject_serendipity,
    intra_diversity,
)
from cinegraph.recommender.records import ItemMetadata, ScoredCandidate


def _cand(item_id, genres, score):
    item = ItemMetadata(
        item_id=item_id,
        media_type="movie",
        title=f"Item {item_id}",
        genres=genres,
        vote_average=7.0,
        vote_count=100,
        release_date=None,
    )
    return ScoredCandidate(item=item, score=score, strategy="hybrid")


def _pool():
    # five near-identical action items on top, five distinct genres below
    top = [_cand(i, [28], 0.9 - i * 0.01) for i in range(1, 6)]
    rest = [_cand(10 + i, [g], 0.5) for i, g in enumerate([35, 18, 27, 878, 99])]
    return top + rest


def test_genre_overlap():
    assert genre_overlap([28, 12], [28, 12]) == 1.0
    assert genre_overlap([28], [35]) == 0.0
    assert genre_overlap([], []) == 0.0
    assert genre_overlap([28, 12], [28]) == pytest.approx(0.5)


def test_rerank_returns_limit_without_duplicates():
    out = DiversityReranker().rerank(_pool(), limit=6, diversity_level=0.7)
    ids = [c.item.item_id for c in out]
    assert len(ids) == 6
    assert len(set(ids)) == 6


def test_rerank_below_threshold_is_relevance_order():
    out = DiversityReranker(threshold=0.2).rerank(_pool(), limit=5, diversity_level=0.1)
    assert [c.item.item_id for c in out] == [1, 2, 3, 4, 5]


def test_more_diversity_never_lowers_intra_diversity():
    reranker = DiversityReranker()
    focused = reranker.rerank(_pool(), limit=5, diversity_level=0.0)
    diverse = reranker.rerank(_pool(), limit=5, diversity_level=1.0)

    assert intra_diversity(diverse) >= intra_diversity(focused)
    assert intra_diversity(focused) == 0.0
    assert intra_diversity(diverse) > 0.5
    # the most relevant item is still picked first
    assert diverse[0].item.item_id == 1


def test_rerank_sets_diversity_scores():
    out = DiversityReranker().rerank(_pool(), limit=3, diversity_level=1.0)
    assert all(0.0 <= c.diversity_score <= 1.0 for c in out)
    assert any(c.diversity_score > 0 for c in out)


def test_rerank_small_pool_and_zero_limit():
    reranker = DiversityReranker()
    assert len(reranker.rerank(_pool()[:2], limit=10, diversity_level=0.5)) == 2
    assert reranker.rerank(_pool(), limit=0, diversity_level=0.5) == []


def test_genre_balance_single_genre_is_zero():
    assert genre_balance([_cand(i, [28], 0.5) for i in range(4)]) == 0.0
    assert genre_balance([]) == 0.0


def test_genre_balance_grows_with_spread():
    a, b, c, d = 28, 35, 18, 27
    lists = [[a, a, a, a], [a, a, a, b], [a, a, b, c], [a, b, c, d]]
    values = [genre_balance([_cand(i, [g], 0.5) for i, g in enumerate(gs)]) for gs in lists]

    assert values == sorted(values)
    assert len(set(values)) == 4
    assert values[-1] == pytest.approx(math.log(4) / math.log(19))


def test_genre_balance_prefers_more_distinct_genres():
    a, b, c = 28, 35, 18
    two_and_two = genre_balance([_cand(i, [g], 0.5) for i, g in enumerate([a, a, b, b])])
    two_one_one = genre_balance([_cand(i, [g], 0.5) for i, g in enumerate([a, a, b, c])])
    assert two_and_two < two_one_one
    assert genre_balance([_cand(i, [g], 0.5) for i, g in enumerate([a, b])], vocabulary_size=2) == pytest.approx(1.0)


def test_balance_genres_breaks_long_runs():
    action = [_cand(i, [28], 0.9 - i * 0.01) for i in range(1, 6)]
    comedy = _cand(50, [35], 0.8)
    out = balance_genres(action + [comedy], max_consecutive=3)

    assert [c.item.item_id for c in out] == [1, 2, 3, 50, 4, 5]
    # scores are untouched
    assert out[4].score == pytest.approx(0.86)
    assert [c.item.item_id for c in balance_genres(action, max_consecutive=5)] == [1, 2, 3, 4, 5]


def test_inject_serendipity_interleaves_outside_picks():
    selected = [_cand(i, [28, 12], 0.9 - i * 0.01) for i in range(1, 11)]
    outside = [_cand(100 + g, [g], s) for g, s in [(27, 0.4), (35, 0.3), (18, 0.2), (99, 0.1)]]
    out = inject_serendipity(selected, selected + outside, preferred={28}, rate=0.3)

    ids = [c.item.item_id for c in out]
    assert len(ids) == 10
    assert len(set(ids)) == 10
    assert [ids[2], ids[5], ids[8]] == [127, 135, 118]
    assert ids[:2] == [1, 2]
    assert 8 not in ids


def test_inject_serendipity_noop_cases():
    selected = [_cand(i, [28], 0.9) for i in range(1, 5)]
    outside = [_cand(50, [35], 0.5)]
    assert inject_serendipity(selected, selected + outside, preferred={28}, rate=0.15) == selected
    assert inject_serendipity(selected, selected + outside, preferred=set(), rate=0.5) == selected
    # nothing outside the preferred genres
    assert inject_serendipity(selected, selected + [_cand(51, [28, 12, 16], 0.5)], preferred={28, 12}, rate=0.5) == selected


def test_rerank_applies_serendipity_with_preferences():
    pool = [_cand(i, [28, 12], 0.9 - i * 0.01) for i in range(1, 9)] + [_cand(50, [35], 0.1)]
    reranker = DiversityReranker(threshold=0.2, serendipity_rate=0.25)

    plain = reranker.rerank(pool, limit=4, diversity_level=0.3)
    assert 50 not in [c.item.item_id for c in plain]

    out = reranker.rerank(pool, limit=4, diversity_level=0.3, preferred={28, 12})
    assert 50 in [c.item.item_id for c in out]
    assert len(out) == 4


def test_metrics_snapshot():
    items = [_cand(1, [28, 12], 0.9), _cand(2, [35], 0.8)]
    m = DiversityReranker(vocabulary_size=19).metrics(
        items, user_id="u1", recommendation_type="hybrid", preferred={28}, exploration_rate=0.1
    )
    assert m.recommendation_count == 2
    assert m.coverage_score == pytest.approx(3 / 19)
    assert m.serendipity_score == pytest.approx(0.5)
    assert m.intra_diversity == pytest.approx(1.0)
    assert m.to_dict()["exploration_rate"] == 0.1
