import random
from datetime import date

import pytest

from cinegraph.recommender.feature_store import FeatureStore
from cinegraph.recommender.pipeline import RecommendationOptions, RecommendationService

CONTEXT = {"time_of_day": "evening", "day_type": "weekday"}
ACTION, COMEDY, DRAMA, HORROR, SCIFI, DOC = 28, 35, 18, 27, 878, 99


@pytest.fixture
def service(conn, seed):
    # the user liked one action movie; the pool has five more action titles
    # and five single-genre titles from elsewhere
    seed.item(100, [ACTION], vote_count=900)
    seed.rating("u1", 100, 9.0, 1_700_000_000)

    for i in range(5):
        seed.item(200 + i, [ACTION], vote_count=500 - i)
    for i, g in enumerate([COMEDY, DRAMA, HORROR, SCIFI, DOC]):
        seed.item(300 + i, [g], vote_count=400 - i)

    return RecommendationService.create(
        conn,
        exploration_rate=0.0,
        rng=random.Random(0),
        today=date(2024, 6, 1),
        write_retries=0,
    )


def _ids(batch):
    return [it["item_id"] for it in batch.items]


def test_recommendations_are_deterministic_without_exploration(service):
    opts = RecommendationOptions(limit=5, diversity_level=0.0)
    first = service.generate_recommendations("u1", dict(CONTEXT), opts)
    second = service.generate_recommendations("u1", dict(CONTEXT), opts)

    assert first.strategy == second.strategy == "two_tower"
    assert _ids(first) == _ids(second)
    assert [it["score"] for it in first.items] == [it["score"] for it in second.items]


def test_seen_items_are_excluded_and_unique(service):
    batch = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=8))
    ids = _ids(batch)
    assert 100 not in ids
    assert len(ids) == len(set(ids)) == 8
    assert all(0.0 <= it["score"] <= 1.0 for it in batch.items)


def test_diversity_level_spreads_genres(service):
    focused = service.generate_recommendations(
        "u1", dict(CONTEXT), RecommendationOptions(limit=5, diversity_level=0.0, strategy="content_based")
    )
    diverse = service.generate_recommendations(
        "u1", dict(CONTEXT), RecommendationOptions(limit=5, diversity_level=1.0, strategy="content_based")
    )

    assert set(_ids(focused)) == {200, 201, 202, 203, 204}
    assert diverse.metrics.intra_diversity >= focused.metrics.intra_diversity
    assert diverse.metrics.intra_diversity > 0.5
    assert focused.metrics.genre_balance == 0.0


def test_pinned_strategy(service):
    batch = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=3, strategy="trending"))
    assert batch.strategy == "trending"
    assert all(it["strategy"] == "trending" for it in batch.items)
    assert batch.experiment_id is not None

    with pytest.raises(ValueError):
        service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(strategy="nope"))


def test_media_type_filter(service, seed):
    seed.item(1399, [DRAMA], vote_count=5000, media_type="tv")
    tv = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=5, media_type="tv"))
    assert [(it["item_id"], it["media_type"]) for it in tv.items] == [(1399, "tv")]


def test_batch_is_logged(conn, service):
    batch = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=4))

    recs = conn.execute("SELECT id, rank, experiment_id FROM recommendations ORDER BY rank").fetchall()
    assert [r["id"] for r in recs] == [it["recommendation_id"] for it in batch.items]
    assert {r["experiment_id"] for r in recs} == {batch.experiment_id}

    n_contrib = conn.execute("SELECT COUNT(*) AS n FROM feature_contributions").fetchone()["n"]
    assert n_contrib >= 4
    n_metrics = conn.execute("SELECT COUNT(*) AS n FROM diversity_metrics").fetchone()["n"]
    assert n_metrics == 1


def test_explainability_toggle(service):
    explained = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=2))
    assert explained.items[0]["reasons"]

    bare = service.generate_recommendations(
        "u1", dict(CONTEXT), RecommendationOptions(limit=2, explainability=False)
    )
    assert bare.items[0]["reasons"] == []


def test_feedback_rewards_arm_and_learns_weights(conn, service):
    batch = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=3))
    rec_id = batch.items[0]["recommendation_id"]

    ack = service.record_interaction_feedback(rec_id, "rated_high")
    assert ack.status == "rewarded"
    assert ack.reward == 1.0
    assert ack.experiment_id == batch.experiment_id
    assert ack.recommendation_id == rec_id

    fs = FeatureStore(conn)
    # two_tower scores with embedding similarity and genre match
    assert {u.feature_name for u in ack.weight_updates} == {"embedding_similarity", "genre_match"}
    assert fs.get_weight("u1", "genre_match") == pytest.approx(0.55)
    assert fs.get(None, "genre_match").total_count == 1

    outcome = conn.execute(
        "SELECT DISTINCT outcome_type FROM feature_contributions WHERE recommendation_id = ?", (rec_id,)
    ).fetchall()
    assert [r["outcome_type"] for r in outcome] == ["rated_high"]

    again = service.record_interaction_feedback(rec_id, "dismissed")
    assert again.status == "already_rewarded"
    assert again.weight_updates == []
    assert fs.get_weight("u1", "genre_match") == pytest.approx(0.55)


def test_feedback_can_be_deferred(conn, service):
    batch = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=1))
    ack = service.record_interaction_feedback(batch.experiment_id, "dismissed", apply_weights=False)

    assert ack.status == "rewarded"
    assert ack.reward == 0.0
    assert FeatureStore(conn).get_weight("u1", "genre_match") == 0.5

    applied = service.apply_weight_updates(ack.weight_updates)
    assert applied == 2 * len(ack.weight_updates)
    assert FeatureStore(conn).get_weight("u1", "genre_match") == pytest.approx(0.45)


def test_rewarded_arm_is_exploited(service):
    batch = service.generate_recommendations(
        "u1", dict(CONTEXT), RecommendationOptions(limit=1, strategy="content_based")
    )
    service.record_interaction_feedback(batch.experiment_id, "rated_high")

    follow_up = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=1))
    assert follow_up.strategy == "content_based"


def test_unknown_correlation_id_is_acknowledged(conn, service):
    ack = service.record_interaction_feedback("does-not-exist", "clicked")
    assert ack.status == "uncorrelated"
    n = conn.execute("SELECT COUNT(*) AS n FROM interaction_logs").fetchone()["n"]
    assert n == 1


def test_explain_served_item_is_deterministic(service):
    batch = service.generate_recommendations("u1", dict(CONTEXT), RecommendationOptions(limit=3))
    top = batch.items[0]

    a = service.explain("u1", top["item_id"]).to_dict()
    b = service.explain("u1", top["item_id"]).to_dict()
    assert a == b
    assert a["recommendation_id"] == top["recommendation_id"]
    assert a["strategy"] == batch.strategy
    assert sum(f["percentage"] for f in a["contributing_factors"]) == pytest.approx(100.0)

    by_id = service.explain("u1", top["item_id"], recommendation_id=top["recommendation_id"]).to_dict()
    assert by_id == a


def test_explain_unserved_item(service):
    exp = service.explain("u1", 301)
    assert exp.recommendation_id is None
    assert exp.strategy == "hybrid"
    assert exp.title == "Item 301"
    assert 0.0 <= exp.confidence <= 1.0


def test_cold_start_user_gets_popular_items(service):
    batch = service.generate_recommendations("new-user", dict(CONTEXT), RecommendationOptions(limit=3, strategy="trending"))
    assert _ids(batch)[0] == 100
