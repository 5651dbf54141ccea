import pytest
import torch
from fastapi.testclient import TestClient

from cinegraph.app.config import settings
from cinegraph.app.db import connect
from cinegraph.app.main import app
from cinegraph.recommender.embedding_store import EmbeddingStore
from cinegraph.recommender.feature_store import FeatureStore
from cinegraph.recommender.sequence_model import PatternModelHandle, ViewingPatternNet, save_pattern_model


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/api.db")
    monkeypatch.setattr(settings, "pattern_model_path", str(tmp_path / "missing.pt"))
    monkeypatch.setattr(settings, "exploration_rate", 0.0)
    monkeypatch.setattr(settings, "write_retries", 0)

    with TestClient(app) as c:
        conn = connect()
        for item_id, genres, votes in [(1, "28", 900), (2, "28,12", 800), (3, "35", 700), (4, "18", 600)]:
            conn.execute(
                "INSERT INTO items(id, media_type, title, genres, vote_average, vote_count, release_date) "
                "VALUES(?,?,?,?,?,?,?)",
                (item_id, "movie", f"Item {item_id}", genres, 7.5, votes, "2021-05-01"),
            )
        conn.execute(
            "INSERT INTO ratings(user_id, item_id, media_type, rating, ts) VALUES(?,?,?,?,?)",
            ("u1", 1, "movie", 9.0, 1_700_000_000),
        )
        conn.commit()
        conn.close()
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_model_debug_without_artifact(client):
    body = client.get("/debug/model").json()
    assert body["pattern_model_loaded"] is False
    assert body["sequence_length"] == settings.sequence_length


def test_recommend_then_feedback(client):
    r = client.get(
        "/recommendations",
        params={"user_id": "u1", "limit": 2, "time_of_day": "evening", "day_type": "weekday"},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["strategy"] == "two_tower"
    assert len(body["items"]) == 2
    assert 1 not in [it["item_id"] for it in body["items"]]
    assert "intra_diversity" in body["diversity_metrics"]

    rec_id = body["items"][0]["recommendation_id"]
    fb = client.post("/feedback", json={"correlation_id": rec_id, "outcome_type": "rated_high"})
    assert fb.status_code == 200
    assert fb.json()["status"] == "rewarded"

    # background task has run once the response is back
    conn = connect()
    try:
        assert FeatureStore(conn).get_weight("u1", "genre_match") == pytest.approx(0.55)
    finally:
        conn.close()

    stats = client.get("/bandit/u1/stats").json()
    assert stats["total_experiments"] == 1
    assert stats["best_arm"] == "two_tower"


def test_feedback_for_unknown_id(client):
    r = client.post("/feedback", json={"correlation_id": "unknown-correlation", "outcome_type": "clicked"})
    assert r.status_code == 200
    assert r.json()["status"] == "uncorrelated"


def test_feedback_with_short_id_is_logged(client):
    r = client.post("/feedback", json={"correlation_id": "x1", "outcome_type": "clicked"})
    assert r.status_code == 200
    assert r.json()["status"] == "uncorrelated"

    conn = connect()
    try:
        row = conn.execute("SELECT outcome_type FROM interaction_logs WHERE correlation_id = ?", ("x1",)).fetchone()
    finally:
        conn.close()
    assert row["outcome_type"] == "clicked"

    assert client.post("/feedback", json={"correlation_id": "", "outcome_type": "clicked"}).status_code == 422


def test_model_reload_picks_up_new_artifact(client):
    torch.manual_seed(0)
    model = ViewingPatternNet()
    model.eval()
    save_pattern_model(PatternModelHandle(model=model, sequence_length=10, version="reloaded"), settings.pattern_model_path)

    body = client.post("/debug/model/reload").json()
    assert body["pattern_model_loaded"] is True
    assert body["pattern_model_version"] == "reloaded"
    assert client.get("/debug/model").json()["pattern_model_version"] == "reloaded"

    r = client.get("/patterns/u1/next")
    assert r.status_code == 200
    assert r.json()["user_id"] == "u1"


def test_embedding_debug(client):
    assert client.get("/debug/embeddings/u1").json()["found"] is False

    conn = connect()
    try:
        EmbeddingStore(conn, dim=3).put("u1", "user", [0.1, 0.2, 0.3], version="v7")
        conn.execute(
            "INSERT INTO embeddings(subject_id, subject_kind, vector_json) VALUES(?,?,?)",
            ("u2", "user", "{broken"),
        )
        conn.commit()
    finally:
        conn.close()

    body = client.get("/debug/embeddings/u1").json()
    assert body["found"] is True
    assert (body["version"], body["dim"]) == ("v7", 3)
    assert client.get("/debug/embeddings/u2").json()["found"] is False


def test_unknown_strategy_rejected(client):
    r = client.get("/recommendations", params={"user_id": "u1", "strategy": "random"})
    assert r.status_code == 400


def test_explain(client):
    r = client.get("/explain", params={"user_id": "u1", "item_id": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["item_id"] == 2
    assert body["title"] == "Item 2"
    assert 0.0 <= body["confidence"] <= 1.0


def test_pattern_routes_fall_back_to_defaults(client):
    nxt = client.get("/patterns/u1/next").json()
    assert nxt["next_genre"] == 28
    assert nxt["session_type"] == "casual"

    analysis = client.get("/patterns/u1/analysis").json()
    assert analysis["avg_rating"] == pytest.approx(9.0)
    assert analysis["preferred_genres"] == [28]

    session = client.post("/patterns/u1/session", json={"recent_views": [3], "media_type": "movie"}).json()
    assert session["recommended_genres"] == [35]
