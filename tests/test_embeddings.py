import pytest
import torch

from cinegraph.recommender.embedding_store import EmbeddingStore, item_key
from cinegraph.recommender.nn_model import TwoTowerModel, export_embeddings


def test_missing_and_invalid_lookups(conn):
    store = EmbeddingStore(conn, dim=4)
    assert store.get("u1", "user") is None
    assert store.get_or_zero("u1", "user") == [0.0] * 4
    assert store.similarity("u1", 603) == 0.0
    with pytest.raises(ValueError):
        store.get("u1", "genre")


def test_put_and_similarity(conn):
    store = EmbeddingStore(conn, dim=2)
    store.put("u1", "user", [1.0, 1.0], version="v2")
    store.put(item_key(603), "item", [2.0, 2.0], version="v2")
    conn.commit()

    assert store.similarity("u1", 603) == pytest.approx(1.0)
    assert store.get_record("u1", "user").version == "v2"


def test_corrupt_vector_reads_as_missing(conn):
    conn.execute(
        "INSERT INTO embeddings(subject_id, subject_kind, vector_json) VALUES(?,?,?)",
        ("u1", "user", "not json"),
    )
    conn.execute(
        "INSERT INTO embeddings(subject_id, subject_kind, vector_json) VALUES(?,?,?)",
        ("u2", "user", "42"),
    )
    conn.commit()
    store = EmbeddingStore(conn, dim=2)
    assert store.get("u1", "user") is None
    assert store.get_record("u1", "user") is None
    # valid JSON but not a list
    assert store.get_record("u2", "user") is None
    assert store.get_or_zero("u2", "user") == [0.0, 0.0]


def test_two_tower_forward_shape():
    torch.manual_seed(0)
    model = TwoTowerModel(num_users=3, num_items=5, embed_dim=8)
    logits = model(torch.tensor([0, 1, 2]), torch.tensor([4, 3, 0]))
    assert logits.shape == (3,)


def test_export_embeddings(conn):
    torch.manual_seed(0)
    model = TwoTowerModel(num_users=2, num_items=3, embed_dim=8)
    store = EmbeddingStore(conn, dim=8)

    written = export_embeddings(
        model,
        store,
        user_index={"u1": 0, "u2": 1},
        item_index={(603, "movie"): 0, (604, "movie"): 1, (1399, "tv"): 2},
        version="test",
    )
    assert written == (2, 3)

    vec = store.get("u2", "user")
    assert len(vec) == 8
    assert store.get(item_key(1399, "tv"), "item") is not None
    assert -1.0 <= store.similarity("u1", 604) <= 1.0
    assert store.get_record(item_key(603), "item").version == "test"
