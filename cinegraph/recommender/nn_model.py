from typing import Dict, Sequence, Tuple

import torch
import torch.nn as nn

from cinegraph.recommender.embedding_store import EmbeddingStore, item_key


class TwoTowerModel(nn.Module):
    def __init__(self, num_users: int, num_items: int, embed_dim: int = 32):
        super().__init__()

        self.user_emb = nn.Embedding(num_users, embed_dim)
        self.item_emb = nn.Embedding(num_items, embed_dim)

        # one small projection per tower
        self.user_tower = nn.Sequential(nn.Linear(embed_dim, embed_dim), nn.ReLU(), nn.Linear(embed_dim, embed_dim))
        self.item_tower = nn.Sequential(nn.Linear(embed_dim, embed_dim), nn.ReLU(), nn.Linear(embed_dim, embed_dim))

        # small init helps stabilize early training
        nn.init.normal_(self.user_emb.weight, mean=0.0, std=0.01)
        nn.init.normal_(self.item_emb.weight, mean=0.0, std=0.01)

    def user_vectors(self, user_idx: torch.Tensor) -> torch.Tensor:
        return self.user_tower(self.user_emb(user_idx))

    def item_vectors(self, item_idx: torch.Tensor) -> torch.Tensor:
        return self.item_tower(self.item_emb(item_idx))

    def forward(self, user_idx: torch.Tensor, item_idx: torch.Tensor) -> torch.Tensor:
        """
        user_idx: (B,)
        item_idx: (B,)
        returns: logits (B,) = <user tower, item tower>
        """
        u = self.user_vectors(user_idx)
        i = self.item_vectors(item_idx)
        return (u * i).sum(dim=1)


@torch.no_grad()
def export_embeddings(
    model: TwoTowerModel,
    store: EmbeddingStore,
    user_index: Dict[str, int],
    item_index: Dict[Tuple[int, str], int],
    version: str = "v1",
) -> Tuple[int, int]:
    """
    Write every tower output into the embedding store.
    user_index: user_id -> row in user_emb; item_index: (tmdb_id, media_type) -> row in item_emb.
    Returns (users written, items written).
    """
    model.eval()

    def _vectors(fn, rows: Sequence[int]):
        if not rows:
            return []
        return fn(torch.tensor(list(rows), dtype=torch.long)).cpu().tolist()

    users = list(user_index.items())
    items = list(item_index.items())

    user_vecs = _vectors(model.user_vectors, [idx for _, idx in users])
    item_vecs = _vectors(model.item_vectors, [idx for _, idx in items])

    with store.conn:
        for (user_id, _), vec in zip(users, user_vecs):
            store.put(user_id, "user", vec, version=version)
        for ((tmdb_id, media_type), _), vec in zip(items, item_vecs):
            store.put(item_key(tmdb_id, media_type), "item", vec, version=version)

    return len(user_vecs), len(item_vecs)
