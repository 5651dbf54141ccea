#!/usr/bin/env python3
import argparse
import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Tuple

import torch
from torch.utils.data import Dataset, DataLoader

from cinegraph.app.config import settings
from cinegraph.app.db import connect, init_db
from cinegraph.app.logging_setup import setup_logging
from cinegraph.recommender.embedding_store import EmbeddingStore
from cinegraph.recommender.nn_model import TwoTowerModel, export_embeddings

logger = logging.getLogger("train_embeddings")

LIKED_RATING = 7.0


@dataclass
class TrainConfig:
    epochs: int
    batch_size: int
    lr: float
    embed_dim: int
    seed: int
    version: str


class RatingsDataset(Dataset):
    def __init__(self, pairs: List[Tuple[int, int, int]]):
        self.pairs = pairs

    def __len__(self) -> int:
        return len(self.pairs)

    def __getitem__(self, idx: int):
        u, it, y = self.pairs[idx]
        return (
            torch.tensor(u, dtype=torch.long),
            torch.tensor(it, dtype=torch.long),
            torch.tensor(y, dtype=torch.float32),
        )


def load_training_pairs(conn) -> Tuple[List[Tuple[int, int, int]], Dict[str, int], Dict[Tuple[int, str], int]]:
    """
    Returns:
      pairs: (user_idx, item_idx, label), label = 1 if rating >= 7 else 0
      user_index: user_id -> embedding row
      item_index: (tmdb_id, media_type) -> embedding row
    """
    rows = conn.execute("SELECT user_id, item_id, media_type, rating FROM ratings").fetchall()

    user_index: Dict[str, int] = {}
    item_index: Dict[Tuple[int, str], int] = {}
    pairs: List[Tuple[int, int, int]] = []

    for r in rows:
        u = user_index.setdefault(str(r["user_id"]), len(user_index))
        it = item_index.setdefault((int(r["item_id"]), str(r["media_type"])), len(item_index))
        label = 1 if float(r["rating"]) >= LIKED_RATING else 0
        pairs.append((u, it, label))

    return pairs, user_index, item_index


@torch.no_grad()
def evaluate(model: TwoTowerModel, loader: DataLoader, device: torch.device) -> Tuple[float, float]:
    model.eval()
    loss_fn = torch.nn.BCEWithLogitsLoss()

    total_loss = 0.0
    total = 0
    correct = 0

    for u, it, y in loader:
        u, it, y = u.to(device), it.to(device), y.to(device)
        logits = model(u, it)
        loss = loss_fn(logits, y)
        preds = (torch.sigmoid(logits) >= 0.5).float()

        total_loss += float(loss.item()) * y.size(0)
        total += y.size(0)
        correct += int((preds == y).sum().item())

    return total_loss / max(total, 1), correct / max(total, 1)


def train(cfg: TrainConfig):
    conn = connect()
    init_db(conn)

    pairs, user_index, item_index = load_training_pairs(conn)
    if not pairs:
        conn.close()
        raise SystemExit("No ratings found, nothing to train on.")

    random.Random(cfg.seed).shuffle(pairs)
    n_val = int(len(pairs) * 0.2)
    train_ds = RatingsDataset(pairs[n_val:])
    val_ds = RatingsDataset(pairs[:n_val])

    train_loader = DataLoader(train_ds, batch_size=cfg.batch_size, shuffle=True)
    val_loader = DataLoader(val_ds, batch_size=cfg.batch_size, shuffle=False)

    torch.manual_seed(cfg.seed)
    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    model = TwoTowerModel(num_users=len(user_index), num_items=len(item_index), embed_dim=cfg.embed_dim).to(device)

    opt = torch.optim.Adam(model.parameters(), lr=cfg.lr)
    loss_fn = torch.nn.BCEWithLogitsLoss()

    logger.info("device=%s train=%d val=%d users=%d items=%d dim=%d",
                device, len(train_ds), len(val_ds), len(user_index), len(item_index), cfg.embed_dim)

    for epoch in range(1, cfg.epochs + 1):
        model.train()
        running_loss = 0.0
        seen = 0

        for u, it, y in train_loader:
            u, it, y = u.to(device), it.to(device), y.to(device)
            opt.zero_grad()
            loss = loss_fn(model(u, it), y)
            loss.backward()
            opt.step()

            running_loss += float(loss.item()) * y.size(0)
            seen += y.size(0)

        val_loss, val_acc = evaluate(model, val_loader, device)
        logger.info("epoch %02d/%d train_loss=%.4f val_loss=%.4f val_acc=%.4f",
                    epoch, cfg.epochs, running_loss / max(seen, 1), val_loss, val_acc)

    model.to("cpu")
    n_users, n_items = export_embeddings(
        model, EmbeddingStore(conn, dim=cfg.embed_dim), user_index, item_index, version=cfg.version
    )
    conn.close()
    logger.info("exported %d user and %d item embeddings (version %s)", n_users, n_items, cfg.version)


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--epochs", type=int, default=5)
    ap.add_argument("--batch-size", type=int, default=512)
    ap.add_argument("--lr", type=float, default=1e-3)
    ap.add_argument("--embed-dim", type=int, default=settings.embedding_dim)
    ap.add_argument("--seed", type=int, default=42)
    ap.add_argument("--version", type=str, default=settings.embedding_version)
    args = ap.parse_args()

    setup_logging(settings.log_level)
    train(
        TrainConfig(
            epochs=args.epochs,
            batch_size=args.batch_size,
            lr=args.lr,
            embed_dim=args.embed_dim,
            seed=args.seed,
            version=args.version,
        )
    )


if __name__ == "__main__":
    main()
