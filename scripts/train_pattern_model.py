#!/usr/bin/env python3
import argparse
import logging
import random
from dataclasses import dataclass
from typing import List

import torch
from torch.utils.data import Dataset, DataLoader

from cinegraph.app.config import settings
from cinegraph.app.db import connect, init_db
from cinegraph.app.logging_setup import setup_logging
from cinegraph.recommender.repositories import ItemCatalog, RatingHistory
from cinegraph.recommender.sequence_model import (
    PatternExample,
    PatternModelHandle,
    ViewingPatternNet,
    build_training_examples,
    save_pattern_model,
)

logger = logging.getLogger("train_pattern_model")


@dataclass
class TrainConfig:
    epochs: int
    batch_size: int
    lr: float
    sequence_length: int
    max_users: int
    min_examples: int
    seed: int
    version: str
    out_path: str


class PatternDataset(Dataset):
    def __init__(self, examples: List[PatternExample]):
        self.examples = examples

    def __len__(self) -> int:
        return len(self.examples)

    def __getitem__(self, idx: int):
        ex = self.examples[idx]
        return (
            torch.tensor([[v] for v in ex.window], dtype=torch.float32),
            torch.tensor(ex.genre_idx, dtype=torch.long),
            torch.tensor(ex.rating, dtype=torch.float32),
            torch.tensor(ex.session_idx, dtype=torch.long),
        )


def load_examples(conn, sequence_length: int, max_users: int) -> List[PatternExample]:
    users = conn.execute(
        "SELECT user_id FROM ratings GROUP BY user_id HAVING COUNT(*) >= ? LIMIT ?",
        (sequence_length + 1, max_users),
    ).fetchall()

    history = RatingHistory(conn)
    catalog = ItemCatalog(conn)

    examples: List[PatternExample] = []
    for r in users:
        ratings = history.get_ratings(str(r["user_id"]))
        items = catalog.get_many((x.item_id, x.media_type) for x in ratings)
        genres = {k: v.genres for k, v in items.items()}
        examples.extend(build_training_examples(ratings, genres, sequence_length))
    return examples


def train(cfg: TrainConfig):
    conn = connect()
    init_db(conn)
    examples = load_examples(conn, cfg.sequence_length, cfg.max_users)
    conn.close()

    logger.info("extracted %d viewing windows", len(examples))
    if len(examples) < cfg.min_examples:
        raise SystemExit(f"Insufficient data for pattern training ({len(examples)} < {cfg.min_examples})")

    random.Random(cfg.seed).shuffle(examples)
    n_val = int(len(examples) * 0.2)
    train_loader = DataLoader(PatternDataset(examples[n_val:]), batch_size=cfg.batch_size, shuffle=True)
    val_loader = DataLoader(PatternDataset(examples[:n_val]), batch_size=cfg.batch_size, shuffle=False)

    torch.manual_seed(cfg.seed)
    model = ViewingPatternNet()
    opt = torch.optim.Adam(model.parameters(), lr=cfg.lr)
    ce = torch.nn.CrossEntropyLoss()
    mse = torch.nn.MSELoss()

    def step_loss(x, g, y, s):
        genre_logits, rating, session_logits = model(x)
        # rating loss on the 0..1 scale so the three tasks stay comparable
        return ce(genre_logits, g) + mse(rating / 10.0, y / 10.0) + ce(session_logits, s)

    for epoch in range(1, cfg.epochs + 1):
        model.train()
        running = 0.0
        seen = 0
        for x, g, y, s in train_loader:
            opt.zero_grad()
            loss = step_loss(x, g, y, s)
            loss.backward()
            opt.step()
            running += float(loss.item()) * y.size(0)
            seen += y.size(0)

        model.eval()
        val_total = 0.0
        val_seen = 0
        with torch.no_grad():
            for x, g, y, s in val_loader:
                val_total += float(step_loss(x, g, y, s).item()) * y.size(0)
                val_seen += y.size(0)

        logger.info("epoch %02d/%d train_loss=%.4f val_loss=%.4f",
                    epoch, cfg.epochs, running / max(seen, 1), val_total / max(val_seen, 1))

    handle = PatternModelHandle(model=model, sequence_length=cfg.sequence_length, version=cfg.version)
    save_pattern_model(handle, cfg.out_path)
    logger.info("saved pattern model %s to %s", cfg.version, cfg.out_path)


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--epochs", type=int, default=40)
    ap.add_argument("--batch-size", type=int, default=16)
    ap.add_argument("--lr", type=float, default=1e-3)
    ap.add_argument("--sequence-length", type=int, default=settings.sequence_length)
    ap.add_argument("--max-users", type=int, default=100)
    ap.add_argument("--min-examples", type=int, default=100)
    ap.add_argument("--seed", type=int, default=42)
    ap.add_argument("--version", type=str, default="v1")
    ap.add_argument("--out", type=str, default=settings.pattern_model_path)
    args = ap.parse_args()

    setup_logging(settings.log_level)
    train(
        TrainConfig(
            epochs=args.epochs,
            batch_size=args.batch_size,
            lr=args.lr,
            sequence_length=args.sequence_length,
            max_users=args.max_users,
            min_examples=args.min_examples,
            seed=args.seed,
            version=args.version,
            out_path=args.out,
        )
    )


if __name__ == "__main__":
    main()
