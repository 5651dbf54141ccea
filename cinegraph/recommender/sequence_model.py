"""
Viewing pattern recognition.

An LSTM reads the last `sequence_length` normalized ratings of a user and
three heads predict the next genre, the next rating and the session type.
Serving goes through `PatternRecognizer`, which owns an explicit model
handle and falls back to fixed defaults whenever the model or the history
is missing.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import logging
import os
import sqlite3

import torch
import torch.nn as nn

from cinegraph.recommender.numeric import TorchBackend, default_backend
from cinegraph.recommender.records import (
    DEFAULT_GENRE_ID,
    GENRE_IDS,
    MAX_RATING,
    SESSION_TYPES,
    PatternPrediction,
    RatingEvent,
)
from cinegraph.recommender.repositories import ItemCatalog, RatingHistory

logger = logging.getLogger(__name__)

DEFAULT_NEXT_RATING = 7.5
DEFAULT_PROBABILITY = 0.5
DEFAULT_SESSION_TYPE = "casual"

BINGE_GAP_MINUTES = 60.0
BINGE_MIN_GAPS = 5

RECENCY_DECAY = 0.9
TOP_GENRES = 3


def normalize_rating(rating: float) -> float:
    return max(0.0, min(float(rating) / MAX_RATING, 1.0))


def build_window(ratings: Sequence[RatingEvent], sequence_length: int) -> List[float]:
    """Last `sequence_length` normalized ratings, zero-padded at the start."""
    recent = [normalize_rating(r.rating) for r in ratings[-sequence_length:]] if sequence_length > 0 else []
    return [0.0] * (sequence_length - len(recent)) + recent


@dataclass
class ViewingBehavior:
    preferred_hours: List[int]
    preferred_days: List[int]
    avg_gap_minutes: float
    binge_watcher: bool


def detect_viewing_patterns(timestamps: Sequence[int]) -> ViewingBehavior:
    """
    Gap heuristic over unix timestamps (seconds, oldest first):
    binge watcher when the average gap is under an hour over more than 5 gaps.
    """
    hours: Counter = Counter()
    days: Counter = Counter()
    gaps: List[float] = []

    for idx, ts in enumerate(timestamps):
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
        hours[dt.hour] += 1
        days[dt.weekday()] += 1
        if idx > 0:
            gaps.append((ts - timestamps[idx - 1]) / 60.0)

    avg_gap = sum(gaps) / len(gaps) if gaps else 0.0
    binge = avg_gap < BINGE_GAP_MINUTES and len(gaps) > BINGE_MIN_GAPS

    return ViewingBehavior(
        preferred_hours=[h for h, _ in hours.most_common(3)],
        preferred_days=[d for d, _ in days.most_common(2)],
        avg_gap_minutes=avg_gap,
        binge_watcher=binge,
    )


def session_label(timestamps: Sequence[int]) -> str:
    # the gap heuristic only ever yields binge or casual
    return "binge" if detect_viewing_patterns(timestamps).binge_watcher else "casual"


def recency_weighted_genres(
    ratings: Sequence[RatingEvent],
    item_genres: Dict[tuple, List[int]],
    top_n: int = TOP_GENRES,
    decay: float = RECENCY_DECAY,
) -> List[int]:
    """Genres ranked by frequency where each rating counts decay**age (age 0 = newest)."""
    scores: Dict[int, float] = {}
    n = len(ratings)
    for i, r in enumerate(ratings):
        w = decay ** (n - 1 - i)
        for g in item_genres.get((r.item_id, r.media_type), []):
            scores[g] = scores.get(g, 0.0) + w
    ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
    return [g for g, _ in ranked[:top_n]]


@dataclass
class PatternExample:
    window: List[float]
    genre_idx: int
    rating: float
    session_idx: int


def build_training_examples(
    ratings: Sequence[RatingEvent],
    item_genres: Dict[tuple, List[int]],
    sequence_length: int,
) -> List[PatternExample]:
    """
    Sliding windows over one user's history. Targets come from the rating that
    follows each window: its primary genre, its value, and the gap-heuristic
    label of the window plus that rating.
    """
    examples: List[PatternExample] = []
    if len(ratings) < sequence_length + 1:
        return examples

    for i in range(len(ratings) - sequence_length):
        window = ratings[i:i + sequence_length]
        nxt = ratings[i + sequence_length]

        genres = [g for g in item_genres.get((nxt.item_id, nxt.media_type), []) if g in GENRE_IDS]
        primary = genres[0] if genres else DEFAULT_GENRE_ID

        label = session_label([r.ts for r in window] + [nxt.ts])

        examples.append(
            PatternExample(
                window=[normalize_rating(r.rating) for r in window],
                genre_idx=GENRE_IDS.index(primary),
                rating=float(nxt.rating),
                session_idx=SESSION_TYPES.index(label),
            )
        )
    return examples


class ViewingPatternNet(nn.Module):
    def __init__(
        self,
        num_genres: int = len(GENRE_IDS),
        feature_dim: int = 1,
        hidden_units: int = 64,
        dense_units: int = 32,
        dropout: float = 0.3,
    ):
        super().__init__()

        self.lstm = nn.LSTM(input_size=feature_dim, hidden_size=hidden_units, batch_first=True)
        self.dense = nn.Sequential(
            nn.Linear(hidden_units, dense_units),
            nn.ReLU(),
            nn.Dropout(dropout),
        )

        self.genre_head = nn.Linear(dense_units, num_genres)
        self.rating_head = nn.Linear(dense_units, 1)
        self.session_head = nn.Linear(dense_units, len(SESSION_TYPES))

    def forward(self, x: torch.Tensor):
        """
        x: (B, T, F)
        returns: genre logits (B, G), rating in [0, 10] (B,), session logits (B, 3)
        """
        _, (h, _) = self.lstm(x)
        z = self.dense(h[-1])
        rating = torch.sigmoid(self.rating_head(z)).squeeze(1) * MAX_RATING
        return self.genre_head(z), rating, self.session_head(z)


@dataclass
class PatternModelHandle:
    model: ViewingPatternNet
    sequence_length: int
    version: str = "v1"
    meta: Dict[str, Any] = field(default_factory=dict)


def save_pattern_model(handle: PatternModelHandle, path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    lstm = handle.model.lstm
    artifact = {
        "model_state_dict": handle.model.state_dict(),
        "num_genres": handle.model.genre_head.out_features,
        "feature_dim": lstm.input_size,
        "hidden_units": lstm.hidden_size,
        "dense_units": handle.model.genre_head.in_features,
        "sequence_length": handle.sequence_length,
        "version": handle.version,
        "genre_ids": list(GENRE_IDS),
    }
    torch.save(artifact, path)


def load_pattern_model(path: str) -> Optional[PatternModelHandle]:
    """Load a saved artifact; None when the file is missing or unreadable."""
    if not os.path.exists(path):
        logger.warning("pattern model not found at %s, predictions will use defaults", path)
        return None

    try:
        artifact = torch.load(path, map_location="cpu")
        model = ViewingPatternNet(
            num_genres=int(artifact["num_genres"]),
            feature_dim=int(artifact.get("feature_dim", 1)),
            hidden_units=int(artifact["hidden_units"]),
            dense_units=int(artifact["dense_units"]),
        )
        model.load_state_dict(artifact["model_state_dict"])
        model.eval()
    except (OSError, KeyError, RuntimeError, ValueError) as e:
        logger.warning("could not load pattern model from %s: %s", path, e)
        return None

    logger.info("pattern model %s loaded from %s", artifact.get("version", "?"), path)
    return PatternModelHandle(
        model=model,
        sequence_length=int(artifact["sequence_length"]),
        version=str(artifact.get("version", "v1")),
        meta={"path": path},
    )


@dataclass
class PatternAnalysis:
    binge_watcher: bool
    preferred_genres: List[int]
    avg_rating: float
    predicted_next_genre: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "binge_watcher": self.binge_watcher,
            "preferred_genres": self.preferred_genres,
            "avg_rating": self.avg_rating,
            "predicted_next_genre": self.predicted_next_genre,
        }


class PatternRecognizer:
    """
    Serving side of the sequence model. The handle may be None (not trained
    or not loaded yet); the window length comes from the handle's artifact.
    """

    def __init__(
        self,
        history: RatingHistory,
        catalog: Optional[ItemCatalog] = None,
        handle: Optional[PatternModelHandle] = None,
        backend: TorchBackend = default_backend,
    ):
        self.history = history
        self.catalog = catalog
        self.handle = handle
        self.backend = backend

    @staticmethod
    def default_prediction(user_id: str) -> PatternPrediction:
        return PatternPrediction(
            user_id=user_id,
            next_genre_id=DEFAULT_GENRE_ID,
            next_rating=DEFAULT_NEXT_RATING,
            probability=DEFAULT_PROBABILITY,
            session_type=DEFAULT_SESSION_TYPE,
        )

    def _predict_from_ratings(self, user_id: str, ratings: Sequence[RatingEvent]) -> PatternPrediction:
        handle = self.handle
        if handle is None:
            return self.default_prediction(user_id)

        seq_len = handle.sequence_length
        if len(ratings) < seq_len + 1:
            return self.default_prediction(user_id)

        window = build_window(ratings, seq_len)
        try:
            genre_logits, rating, session_logits = self.backend.infer(handle.model, [[[v] for v in window]])
        except RuntimeError as e:
            logger.warning("pattern model inference failed for user %s: %s", user_id, e)
            return self.default_prediction(user_id)

        genre_probs = self.backend.softmax(genre_logits[0])
        if len(genre_probs) != len(GENRE_IDS):
            logger.warning("pattern model has %d genre outputs, expected %d", len(genre_probs), len(GENRE_IDS))
            return self.default_prediction(user_id)

        top = self.backend.argmax(genre_probs)
        session_probs = self.backend.softmax(session_logits[0])

        return PatternPrediction(
            user_id=user_id,
            next_genre_id=GENRE_IDS[top],
            next_rating=max(0.0, min(float(rating[0]), MAX_RATING)),
            probability=max(0.0, min(float(genre_probs[top]), 1.0)),
            session_type=SESSION_TYPES[self.backend.argmax(session_probs)],
        )

    def predict_next_action(self, user_id: str) -> PatternPrediction:
        ratings = self.history.get_ratings(user_id)
        return self._predict_from_ratings(user_id, ratings)

    def _item_genres(self, ratings: Sequence[RatingEvent]) -> Dict[tuple, List[int]]:
        if self.catalog is None:
            return {}
        items = self.catalog.get_many((r.item_id, r.media_type) for r in ratings)
        return {k: v.genres for k, v in items.items()}

    def analyze_patterns(self, user_id: str) -> PatternAnalysis:
        ratings = self.history.get_ratings(user_id)
        if not ratings:
            return PatternAnalysis(
                binge_watcher=False,
                preferred_genres=[],
                avg_rating=0.0,
                predicted_next_genre=DEFAULT_GENRE_ID,
            )

        behavior = detect_viewing_patterns([r.ts for r in ratings])
        normalized = [normalize_rating(r.rating) for r in ratings]
        avg_rating = sum(normalized) / len(normalized) * MAX_RATING

        prediction = self._predict_from_ratings(user_id, ratings)
        preferred = recency_weighted_genres(ratings, self._item_genres(ratings))

        return PatternAnalysis(
            binge_watcher=behavior.binge_watcher,
            preferred_genres=preferred,
            avg_rating=avg_rating,
            predicted_next_genre=prediction.next_genre_id,
        )

    def get_session_recommendations(self, user_id: str, session_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        session_context = session_context or {}
        try:
            prediction = self.predict_next_action(user_id)
            genres = [prediction.next_genre_id]

            recent_views = session_context.get("recent_views") or []
            media_type = session_context.get("media_type", "movie")
            if recent_views and self.catalog is not None:
                items = self.catalog.get_many((int(v), media_type) for v in recent_views)
                counts: Counter = Counter()
                for item in items.values():
                    counts.update(item.genres)
                ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
                if ranked:
                    genres = [g for g, _ in ranked[:TOP_GENRES]]

            return {
                "recommended_genres": genres,
                "predicted_rating": prediction.next_rating,
                "session_type": prediction.session_type,
                "confidence": prediction.probability,
            }
        except (sqlite3.Error, ValueError, TypeError) as e:
            logger.warning("session recommendations failed for user %s: %s", user_id, e)
            return {
                "recommended_genres": [DEFAULT_GENRE_ID],
                "predicted_rating": DEFAULT_NEXT_RATING,
                "session_type": DEFAULT_SESSION_TYPE,
                "confidence": DEFAULT_PROBABILITY,
            }
