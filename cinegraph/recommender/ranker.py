from __future__ import annotations

from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Set
import logging
import math

from cinegraph.recommender.embedding_store import EmbeddingStore, item_key
from cinegraph.recommender.feature_store import FeatureStore
from cinegraph.recommender.numeric import cosine_similarity
from cinegraph.recommender.records import ItemMetadata, RatingEvent, ScoredCandidate

logger = logging.getLogger(__name__)

EMBEDDING_SIMILARITY = "embedding_similarity"
GENRE_MATCH = "genre_match"
POPULARITY = "popularity"
RECENCY = "recency"

FEATURES = (EMBEDDING_SIMILARITY, GENRE_MATCH, POPULARITY, RECENCY)

# arm name -> features that strategy scores with
STRATEGY_FEATURES: Dict[str, tuple] = {
    "two_tower": (EMBEDDING_SIMILARITY, GENRE_MATCH),
    "content_based": (GENRE_MATCH, RECENCY),
    "trending": (POPULARITY, RECENCY),
    "hybrid": FEATURES,
}

# fallback scoring path when nothing else can be computed
POPULARITY_ONLY = (POPULARITY,)

LIKED_RATING = 7.0


def normalize_score(raw: float) -> float:
    """
    Raw scores come from several sources with different scales:
      [0,1] as is, (1,100] as a percentage, >100 clamps to 1, negatives clamp to 0
    """
    if raw is None or math.isnan(raw) or raw <= 0.0:
        return 0.0
    if raw <= 1.0:
        return float(raw)
    if raw <= 100.0:
        return float(raw) / 100.0
    return 1.0


def preferred_genres(
    ratings: Sequence[RatingEvent],
    item_genres: Dict[tuple, List[int]],
    min_rating: float = LIKED_RATING,
) -> Set[int]:
    """Genres of the items the user rated at least `min_rating`."""
    out: Set[int] = set()
    for r in ratings:
        if r.rating >= min_rating:
            out.update(item_genres.get((r.item_id, r.media_type), []))
    return out


def genre_match(item: ItemMetadata, preferred: Set[int]) -> float:
    if not item.genres:
        return 0.0
    return sum(1 for g in item.genres if g in preferred) / len(item.genres)


def recency_score(release_date: Optional[str], today: date, half_life_years: float = 5.0) -> float:
    if not release_date:
        return 0.0
    try:
        released = date.fromisoformat(release_date[:10])
    except ValueError:
        return 0.0
    age_years = max(0.0, (today - released).days / 365.25)
    return 0.5 ** (age_years / half_life_years)


def popularity_scores(items: Sequence[ItemMetadata]) -> Dict[tuple, float]:
    """log1p(vote_count), min-max normalized over the pool (0.5 when flat)."""
    logs = {(it.item_id, it.media_type): math.log1p(max(it.vote_count, 0)) for it in items}
    if not logs:
        return {}
    lo = min(logs.values())
    hi = max(logs.values())
    if hi - lo == 0:
        return {k: 0.5 for k in logs}
    return {k: (v - lo) / (hi - lo) for k, v in logs.items()}


class CandidateRanker:
    def __init__(
        self,
        feature_store: FeatureStore,
        embedding_store: EmbeddingStore,
        recency_half_life_years: float = 5.0,
        today: Optional[date] = None,
    ):
        self.feature_store = feature_store
        self.embedding_store = embedding_store
        self.recency_half_life_years = recency_half_life_years
        self.today = today

    def features_for(self, strategy: str, has_user_embedding: bool) -> tuple:
        features = STRATEGY_FEATURES.get(strategy, FEATURES)
        if not has_user_embedding:
            features = tuple(f for f in features if f != EMBEDDING_SIMILARITY)
        return features or POPULARITY_ONLY

    def rank(
        self,
        user_id: str,
        candidates: Iterable[ItemMetadata],
        strategy: str,
        preferred: Set[int],
    ) -> List[ScoredCandidate]:
        candidates = list(candidates)
        if not candidates:
            return []

        user_vec = self.embedding_store.get(user_id, "user")
        if user_vec is None:
            logger.info("no embedding for user %s, scoring '%s' without embedding similarity", user_id, strategy)
        features = self.features_for(strategy, has_user_embedding=user_vec is not None)
        weights = self.feature_store.get_weights(user_id, features)

        popularity = popularity_scores(candidates) if POPULARITY in features else {}
        today = self.today or date.today()

        scored: List[ScoredCandidate] = []
        for item in candidates:
            values: Dict[str, float] = {}
            for f in features:
                if f == EMBEDDING_SIMILARITY:
                    item_vec = self.embedding_store.get_or_zero(item_key(item.item_id, item.media_type), "item")
                    values[f] = normalize_score(cosine_similarity(user_vec or [], item_vec))
                elif f == GENRE_MATCH:
                    values[f] = genre_match(item, preferred)
                elif f == POPULARITY:
                    values[f] = popularity.get((item.item_id, item.media_type), 0.0)
                elif f == RECENCY:
                    values[f] = recency_score(item.release_date, today, self.recency_half_life_years)

            weighted = {f: values[f] * weights[f] for f in features}
            total_weight = sum(weights[f] for f in features)
            raw = sum(weighted.values()) / total_weight if total_weight > 0 else 0.0

            total = sum(weighted.values())
            contributions = {f: (w / total if total > 0 else 0.0) for f, w in weighted.items()}

            scored.append(
                ScoredCandidate(
                    item=item,
                    score=normalize_score(raw),
                    strategy=strategy,
                    feature_values=values,
                    contributions=contributions,
                )
            )

        scored.sort(key=lambda c: (-c.score, c.item.item_id, c.item.media_type))
        return scored
