from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# TMDB genre vocabulary, order is the sequence model's genre head order
GENRE_IDS: List[int] = [28, 12, 16, 35, 80, 99, 18, 10751, 14, 36, 27, 10402, 9648, 10749, 878, 10770, 53, 10752, 37]

GENRE_NAMES: Dict[int, str] = {
    28: "Action", 12: "Adventure", 16: "Animation", 35: "Comedy", 80: "Crime",
    99: "Documentary", 18: "Drama", 10751: "Family", 14: "Fantasy", 36: "History",
    27: "Horror", 10402: "Music", 9648: "Mystery", 10749: "Romance", 878: "Science Fiction",
    10770: "TV Movie", 53: "Thriller", 10752: "War", 37: "Western",
}

DEFAULT_GENRE_ID = 28  # Action

SESSION_TYPES = ("binge", "casual", "explorer")

MAX_RATING = 10.0


@dataclass
class RatingEvent:
    item_id: int
    rating: float  # 0..10
    media_type: str
    ts: int  # unix seconds


@dataclass
class ItemMetadata:
    item_id: int
    media_type: str
    title: str
    genres: List[int]
    vote_average: float
    vote_count: int
    release_date: Optional[str]


@dataclass
class FeatureWeight:
    scope: Optional[str]  # user id, None for global
    feature_name: str
    weight: float = 0.5
    success_count: int = 0
    total_count: int = 0
    learning_rate: float = 0.1

    @property
    def success_rate(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return self.success_count / self.total_count


@dataclass(frozen=True)
class FeatureContribution:
    recommendation_id: str
    user_id: str
    feature_name: str
    contribution_score: float  # 0..1
    feature_value: float
    outcome_type: Optional[str] = None


@dataclass
class Embedding:
    subject_id: str
    subject_kind: str  # "user" | "item"
    vector: List[float]
    version: str = "v1"


@dataclass
class PatternPrediction:
    user_id: str
    next_genre_id: int
    next_rating: float  # 0..10
    probability: float  # 0..1
    session_type: str  # one of SESSION_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "next_genre": self.next_genre_id,
            "next_rating": self.next_rating,
            "probability": self.probability,
            "session_type": self.session_type,
        }


@dataclass
class BanditExperiment:
    id: str
    user_id: str
    experiment_type: str
    arm_chosen: str
    reward: Optional[float]
    context: Dict[str, Any]
    exploration_rate: float
    created_at: Optional[str] = None


@dataclass
class DiversityMetricsSnapshot:
    user_id: str
    session_id: Optional[str]
    recommendation_type: str
    intra_diversity: float
    genre_balance: float
    serendipity_score: float
    exploration_rate: float
    coverage_score: float
    recommendation_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intra_diversity": self.intra_diversity,
            "genre_balance": self.genre_balance,
            "serendipity_score": self.serendipity_score,
            "exploration_rate": self.exploration_rate,
            "coverage_score": self.coverage_score,
            "recommendation_count": self.recommendation_count,
        }


@dataclass
class ScoredCandidate:
    item: ItemMetadata
    score: float
    strategy: str
    feature_values: Dict[str, float] = field(default_factory=dict)
    contributions: Dict[str, float] = field(default_factory=dict)
    diversity_score: float = 0.0
