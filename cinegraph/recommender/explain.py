from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set

from cinegraph.recommender.ranker import EMBEDDING_SIMILARITY, GENRE_MATCH, POPULARITY, RECENCY
from cinegraph.recommender.records import GENRE_NAMES, FeatureContribution, ItemMetadata

COLOR_PALETTE = [
    "#3b82f6",  # blue
    "#10b981",  # green
    "#8b5cf6",  # purple
    "#f59e0b",  # amber
    "#ef4444",  # red
    "#ec4899",  # pink
    "#14b8a6",  # teal
]
FALLBACK_COLOR = "#94a3b8"

DISPLAY_NAMES = {
    EMBEDDING_SIMILARITY: "Taste Profile",
    GENRE_MATCH: "Genre Match",
    POPULARITY: "Popularity",
    RECENCY: "New Releases",
}

DEFAULT_REASON = "This item matches your viewing preferences"
DEFAULT_CONFIDENCE = 0.5


@dataclass
class FactorImportance:
    feature_name: str
    importance: float  # 0..1
    percentage: float  # 0..100
    human_readable: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_name": self.feature_name,
            "importance": self.importance,
            "percentage": self.percentage,
            "human_readable": self.human_readable,
        }


@dataclass
class Explanation:
    user_id: str
    item_id: int
    media_type: str
    primary_reason: str
    contributing_factors: List[FactorImportance]
    visual_breakdown: List[Dict[str, Any]]
    confidence: float
    explanation_text: str
    recommendation_id: Optional[str] = None
    strategy: Optional[str] = None
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendation_id": self.recommendation_id,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "media_type": self.media_type,
            "title": self.title,
            "strategy": self.strategy,
            "primary_reason": self.primary_reason,
            "contributing_factors": [f.to_dict() for f in self.contributing_factors],
            "visual_breakdown": self.visual_breakdown,
            "confidence": self.confidence,
            "explanation_text": self.explanation_text,
        }


def _genre_names(genres: Sequence[int]) -> List[str]:
    return [GENRE_NAMES[g] for g in genres if g in GENRE_NAMES]


class ExplanationGenerator:
    """Turns the feature contributions logged at ranking time into an explanation."""

    def describe(
        self,
        feature_name: str,
        feature_value: float,
        item: Optional[ItemMetadata],
        preferred: Set[int],
    ) -> str:
        if feature_name == GENRE_MATCH:
            matched = _genre_names([g for g in (item.genres if item else []) if g in preferred])
            if not matched:
                return "Matches your genre preferences"
            more = f" and {len(matched) - 2} more" if len(matched) > 2 else ""
            return f"Matches your love for {', '.join(matched[:2])}{more}"
        if feature_name == EMBEDDING_SIMILARITY:
            return f"Close to your taste profile ({feature_value * 100:.0f}% match)"
        if feature_name == POPULARITY:
            if item and item.vote_average:
                return f"Popular with viewers: {item.vote_average:.1f}/10 from {item.vote_count} votes"
            return "Popular with viewers"
        if feature_name == RECENCY:
            if item and item.release_date:
                return f"Recent release ({item.release_date[:4]})"
            return "Recent release"
        return DISPLAY_NAMES.get(feature_name, feature_name)

    def generate(
        self,
        user_id: str,
        item_id: int,
        media_type: str,
        contributions: Sequence[FeatureContribution],
        item: Optional[ItemMetadata] = None,
        preferred: Optional[Set[int]] = None,
        arm_estimated_reward: Optional[float] = None,
        strategy: Optional[str] = None,
    ) -> Explanation:
        preferred = preferred or set()
        total = sum(max(c.contribution_score, 0.0) for c in contributions)

        factors: List[FactorImportance] = []
        if total > 0:
            for c in contributions:
                share = max(c.contribution_score, 0.0) / total
                if share <= 0:
                    continue
                factors.append(
                    FactorImportance(
                        feature_name=c.feature_name,
                        importance=share,
                        percentage=share * 100.0,
                        human_readable=self.describe(c.feature_name, float(c.feature_value or 0.0), item, preferred),
                    )
                )
        factors.sort(key=lambda f: (-f.percentage, f.feature_name))

        if factors:
            confidence = factors[0].percentage / 100.0
        elif arm_estimated_reward is not None:
            confidence = max(0.0, min(float(arm_estimated_reward), 1.0))
        else:
            confidence = DEFAULT_CONFIDENCE

        visual = [
            {
                "feature_name": DISPLAY_NAMES.get(f.feature_name, f.feature_name),
                "percentage": f.percentage,
                "color": COLOR_PALETTE[i] if i < len(COLOR_PALETTE) else FALLBACK_COLOR,
            }
            for i, f in enumerate(factors)
        ]

        title = item.title if item else None
        text = f'We recommended "{title or "this item"}" because:\n\n'
        if factors:
            for i, f in enumerate(factors[:5], start=1):
                text += f"{i}. {f.percentage:.0f}% - {f.human_readable}\n"
        else:
            text += "This matches your general viewing preferences and has positive reviews."

        recommendation_id = contributions[0].recommendation_id if contributions else None

        return Explanation(
            user_id=user_id,
            item_id=item_id,
            media_type=media_type,
            primary_reason=factors[0].human_readable if factors else DEFAULT_REASON,
            contributing_factors=factors,
            visual_breakdown=visual,
            confidence=confidence,
            explanation_text=text,
            recommendation_id=recommendation_id,
            strategy=strategy,
            title=title,
        )
