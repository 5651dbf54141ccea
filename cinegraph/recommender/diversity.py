from __future__ import annotations

from collections import Counter
from typing import Iterable, List, Optional, Sequence, Set
import logging
import math

from cinegraph.recommender.records import GENRE_IDS, DiversityMetricsSnapshot, ScoredCandidate

logger = logging.getLogger(__name__)


def genre_overlap(a: Iterable[int], b: Iterable[int]) -> float:
    """Jaccard overlap of two genre sets (0 when both are empty)."""
    sa, sb = set(a), set(b)
    union = sa | sb
    if not union:
        return 0.0
    return len(sa & sb) / len(union)


def dissimilarity(a: ScoredCandidate, b: ScoredCandidate) -> float:
    return 1.0 - genre_overlap(a.item.genres, b.item.genres)


def intra_diversity(items: Sequence[ScoredCandidate]) -> float:
    total = 0.0
    pairs = 0
    for i in range(len(items)):
        for j in range(i + 1, len(items)):
            total += dissimilarity(items[i], items[j])
            pairs += 1
    return total / pairs if pairs else 0.0


def genre_balance(items: Sequence[ScoredCandidate], vocabulary_size: int = len(GENRE_IDS)) -> float:
    """
    Shannon entropy of the genre distribution over log(vocabulary_size).

    With the denominator fixed, spreading the same number of genre tags
    over more genres never scores lower.
    """
    counts: Counter = Counter()
    for it in items:
        counts.update(it.item.genres)
    if len(counts) <= 1:
        return 0.0

    total = sum(counts.values())
    entropy = 0.0
    for c in counts.values():
        p = c / total
        entropy -= p * math.log(p)
    denom = math.log(max(vocabulary_size, len(counts)))
    return min(entropy / denom, 1.0)


def _primary_genre(c: ScoredCandidate) -> Optional[int]:
    return c.item.genres[0] if c.item.genres else None


def balance_genres(
    items: Sequence[ScoredCandidate], max_consecutive: int = 3, penalty: float = 0.7
) -> List[ScoredCandidate]:
    """
    Push back items that extend a run of more than `max_consecutive`
    items sharing a primary genre. Penalized items keep their score;
    only the ordering key is scaled.
    """
    keyed = []
    run_genre: Optional[int] = None
    run = 0
    for c in items:
        genre = _primary_genre(c)
        if genre is not None and genre == run_genre:
            run += 1
        else:
            run_genre, run = genre, 1
        key = c.score * penalty if genre is not None and run > max_consecutive else c.score
        keyed.append((key, c))
    # stable, so equal keys keep their incoming order
    keyed.sort(key=lambda kc: -kc[0])
    return [c for _, c in keyed]


def inject_serendipity(
    selected: Sequence[ScoredCandidate],
    pool: Sequence[ScoredCandidate],
    preferred: Set[int],
    rate: float,
    max_overlap: int = 1,
) -> List[ScoredCandidate]:
    """
    Swap the tail of `selected` for the best-scoring pool items that share at
    most `max_overlap` genres with the user's preferred set, spread evenly
    through the list. Length is preserved.
    """
    count = int(len(selected) * rate)
    if count <= 0 or not preferred:
        return list(selected)

    taken = {(c.item.item_id, c.item.media_type) for c in selected}
    surprising = [
        c
        for c in pool
        if (c.item.item_id, c.item.media_type) not in taken and len(set(c.item.genres) & preferred) <= max_overlap
    ]
    picks = sorted(surprising, key=lambda c: -c.score)[:count]
    if not picks:
        return list(selected)

    main = list(selected[: len(selected) - len(picks)])
    interval = max(1, len(main) // len(picks))
    out: List[ScoredCandidate] = []
    pending = list(picks)
    for i, c in enumerate(main):
        out.append(c)
        if pending and (i + 1) % interval == 0:
            out.append(pending.pop(0))
    out.extend(pending)
    return out


class DiversityReranker:
    """
    Marginal-relevance reranking: at each step pick the candidate maximizing
      lambda * relevance + (1 - lambda) * min dissimilarity to the picks so far
    with lambda = 1 - diversity_level.
    """

    def __init__(
        self,
        threshold: float = 0.2,
        vocabulary_size: int = len(GENRE_IDS),
        max_consecutive_same_genre: int = 3,
        serendipity_rate: float = 0.15,
    ):
        self.threshold = threshold
        self.vocabulary_size = vocabulary_size
        # 0 turns the step off
        self.max_consecutive_same_genre = max_consecutive_same_genre
        self.serendipity_rate = serendipity_rate

    def rerank(
        self,
        candidates: Sequence[ScoredCandidate],
        limit: int,
        diversity_level: float,
        preferred: Optional[Set[int]] = None,
    ) -> List[ScoredCandidate]:
        if limit <= 0 or not candidates:
            return []

        diversity_level = max(0.0, min(float(diversity_level), 1.0))
        # relevance order, stable for equal scores
        ordered = sorted(candidates, key=lambda c: -c.score)

        if diversity_level < self.threshold:
            selected = ordered[:limit]
        else:
            selected = self._mmr(ordered, limit, lam=1.0 - diversity_level)
            if self.max_consecutive_same_genre > 0:
                selected = balance_genres(selected, self.max_consecutive_same_genre)
            if self.serendipity_rate > 0 and preferred:
                selected = inject_serendipity(selected, ordered, preferred, self.serendipity_rate)

        for c in selected:
            others = [dissimilarity(c, o) for o in selected if o is not c]
            c.diversity_score = sum(others) / len(others) if others else 0.0
        return selected

    def _mmr(self, ordered: List[ScoredCandidate], limit: int, lam: float) -> List[ScoredCandidate]:
        selected: List[ScoredCandidate] = []
        remaining = list(ordered)

        while remaining and len(selected) < limit:
            best_idx = 0
            best_value = -math.inf
            for idx, c in enumerate(remaining):
                if selected:
                    novelty = min(dissimilarity(c, s) for s in selected)
                else:
                    novelty = 1.0
                value = lam * c.score + (1.0 - lam) * novelty
                # strict ">" keeps the earlier (more relevant) candidate on ties
                if value > best_value:
                    best_value = value
                    best_idx = idx
            selected.append(remaining.pop(best_idx))

        return selected

    def metrics(
        self,
        items: Sequence[ScoredCandidate],
        user_id: str,
        recommendation_type: str,
        preferred: Optional[Set[int]] = None,
        exploration_rate: float = 0.0,
        session_id: Optional[str] = None,
    ) -> DiversityMetricsSnapshot:
        preferred = preferred or set()
        distinct = {g for it in items for g in it.item.genres}

        surprising = sum(1 for it in items if not (set(it.item.genres) & preferred))
        serendipity = surprising / len(items) if items else 0.0
        coverage = len(distinct) / self.vocabulary_size if self.vocabulary_size else 0.0

        return DiversityMetricsSnapshot(
            user_id=user_id,
            session_id=session_id,
            recommendation_type=recommendation_type,
            intra_diversity=intra_diversity(items),
            genre_balance=genre_balance(items, self.vocabulary_size),
            serendipity_score=serendipity,
            exploration_rate=exploration_rate,
            coverage_score=min(coverage, 1.0),
            recommendation_count=len(items),
        )
