"""
One recommendation request, start to end:
  select arm -> rank candidates -> diversify top-N -> explain -> log
and the feedback path that rewards the arm and re-weights its features.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Set, Tuple
import logging
import random
import sqlite3
import uuid

from cinegraph.app.db import best_effort_write
from cinegraph.recommender.bandit import (
    ARMS,
    SUCCESS_THRESHOLD,
    BanditArmSelector,
    BanditSelection,
    context_bucket,
    extract_context,
)
from cinegraph.recommender.diversity import DiversityReranker
from cinegraph.recommender.embedding_store import EmbeddingStore
from cinegraph.recommender.explain import Explanation, ExplanationGenerator
from cinegraph.recommender.feature_store import FeatureStore
from cinegraph.recommender.ranker import (
    POPULARITY,
    STRATEGY_FEATURES,
    CandidateRanker,
    popularity_scores,
    preferred_genres,
)
from cinegraph.recommender.records import (
    DiversityMetricsSnapshot,
    FeatureContribution,
    ItemMetadata,
    ScoredCandidate,
)
from cinegraph.recommender.repositories import ItemCatalog, RatingHistory

logger = logging.getLogger(__name__)


@dataclass
class RecommendationOptions:
    limit: int = 10
    diversity_level: float = 0.3
    explainability: bool = True
    strategy: Optional[str] = None  # pin an arm instead of asking the bandit
    media_type: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class RecommendationBatch:
    user_id: str
    strategy: str
    experiment_id: Optional[str]
    items: List[Dict[str, Any]]
    metrics: DiversityMetricsSnapshot
    degraded: bool = False


@dataclass
class WeightUpdate:
    user_id: str
    feature_name: str
    success: bool


@dataclass
class FeedbackAck:
    status: str
    correlation_id: str
    outcome_type: str
    reward: float
    experiment_id: Optional[str] = None
    recommendation_id: Optional[str] = None
    weight_updates: List[WeightUpdate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "correlation_id": self.correlation_id,
            "outcome_type": self.outcome_type,
            "reward": self.reward,
            "experiment_id": self.experiment_id,
            "recommendation_id": self.recommendation_id,
        }


class RecommendationService:
    def __init__(
        self,
        conn: sqlite3.Connection,
        history: RatingHistory,
        catalog: ItemCatalog,
        feature_store: FeatureStore,
        embedding_store: EmbeddingStore,
        bandit: BanditArmSelector,
        ranker: CandidateRanker,
        reranker: DiversityReranker,
        explainer: ExplanationGenerator,
        candidates_limit: int = 500,
        write_retries: Optional[int] = None,
    ):
        self.conn = conn
        self.history = history
        self.catalog = catalog
        self.feature_store = feature_store
        self.embedding_store = embedding_store
        self.bandit = bandit
        self.ranker = ranker
        self.reranker = reranker
        self.explainer = explainer
        self.candidates_limit = candidates_limit
        self.write_retries = write_retries

    @classmethod
    def create(
        cls,
        conn: sqlite3.Connection,
        learning_rate: float = 0.1,
        exploration_rate: float = 0.1,
        policy: str = "epsilon_greedy",
        diversity_threshold: float = 0.2,
        max_consecutive_same_genre: int = 3,
        serendipity_rate: float = 0.15,
        candidates_limit: int = 500,
        recency_half_life_years: float = 5.0,
        embedding_dim: int = 32,
        rng: Optional[random.Random] = None,
        today: Optional[date] = None,
        write_retries: Optional[int] = None,
    ) -> "RecommendationService":
        feature_store = FeatureStore(conn, learning_rate=learning_rate, write_retries=write_retries)
        embedding_store = EmbeddingStore(conn, dim=embedding_dim)
        return cls(
            conn=conn,
            history=RatingHistory(conn),
            catalog=ItemCatalog(conn),
            feature_store=feature_store,
            embedding_store=embedding_store,
            bandit=BanditArmSelector(
                conn, exploration_rate=exploration_rate, policy=policy, rng=rng, write_retries=write_retries
            ),
            ranker=CandidateRanker(
                feature_store, embedding_store, recency_half_life_years=recency_half_life_years, today=today
            ),
            reranker=DiversityReranker(
                threshold=diversity_threshold,
                max_consecutive_same_genre=max_consecutive_same_genre,
                serendipity_rate=serendipity_rate,
            ),
            explainer=ExplanationGenerator(),
            candidates_limit=candidates_limit,
            write_retries=write_retries,
        )

    # profile

    def _profile(self, user_id: str) -> Tuple[int, Set[int], Set[Tuple[int, str]]]:
        ratings = self.history.get_ratings(user_id)
        items = self.catalog.get_many((r.item_id, r.media_type) for r in ratings)
        genres = {k: v.genres for k, v in items.items()}
        seen = {(r.item_id, r.media_type) for r in ratings}
        return len(ratings), preferred_genres(ratings, genres), seen

    # generation

    def _select(self, user_id: str, context: Dict[str, Any], strategy: Optional[str]) -> BanditSelection:
        if strategy is None:
            return self.bandit.select_arm(user_id, context)

        if strategy not in ARMS:
            raise ValueError(f"strategy must be one of {ARMS}")
        states = {s.name: s for s in self.bandit.arm_states(user_id, context_bucket(context))}
        selection = BanditSelection(
            arm=strategy,
            estimated_reward=states[strategy].estimated_reward,
            exploration_rate=0.0,
            explored=False,
            context=context,
        )
        selection.experiment_id = self.bandit.log_experiment(user_id, selection)
        return selection

    def _popularity_fallback(self, candidates: List[ItemMetadata], strategy: str) -> List[ScoredCandidate]:
        pop = popularity_scores(candidates)
        scored = [
            ScoredCandidate(
                item=it,
                score=pop.get((it.item_id, it.media_type), 0.0),
                strategy=strategy,
                feature_values={POPULARITY: pop.get((it.item_id, it.media_type), 0.0)},
                contributions={POPULARITY: 1.0},
            )
            for it in candidates
        ]
        scored.sort(key=lambda c: (-c.score, c.item.item_id, c.item.media_type))
        return scored

    def generate_recommendations(
        self,
        user_id: str,
        context: Optional[Dict[str, Any]] = None,
        options: Optional[RecommendationOptions] = None,
    ) -> RecommendationBatch:
        options = options or RecommendationOptions()
        limit = max(1, min(int(options.limit), 100))

        n_ratings, preferred, seen = self._profile(user_id)
        ctx = extract_context(user_id, context, recent_interaction_count=n_ratings)
        selection = self._select(user_id, ctx, options.strategy)

        candidates = [
            it for it in self.catalog.list_candidates(self.candidates_limit, media_type=options.media_type)
            if (it.item_id, it.media_type) not in seen
        ]

        degraded = False
        try:
            scored = self.ranker.rank(user_id, candidates, selection.arm, preferred)
        except sqlite3.Error as e:
            logger.warning("ranking failed for user %s (%s), falling back to popularity", user_id, e)
            scored = self._popularity_fallback(candidates, selection.arm)
            degraded = True

        final = self.reranker.rerank(scored, limit, options.diversity_level, preferred=preferred)
        metrics = self.reranker.metrics(
            final,
            user_id=user_id,
            recommendation_type=selection.arm,
            preferred=preferred,
            exploration_rate=selection.exploration_rate,
            session_id=options.session_id,
        )

        rec_ids = self._log_batch(user_id, final, selection)
        self._log_metrics(metrics)

        items: List[Dict[str, Any]] = []
        for rec_id, c in zip(rec_ids, final):
            reasons: List[str] = []
            if options.explainability:
                explanation = self.explainer.generate(
                    user_id,
                    c.item.item_id,
                    c.item.media_type,
                    self._contributions(rec_id, user_id, c),
                    item=c.item,
                    preferred=preferred,
                    arm_estimated_reward=selection.estimated_reward,
                    strategy=selection.arm,
                )
                reasons = [f.human_readable for f in explanation.contributing_factors[:3]]

            items.append(
                {
                    "recommendation_id": rec_id,
                    "item_id": c.item.item_id,
                    "media_type": c.item.media_type,
                    "title": c.item.title,
                    "genres": c.item.genres,
                    "score": c.score,
                    "diversity_score": c.diversity_score,
                    "strategy": selection.arm,
                    "reasons": reasons,
                    "experiment_id": selection.experiment_id,
                }
            )

        logger.info(
            "served %d items to user %s via %s (diversity=%.2f, intra=%.3f)",
            len(items), user_id, selection.arm, options.diversity_level, metrics.intra_diversity,
        )
        return RecommendationBatch(
            user_id=user_id,
            strategy=selection.arm,
            experiment_id=selection.experiment_id,
            items=items,
            metrics=metrics,
            degraded=degraded,
        )

    @staticmethod
    def _contributions(rec_id: str, user_id: str, c: ScoredCandidate) -> List[FeatureContribution]:
        return [
            FeatureContribution(
                recommendation_id=rec_id,
                user_id=user_id,
                feature_name=name,
                contribution_score=share,
                feature_value=c.feature_values.get(name, 0.0),
            )
            for name, share in c.contributions.items()
        ]

    def _log_batch(self, user_id: str, final: List[ScoredCandidate], selection: BanditSelection) -> List[str]:
        rec_ids = [str(uuid.uuid4()) for _ in final]

        def _write() -> None:
            with self.conn:
                for rank, (rec_id, c) in enumerate(zip(rec_ids, final), start=1):
                    self.conn.execute(
                        """
                        INSERT INTO recommendations(id, user_id, item_id, media_type, score, strategy, experiment_id, rank)
                        VALUES(?,?,?,?,?,?,?,?)
                        """,
                        (rec_id, user_id, c.item.item_id, c.item.media_type, c.score,
                         selection.arm, selection.experiment_id, rank),
                    )
                    self.conn.executemany(
                        """
                        INSERT INTO feature_contributions(recommendation_id, user_id, feature_name,
                                                          contribution_score, feature_value)
                        VALUES(?,?,?,?,?)
                        """,
                        [
                            (fc.recommendation_id, fc.user_id, fc.feature_name, fc.contribution_score, fc.feature_value)
                            for fc in self._contributions(rec_id, user_id, c)
                        ],
                    )

        best_effort_write(_write, what=f"recommendation batch for {user_id}", retries=self.write_retries)
        return rec_ids

    def _log_metrics(self, m: DiversityMetricsSnapshot) -> None:
        def _write() -> None:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO diversity_metrics(user_id, session_id, recommendation_type, intra_diversity,
                                                  genre_balance, serendipity_score, exploration_rate,
                                                  coverage_score, recommendation_count)
                    VALUES(?,?,?,?,?,?,?,?,?)
                    """,
                    (m.user_id, m.session_id, m.recommendation_type, m.intra_diversity, m.genre_balance,
                     m.serendipity_score, m.exploration_rate, m.coverage_score, m.recommendation_count),
                )

        best_effort_write(_write, what=f"diversity metrics for {m.user_id}", retries=self.write_retries)

    # feedback

    def record_interaction_feedback(
        self,
        correlation_id: str,
        outcome_type: str,
        reward: Optional[float] = None,
        apply_weights: bool = True,
    ) -> FeedbackAck:
        """
        correlation_id is either a recommendation id or an experiment id.
        Feedback is always acknowledged; unknown ids end up in the interaction log.
        """
        rec = self.conn.execute(
            "SELECT id, user_id, experiment_id FROM recommendations WHERE id = ?",
            (correlation_id,),
        ).fetchone()

        recommendation_id = None
        experiment_id: Optional[str] = correlation_id
        if rec:
            recommendation_id = str(rec["id"])
            experiment_id = rec["experiment_id"]
            self._mark_outcome(recommendation_id, outcome_type)

        if experiment_id is None:
            self.bandit.log_interaction(correlation_id, outcome_type, reward)
            return FeedbackAck(
                status="uncorrelated",
                correlation_id=correlation_id,
                outcome_type=outcome_type,
                reward=0.0 if reward is None else reward,
                recommendation_id=recommendation_id,
            )

        update = self.bandit.update_reward(experiment_id, outcome_type, reward)
        ack = FeedbackAck(
            status=update.status,
            correlation_id=correlation_id,
            outcome_type=outcome_type,
            reward=update.reward,
            experiment_id=experiment_id if update.experiment else None,
            recommendation_id=recommendation_id,
        )

        if update.status == "rewarded" and update.experiment is not None:
            success = update.reward >= SUCCESS_THRESHOLD
            ack.weight_updates = [
                WeightUpdate(user_id=update.experiment.user_id, feature_name=f, success=success)
                for f in STRATEGY_FEATURES.get(update.experiment.arm_chosen, ())
            ]
            if apply_weights:
                self.apply_weight_updates(ack.weight_updates)

        return ack

    def _mark_outcome(self, recommendation_id: str, outcome_type: str) -> None:
        def _write() -> None:
            with self.conn:
                self.conn.execute(
                    """
                    UPDATE feature_contributions SET outcome_type = ?
                    WHERE recommendation_id = ? AND outcome_type IS NULL
                    """,
                    (outcome_type, recommendation_id),
                )

        best_effort_write(_write, what=f"outcome for {recommendation_id}", retries=self.write_retries)

    def apply_weight_updates(self, updates: List[WeightUpdate]) -> int:
        """Per-user and global weight steps; returns how many writes went through."""
        applied = 0
        for u in updates:
            for scope in (u.user_id, None):
                if self.feature_store.update(scope, u.feature_name, u.success) is not None:
                    applied += 1
        return applied

    # explanation

    def explain(
        self,
        user_id: str,
        item_id: int,
        media_type: str = "movie",
        recommendation_id: Optional[str] = None,
    ) -> Explanation:
        if recommendation_id is not None:
            rec = self.conn.execute(
                "SELECT id, strategy, experiment_id FROM recommendations WHERE id = ? AND user_id = ?",
                (recommendation_id, user_id),
            ).fetchone()
        else:
            rec = self.conn.execute(
                """
                SELECT id, strategy, experiment_id FROM recommendations
                WHERE user_id = ? AND item_id = ? AND media_type = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (user_id, item_id, media_type),
            ).fetchone()

        item = self.catalog.get_item_metadata(item_id, media_type)
        _, preferred, _ = self._profile(user_id)

        if rec:
            strategy = str(rec["strategy"])
            rows = self.conn.execute(
                """
                SELECT recommendation_id, user_id, feature_name, contribution_score, feature_value, outcome_type
                FROM feature_contributions WHERE recommendation_id = ?
                ORDER BY feature_name ASC
                """,
                (rec["id"],),
            ).fetchall()
            contributions = [
                FeatureContribution(
                    recommendation_id=str(r["recommendation_id"]),
                    user_id=str(r["user_id"]),
                    feature_name=str(r["feature_name"]),
                    contribution_score=float(r["contribution_score"]),
                    feature_value=float(r["feature_value"] or 0.0),
                    outcome_type=r["outcome_type"],
                )
                for r in rows
            ]
        else:
            # never served: attribute with the full feature set on the fly
            strategy = "hybrid"
            contributions = []
            if item is not None:
                scored = self.ranker.rank(user_id, [item], strategy, preferred)
                if scored:
                    contributions = self._contributions("", user_id, scored[0])

        states = {s.name: s for s in self.bandit.arm_states(user_id)}
        arm_reward = states[strategy].estimated_reward if strategy in states else None

        explanation = self.explainer.generate(
            user_id,
            item_id,
            media_type,
            contributions,
            item=item,
            preferred=preferred,
            arm_estimated_reward=arm_reward,
            strategy=strategy,
        )
        if rec:
            explanation.recommendation_id = str(rec["id"])
        else:
            explanation.recommendation_id = None
        return explanation
