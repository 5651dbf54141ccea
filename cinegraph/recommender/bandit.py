"""
Strategy selection with a per-(user, context bucket) multi-armed bandit.

Every selection is logged as a bandit experiment with reward NULL; feedback
later sets the reward exactly once. Arm estimates are rebuilt from the
rewarded experiments, so the log is the only state. Under Thompson
sampling each draw is scaled up by the arm's context boost.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import json
import logging
import math
import random
import sqlite3
import time
import uuid

from cinegraph.app.db import best_effort_write
from cinegraph.recommender.ranker import STRATEGY_FEATURES
from cinegraph.recommender.records import BanditExperiment

logger = logging.getLogger(__name__)

ARMS = tuple(STRATEGY_FEATURES)

POLICIES = ("epsilon_greedy", "thompson_sampling")

# user action -> reward, negatives are clamped to 0 before storing
REWARD_MAP: Dict[str, float] = {
    "clicked": 0.3,
    "watchlisted": 0.6,
    "rated_high": 1.0,
    "rated_medium": 0.4,
    "rated_low": 0.1,
    "ignored": 0.0,
    "dismissed": -0.2,
    "preference_positive": 0.8,
    "preference_negative": -0.1,
    "liked": 1.0,
    "disliked": 0.0,
}

SUCCESS_THRESHOLD = 0.5


def calculate_reward(outcome_type: str) -> float:
    return max(0.0, min(REWARD_MAP.get(outcome_type, 0.0), 1.0))


def time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "night"


def extract_context(
    user_id: str,
    overrides: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    recent_interaction_count: int = 0,
) -> Dict[str, Any]:
    now = now or datetime.now()
    overrides = overrides or {}
    context: Dict[str, Any] = {
        "user_id": user_id,
        "time_of_day": time_of_day(now.hour),
        "day_type": "weekend" if now.weekday() >= 5 else "weekday",
        "session_duration": 0,
        "recent_interaction_count": recent_interaction_count,
        "device_type": None,
    }
    for key, value in overrides.items():
        if key in context and value is not None:
            context[key] = value
    return context


def context_bucket(context: Dict[str, Any]) -> str:
    return f"{context.get('time_of_day', 'any')}:{context.get('day_type', 'any')}"


# arm -> (context key, condition, boost); boosts add up per arm
CONTEXT_BOOSTS: Dict[str, List[Tuple[str, Callable[[Any], bool], float]]] = {
    "two_tower": [("recent_interaction_count", lambda v: v > 10, 0.3)],
    "content_based": [("recent_interaction_count", lambda v: v < 5, 0.4)],
    "trending": [("time_of_day", lambda v: v == "evening", 0.25)],
    "hybrid": [
        ("day_type", lambda v: v == "weekend", 0.2),
        ("session_duration", lambda v: v > 15, 0.25),
    ],
}
MAX_CONTEXT_BOOST = 1.0
# a full boost lifts a Thompson sample by 20%
CONTEXT_BOOST_WEIGHT = 0.2


def context_boost(arm: str, context: Dict[str, Any]) -> float:
    """Summed boost in [0, MAX_CONTEXT_BOOST]; missing context fields never match."""
    total = 0.0
    for key, condition, boost in CONTEXT_BOOSTS.get(arm, ()):
        value = context.get(key)
        if value is not None and condition(value):
            total += boost
    return min(total, MAX_CONTEXT_BOOST)


@dataclass
class ArmState:
    name: str
    pulls: int = 0
    successes: int = 0
    total_reward: float = 0.0
    last_rewarded_at: Optional[str] = None

    @property
    def estimated_reward(self) -> float:
        # mean reward with one pseudo-success and one pseudo-failure, 0.5 for untried arms
        return (self.total_reward + 1.0) / (self.pulls + 2.0)

    @property
    def success_rate(self) -> float:
        return self.successes / self.pulls if self.pulls else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "arm": self.name,
            "pulls": self.pulls,
            "successes": self.successes,
            "success_rate": self.success_rate,
            "estimated_reward": self.estimated_reward,
        }


@dataclass
class BanditSelection:
    arm: str
    estimated_reward: float
    exploration_rate: float
    explored: bool
    context: Dict[str, Any]
    arm_scores: Dict[str, float] = field(default_factory=dict)
    experiment_id: Optional[str] = None


@dataclass
class RewardUpdate:
    status: str  # "rewarded" | "already_rewarded" | "uncorrelated" | "dropped"
    reward: float
    experiment: Optional[BanditExperiment] = None


class BanditArmSelector:
    def __init__(
        self,
        conn: sqlite3.Connection,
        exploration_rate: float = 0.1,
        policy: str = "epsilon_greedy",
        rng: Optional[random.Random] = None,
        arms: Sequence[str] = ARMS,
        write_retries: Optional[int] = None,
    ):
        if policy not in POLICIES:
            raise ValueError(f"policy must be one of {POLICIES}")
        self.conn = conn
        self.exploration_rate = max(0.0, min(float(exploration_rate), 1.0))
        self.policy = policy
        self.rng = rng or random.Random()
        self.arms = tuple(arms)
        self.write_retries = write_retries

    def arm_states(self, user_id: str, bucket: Optional[str] = None) -> List[ArmState]:
        sql = """
            SELECT arm_chosen, reward, rewarded_at
            FROM bandit_experiments
            WHERE user_id = ? AND reward IS NOT NULL
        """
        params: list[object] = [user_id]
        if bucket is not None:
            sql += " AND context_bucket = ?"
            params.append(bucket)

        states = {arm: ArmState(name=arm) for arm in self.arms}
        for r in self.conn.execute(sql, tuple(params)).fetchall():
            state = states.get(str(r["arm_chosen"]))
            if state is None:
                continue
            reward = float(r["reward"])
            state.pulls += 1
            state.total_reward += reward
            if reward >= SUCCESS_THRESHOLD:
                state.successes += 1
            if r["rewarded_at"] and (state.last_rewarded_at is None or r["rewarded_at"] > state.last_rewarded_at):
                state.last_rewarded_at = r["rewarded_at"]

        return [states[arm] for arm in self.arms]

    def _exploit(self, states: List[ArmState]) -> ArmState:
        best = max(s.estimated_reward for s in states)
        tied = [s for s in states if math.isclose(s.estimated_reward, best, abs_tol=1e-12)]
        # under ties: fewest observed outcomes, then the one rewarded longest ago
        return min(
            tied,
            key=lambda s: (s.pulls, s.last_rewarded_at or "", self.arms.index(s.name)),
        )

    def select(self, user_id: str, context: Dict[str, Any]) -> BanditSelection:
        states = self.arm_states(user_id, context_bucket(context))

        if self.policy == "thompson_sampling":
            samples = {
                s.name: self.rng.betavariate(s.successes + 1, (s.pulls - s.successes) + 1)
                * (1.0 + CONTEXT_BOOST_WEIGHT * context_boost(s.name, context))
                for s in states
            }
            chosen_name = max(self.arms, key=lambda a: samples[a])
            chosen = next(s for s in states if s.name == chosen_name)
            return BanditSelection(
                arm=chosen.name,
                estimated_reward=chosen.estimated_reward,
                exploration_rate=1.0 / (1 + chosen.pulls),
                explored=False,
                context=context,
                arm_scores=samples,
            )

        scores = {s.name: s.estimated_reward for s in states}
        if self.exploration_rate > 0 and self.rng.random() < self.exploration_rate:
            chosen = self.rng.choice(states)
            explored = True
        else:
            chosen = self._exploit(states)
            explored = False

        return BanditSelection(
            arm=chosen.name,
            estimated_reward=chosen.estimated_reward,
            exploration_rate=self.exploration_rate,
            explored=explored,
            context=context,
            arm_scores=scores,
        )

    def log_experiment(self, user_id: str, selection: BanditSelection) -> Optional[str]:
        experiment_id = str(uuid.uuid4())

        def _write() -> str:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO bandit_experiments(id, user_id, experiment_type, arm_chosen, reward,
                                                   context_bucket, context_json, exploration_rate)
                    VALUES(?,?,?,?,NULL,?,?,?)
                    """,
                    (
                        experiment_id,
                        user_id,
                        self.policy,
                        selection.arm,
                        context_bucket(selection.context),
                        json.dumps(selection.context, default=str),
                        selection.exploration_rate,
                    ),
                )
            return experiment_id

        return best_effort_write(_write, what=f"bandit experiment for {user_id}", retries=self.write_retries)

    def select_arm(self, user_id: str, context: Dict[str, Any]) -> BanditSelection:
        selection = self.select(user_id, context)
        selection.experiment_id = self.log_experiment(user_id, selection)
        logger.info(
            "user %s bucket %s -> arm %s (explored=%s, est=%.3f)",
            user_id, context_bucket(context), selection.arm, selection.explored, selection.estimated_reward,
        )
        return selection

    def get_experiment(self, experiment_id: str) -> Optional[BanditExperiment]:
        r = self.conn.execute(
            """
            SELECT id, user_id, experiment_type, arm_chosen, reward, context_json, exploration_rate, created_at
            FROM bandit_experiments WHERE id = ?
            """,
            (experiment_id,),
        ).fetchone()
        if not r:
            return None
        try:
            context = json.loads(r["context_json"]) if r["context_json"] else {}
        except ValueError:
            context = {}
        return BanditExperiment(
            id=str(r["id"]),
            user_id=str(r["user_id"]),
            experiment_type=str(r["experiment_type"]),
            arm_chosen=str(r["arm_chosen"]),
            reward=None if r["reward"] is None else float(r["reward"]),
            context=context,
            exploration_rate=float(r["exploration_rate"] or 0.0),
            created_at=r["created_at"],
        )

    def log_interaction(self, correlation_id: str, outcome_type: str, reward: Optional[float]) -> None:
        def _write() -> None:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO interaction_logs(correlation_id, outcome_type, reward, ts) VALUES(?,?,?,?)",
                    (correlation_id, outcome_type, reward, int(time.time())),
                )

        best_effort_write(_write, what=f"interaction log {correlation_id}", retries=self.write_retries)

    def update_reward(self, experiment_id: str, outcome_type: str, reward: Optional[float] = None) -> RewardUpdate:
        """
        Set the reward of an experiment once. Unknown ids fall back to the
        generic interaction log so the feedback is kept anyway.
        """
        value = calculate_reward(outcome_type) if reward is None else max(0.0, min(float(reward), 1.0))

        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            logger.warning("feedback for unknown experiment %s (%s), logging as interaction", experiment_id, outcome_type)
            self.log_interaction(experiment_id, outcome_type, value)
            return RewardUpdate(status="uncorrelated", reward=value)

        if experiment.reward is not None:
            logger.info("experiment %s already rewarded, ignoring %s", experiment_id, outcome_type)
            return RewardUpdate(status="already_rewarded", reward=experiment.reward, experiment=experiment)

        context = dict(experiment.context)
        context["outcome_type"] = outcome_type

        def _write() -> int:
            with self.conn:
                cur = self.conn.execute(
                    """
                    UPDATE bandit_experiments
                    SET reward = ?, context_json = ?, rewarded_at = datetime('now')
                    WHERE id = ? AND reward IS NULL
                    """,
                    (value, json.dumps(context, default=str), experiment_id),
                )
            return cur.rowcount

        updated = best_effort_write(_write, what=f"reward for {experiment_id}", retries=self.write_retries)
        if updated is None:
            return RewardUpdate(status="dropped", reward=value, experiment=experiment)
        if updated == 0:
            # another update got there first
            return RewardUpdate(status="already_rewarded", reward=value, experiment=experiment)

        experiment.reward = value
        experiment.context = context
        return RewardUpdate(status="rewarded", reward=value, experiment=experiment)

    def statistics(self, user_id: str) -> Dict[str, Any]:
        states = self.arm_states(user_id)
        total = sum(s.pulls for s in states)
        total_reward = sum(s.total_reward for s in states)
        best = max(states, key=lambda s: (s.success_rate, -self.arms.index(s.name)))
        return {
            "arm_performance": [s.to_dict() for s in states],
            "total_experiments": total,
            "average_reward": total_reward / total if total else 0.0,
            "best_arm": best.name,
            "exploration_rate": 1.0 / math.sqrt(total) if total else 1.0,
        }
