from __future__ import annotations

from typing import Dict, Iterable, Optional
import logging
import sqlite3

from cinegraph.app.db import best_effort_write
from cinegraph.recommender.records import FeatureWeight

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT = 0.5


def apply_update(fw: FeatureWeight, success: bool) -> FeatureWeight:
    """
    Incremental learning-rate step towards 1 (success) or 0 (failure):
      weight <- weight + lr * (target - weight), clamped to [0, 1]
    """
    target = 1.0 if success else 0.0
    weight = fw.weight + fw.learning_rate * (target - fw.weight)
    fw.weight = max(0.0, min(weight, 1.0))
    fw.total_count += 1
    if success:
        fw.success_count += 1
    return fw


class FeatureStore:
    """
    Learned scalar weights per (user | global, feature_name).

    Reads fall back user -> global -> DEFAULT_WEIGHT. Updates are best-effort:
    a storage failure is logged and swallowed, never raised to the caller.
    """

    def __init__(self, conn: sqlite3.Connection, learning_rate: float = 0.1, write_retries: Optional[int] = None):
        self.conn = conn
        self.learning_rate = learning_rate
        self.write_retries = write_retries

    def _load(self, scope: Optional[str], feature_name: str) -> Optional[FeatureWeight]:
        # "IS ?" matches NULL for the global scope
        r = self.conn.execute(
            """
            SELECT user_id, feature_name, weight, success_count, total_count, learning_rate
            FROM feature_weights
            WHERE user_id IS ? AND feature_name = ?
            ORDER BY id ASC
            LIMIT 1
            """,
            (scope, feature_name),
        ).fetchone()
        if not r:
            return None
        return FeatureWeight(
            scope=r["user_id"],
            feature_name=str(r["feature_name"]),
            weight=float(r["weight"]),
            success_count=int(r["success_count"]),
            total_count=int(r["total_count"]),
            learning_rate=float(r["learning_rate"]),
        )

    def get(self, scope: Optional[str], feature_name: str) -> FeatureWeight:
        fw = self._load(scope, feature_name) if scope is not None else None
        if fw is None:
            fw = self._load(None, feature_name)
        if fw is None:
            return FeatureWeight(scope=scope, feature_name=feature_name, learning_rate=self.learning_rate)
        return fw

    def get_weight(self, scope: Optional[str], feature_name: str) -> float:
        return self.get(scope, feature_name).weight

    def get_weights(self, scope: Optional[str], feature_names: Iterable[str]) -> Dict[str, float]:
        return {name: self.get_weight(scope, name) for name in feature_names}

    def _save(self, fw: FeatureWeight) -> None:
        with self.conn:
            cur = self.conn.execute(
                """
                UPDATE feature_weights
                SET weight = ?, success_count = ?, total_count = ?, success_rate = ?,
                    learning_rate = ?, last_updated = datetime('now')
                WHERE id = (
                  SELECT id FROM feature_weights
                  WHERE user_id IS ? AND feature_name = ?
                  ORDER BY id ASC LIMIT 1
                )
                """,
                (fw.weight, fw.success_count, fw.total_count, fw.success_rate,
                 fw.learning_rate, fw.scope, fw.feature_name),
            )
            if cur.rowcount == 0:
                self.conn.execute(
                    """
                    INSERT INTO feature_weights(user_id, feature_name, weight, success_count,
                                                total_count, success_rate, learning_rate)
                    VALUES(?,?,?,?,?,?,?)
                    """,
                    (fw.scope, fw.feature_name, fw.weight, fw.success_count,
                     fw.total_count, fw.success_rate, fw.learning_rate),
                )

    def update(self, scope: Optional[str], feature_name: str, success: bool) -> Optional[FeatureWeight]:
        """
        Apply one outcome to the (scope, feature) weight.
        A user row that does not exist yet starts from the global weight.
        Returns the new weight record, or None when the write was dropped.
        """
        def _write() -> FeatureWeight:
            current = self.get(scope, feature_name)
            # a fallback record belongs to another scope, start a fresh row for this one
            fw = FeatureWeight(
                scope=scope,
                feature_name=feature_name,
                weight=current.weight,
                success_count=current.success_count if current.scope == scope else 0,
                total_count=current.total_count if current.scope == scope else 0,
                learning_rate=current.learning_rate if current.scope == scope else self.learning_rate,
            )
            apply_update(fw, success)
            self._save(fw)
            return fw

        fw = best_effort_write(_write, what=f"feature_weight {scope}/{feature_name}", retries=self.write_retries)
        if fw is not None:
            logger.debug(
                "feature weight %s/%s -> %.4f (%d/%d)",
                scope, feature_name, fw.weight, fw.success_count, fw.total_count,
            )
        return fw
