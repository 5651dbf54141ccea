from __future__ import annotations

from typing import List, Optional, Sequence
import json
import logging
import sqlite3

from cinegraph.recommender.numeric import cosine_similarity
from cinegraph.recommender.records import Embedding

logger = logging.getLogger(__name__)

SUBJECT_KINDS = ("user", "item")


def item_key(item_id: int, media_type: str = "movie") -> str:
    return f"{item_id}:{media_type}"


class EmbeddingStore:
    """
    Two-tower vectors produced offline. Read-only on the serving path;
    `put` is only used by the export job.
    """

    def __init__(self, conn: sqlite3.Connection, dim: int = 32):
        self.conn = conn
        self.dim = dim

    def get_record(self, subject_id: str, subject_kind: str) -> Optional[Embedding]:
        """Vector plus its version; None when missing or unreadable."""
        if subject_kind not in SUBJECT_KINDS:
            raise ValueError(f"subject_kind must be one of {SUBJECT_KINDS}")
        r = self.conn.execute(
            "SELECT vector_json, version FROM embeddings WHERE subject_id = ? AND subject_kind = ?",
            (str(subject_id), subject_kind),
        ).fetchone()
        if not r:
            return None
        try:
            vector = [float(x) for x in json.loads(r["vector_json"])]
        except (ValueError, TypeError):
            logger.warning("corrupt embedding for %s %s", subject_kind, subject_id)
            return None
        return Embedding(
            subject_id=str(subject_id),
            subject_kind=subject_kind,
            vector=vector,
            version=str(r["version"]),
        )

    def get(self, subject_id: str, subject_kind: str) -> Optional[List[float]]:
        record = self.get_record(subject_id, subject_kind)
        return record.vector if record is not None else None

    def get_or_zero(self, subject_id: str, subject_kind: str) -> List[float]:
        vec = self.get(subject_id, subject_kind)
        return vec if vec is not None else [0.0] * self.dim

    def put(self, subject_id: str, subject_kind: str, vector: Sequence[float], version: str = "v1") -> None:
        if subject_kind not in SUBJECT_KINDS:
            raise ValueError(f"subject_kind must be one of {SUBJECT_KINDS}")
        self.conn.execute(
            """
            INSERT OR REPLACE INTO embeddings(subject_id, subject_kind, vector_json, version, updated_at)
            VALUES(?,?,?,?,datetime('now'))
            """,
            (str(subject_id), subject_kind, json.dumps([float(x) for x in vector]), version),
        )

    def similarity(self, user_id: str, item_id: int, media_type: str = "movie") -> float:
        u = self.get_or_zero(user_id, "user")
        i = self.get_or_zero(item_key(item_id, media_type), "item")
        return cosine_similarity(u, i)
