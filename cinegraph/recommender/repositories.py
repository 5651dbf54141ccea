from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set, Tuple
import sqlite3

from cinegraph.recommender.records import ItemMetadata, RatingEvent


def parse_genres(genres_csv: str | None) -> List[int]:
    if not genres_csv:
        return []
    out = []
    for part in genres_csv.split(","):
        part = part.strip()
        if part.isdigit():
            out.append(int(part))
    return out


def _row_to_item(r: sqlite3.Row) -> ItemMetadata:
    return ItemMetadata(
        item_id=int(r["id"]),
        media_type=str(r["media_type"]),
        title=str(r["title"]),
        genres=parse_genres(r["genres"]),
        vote_average=float(r["vote_average"] or 0.0),
        vote_count=int(r["vote_count"] or 0),
        release_date=r["release_date"],
    )


class RatingHistory:
    """Rating history reader over the application's ratings table."""

    def __init__(self, conn: sqlite3.Connection, max_rows: int = 1000):
        self.conn = conn
        self.max_rows = max_rows

    def get_ratings(self, user_id: str) -> List[RatingEvent]:
        # newest max_rows, returned oldest first
        rows = self.conn.execute(
            """
            SELECT item_id, rating, media_type, ts
            FROM (
              SELECT id, item_id, rating, media_type, ts
              FROM ratings
              WHERE user_id = ?
              ORDER BY ts DESC, id DESC
              LIMIT ?
            )
            ORDER BY ts ASC, id ASC
            """,
            (user_id, self.max_rows),
        ).fetchall()
        return [
            RatingEvent(
                item_id=int(r["item_id"]),
                rating=float(r["rating"]),
                media_type=str(r["media_type"]),
                ts=int(r["ts"]),
            )
            for r in rows
        ]

    def get_seen(self, user_id: str) -> Set[Tuple[int, str]]:
        rows = self.conn.execute(
            "SELECT DISTINCT item_id, media_type FROM ratings WHERE user_id = ?",
            (user_id,),
        ).fetchall()
        return {(int(r["item_id"]), str(r["media_type"])) for r in rows}


class ItemCatalog:
    """Item metadata reader."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_item_metadata(self, item_id: int, media_type: str = "movie") -> Optional[ItemMetadata]:
        r = self.conn.execute(
            """
            SELECT id, media_type, title, genres, vote_average, vote_count, release_date
            FROM items WHERE id = ? AND media_type = ?
            """,
            (item_id, media_type),
        ).fetchone()
        return _row_to_item(r) if r else None

    def get_many(self, keys: Iterable[Tuple[int, str]]) -> Dict[Tuple[int, str], ItemMetadata]:
        out: Dict[Tuple[int, str], ItemMetadata] = {}
        for item_id, media_type in set(keys):
            item = self.get_item_metadata(item_id, media_type)
            if item is not None:
                out[(item_id, media_type)] = item
        return out

    def list_candidates(self, limit: int = 500, media_type: Optional[str] = None) -> List[ItemMetadata]:
        # popular items first (by vote count), same idea as the baseline pool
        sql = """
            SELECT id, media_type, title, genres, vote_average, vote_count, release_date
            FROM items
        """
        params: list[object] = []
        if media_type is not None:
            sql += " WHERE media_type = ?"
            params.append(media_type)
        sql += " ORDER BY vote_count DESC, id ASC LIMIT ?"
        params.append(limit)

        rows = self.conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_item(r) for r in rows]
