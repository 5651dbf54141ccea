import pytest

from cinegraph.app.db import connect, init_db


class Seeder:
    """Writes the catalog and rating rows the recommender reads."""

    def __init__(self, conn):
        self.conn = conn

    def item(
        self,
        item_id,
        genres,
        vote_count=100,
        vote_average=7.0,
        release_date="2020-01-01",
        media_type="movie",
        title=None,
    ):
        self.conn.execute(
            """
            INSERT INTO items(id, media_type, title, genres, vote_average, vote_count, release_date)
            VALUES(?,?,?,?,?,?,?)
            """,
            (
                item_id,
                media_type,
                title or f"Item {item_id}",
                ",".join(str(g) for g in genres),
                vote_average,
                vote_count,
                release_date,
            ),
        )
        self.conn.commit()

    def rating(self, user_id, item_id, rating, ts, media_type="movie"):
        self.conn.execute(
            "INSERT INTO ratings(user_id, item_id, media_type, rating, ts) VALUES(?,?,?,?,?)",
            (user_id, item_id, media_type, rating, ts),
        )
        self.conn.commit()


@pytest.fixture
def conn(tmp_path):
    c = connect(str(tmp_path / "test.db"))
    init_db(c)
    yield c
    c.close()


@pytest.fixture
def seed(conn):
    return Seeder(conn)
