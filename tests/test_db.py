import sqlite3

import pytest

from cinegraph.app.db import _sqlite_path_from_url, best_effort_write


def test_sqlite_url_forms():
    assert _sqlite_path_from_url("sqlite:///./data/app.db") == "./data/app.db"
    assert _sqlite_path_from_url("sqlite:////abs/path.db") == "/abs/path.db"
    with pytest.raises(ValueError):
        _sqlite_path_from_url("postgresql://localhost/db")


def test_schema_creates_tables(conn):
    names = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    for table in (
        "items",
        "ratings",
        "feature_weights",
        "embeddings",
        "bandit_experiments",
        "recommendations",
        "feature_contributions",
        "diversity_metrics",
        "interaction_logs",
    ):
        assert table in names


def test_best_effort_write_retries_then_succeeds():
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert best_effort_write(flaky, what="flaky", retries=2, backoff_sec=0.0) == "ok"
    assert calls["n"] == 3


def test_best_effort_write_drops_after_retries(caplog):
    calls = {"n": 0}

    def broken():
        calls["n"] += 1
        raise sqlite3.OperationalError("disk I/O error")

    assert best_effort_write(broken, what="broken", retries=1, backoff_sec=0.0) is None
    assert calls["n"] == 2
    assert "dropping write 'broken'" in caplog.text


def test_best_effort_write_does_not_catch_other_errors():
    def bug():
        raise KeyError("not a storage error")

    with pytest.raises(KeyError):
        best_effort_write(bug, what="bug", retries=2, backoff_sec=0.0)
