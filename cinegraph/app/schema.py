SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- inputs owned by the surrounding application (read-only for the recommender)

CREATE TABLE IF NOT EXISTS items (
  id           INTEGER NOT NULL,               -- TMDB id
  media_type   TEXT NOT NULL DEFAULT 'movie',  -- 'movie' | 'tv'
  title        TEXT NOT NULL,
  genres       TEXT,                           -- comma-separated TMDB genre ids
  vote_average REAL,                           -- 0..10
  vote_count   INTEGER,
  release_date TEXT,                           -- YYYY-MM-DD
  created_at   TEXT NOT NULL DEFAULT (datetime('now')),
  PRIMARY KEY (id, media_type)
);

CREATE TABLE IF NOT EXISTS ratings (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id    TEXT NOT NULL,
  item_id    INTEGER NOT NULL,
  media_type TEXT NOT NULL DEFAULT 'movie',
  rating     REAL NOT NULL,                    -- 0..10
  ts         INTEGER NOT NULL,                 -- unix timestamp
  created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_ratings_user_ts ON ratings(user_id, ts);

-- online learning state

CREATE TABLE IF NOT EXISTS feature_weights (
  id            INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id       TEXT,                          -- NULL = global weight
  feature_name  TEXT NOT NULL,
  weight        REAL NOT NULL DEFAULT 0.5,     -- 0..1
  success_count INTEGER NOT NULL DEFAULT 0,
  total_count   INTEGER NOT NULL DEFAULT 0,
  success_rate  REAL NOT NULL DEFAULT 0,
  learning_rate REAL NOT NULL DEFAULT 0.1,
  last_updated  TEXT NOT NULL DEFAULT (datetime('now')),
  created_at    TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_feature_weights_user_feature
ON feature_weights(user_id, feature_name);

-- offline artifacts (two-tower vectors)

CREATE TABLE IF NOT EXISTS embeddings (
  subject_id   TEXT NOT NULL,                  -- user id, or "<tmdb_id>:<media_type>" for items
  subject_kind TEXT NOT NULL,                  -- 'user' | 'item'
  vector_json  TEXT NOT NULL,                  -- JSON array of floats
  version      TEXT NOT NULL DEFAULT 'v1',
  updated_at   TEXT NOT NULL DEFAULT (datetime('now')),
  PRIMARY KEY (subject_id, subject_kind)
);

-- exploration / exploitation log

CREATE TABLE IF NOT EXISTS bandit_experiments (
  id               TEXT PRIMARY KEY,           -- UUID string
  user_id          TEXT NOT NULL,
  experiment_type  TEXT NOT NULL,              -- 'epsilon_greedy' | 'thompson_sampling'
  arm_chosen       TEXT NOT NULL,
  reward           REAL,                       -- NULL until feedback arrives
  context_bucket   TEXT NOT NULL DEFAULT '',
  context_json     TEXT,
  exploration_rate REAL,
  created_at       TEXT NOT NULL DEFAULT (datetime('now')),
  rewarded_at      TEXT
);

CREATE INDEX IF NOT EXISTS idx_bandit_user_bucket
ON bandit_experiments(user_id, context_bucket);

-- served recommendations and their attribution

CREATE TABLE IF NOT EXISTS recommendations (
  id            TEXT PRIMARY KEY,              -- UUID string
  user_id       TEXT NOT NULL,
  item_id       INTEGER NOT NULL,
  media_type    TEXT NOT NULL DEFAULT 'movie',
  score         REAL NOT NULL,
  strategy      TEXT NOT NULL,
  experiment_id TEXT,
  rank          INTEGER NOT NULL,
  created_at    TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_recommendations_user_item
ON recommendations(user_id, item_id, media_type);

CREATE TABLE IF NOT EXISTS feature_contributions (
  id                 INTEGER PRIMARY KEY AUTOINCREMENT,
  recommendation_id  TEXT NOT NULL,
  user_id            TEXT NOT NULL,
  feature_name       TEXT NOT NULL,
  contribution_score REAL NOT NULL,            -- 0..1, sums to 1 per recommendation
  feature_value      REAL,
  outcome_type       TEXT,                     -- set once when feedback arrives
  created_at         TEXT NOT NULL DEFAULT (datetime('now')),
  FOREIGN KEY (recommendation_id) REFERENCES recommendations(id)
);

CREATE INDEX IF NOT EXISTS idx_feature_contributions_rec
ON feature_contributions(recommendation_id, feature_name);

CREATE TABLE IF NOT EXISTS diversity_metrics (
  id                   INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id              TEXT NOT NULL,
  session_id           TEXT,
  recommendation_type  TEXT NOT NULL,
  intra_diversity      REAL NOT NULL,
  genre_balance        REAL NOT NULL,
  serendipity_score    REAL NOT NULL,
  exploration_rate     REAL NOT NULL,
  coverage_score       REAL NOT NULL,
  recommendation_count INTEGER NOT NULL,
  created_at           TEXT NOT NULL DEFAULT (datetime('now'))
);

-- feedback that could not be correlated with an experiment

CREATE TABLE IF NOT EXISTS interaction_logs (
  id             INTEGER PRIMARY KEY AUTOINCREMENT,
  correlation_id TEXT NOT NULL,
  outcome_type   TEXT NOT NULL,
  reward         REAL,
  ts             INTEGER NOT NULL,
  created_at     TEXT NOT NULL DEFAULT (datetime('now'))
);
"""
