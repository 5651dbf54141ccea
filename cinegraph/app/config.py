from typing import List
import json

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "CineGraphRecommender"
    app_env: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/cinegraph.db"

    # read raw string from env (works with comma-separated values)
    cors_origins: str = ""

    # offline artifacts
    pattern_model_path: str = "models/pattern_recognition.pt"
    embedding_version: str = "v1"
    embedding_dim: int = 32

    # sequence model
    sequence_length: int = 10

    # online learning / bandit
    feature_learning_rate: float = 0.1
    bandit_policy: str = "epsilon_greedy"  # "epsilon_greedy" | "thompson_sampling"
    exploration_rate: float = 0.1

    # ranking / diversity
    diversity_threshold: float = 0.2
    default_diversity_level: float = 0.3
    max_consecutive_same_genre: int = 3  # 0 disables genre balancing
    serendipity_rate: float = 0.15  # 0 disables serendipity injection
    candidates_limit: int = 500
    recency_half_life_years: float = 5.0

    # best-effort writes
    write_retries: int = 2

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s:
            return []
        if s.startswith("["):
            # also accept JSON list
            return [str(x) for x in json.loads(s)]
        return [part.strip() for part in s.split(",") if part.strip()]


settings = Settings()
