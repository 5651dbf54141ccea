from contextlib import asynccontextmanager
from typing import List, Optional
import logging
import random

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from cinegraph.app.config import settings
from cinegraph.app.db import connect, init_db
from cinegraph.app.logging_setup import setup_logging
from cinegraph.recommender.bandit import ARMS, BanditArmSelector
from cinegraph.recommender.embedding_store import EmbeddingStore
from cinegraph.recommender.pipeline import RecommendationOptions, RecommendationService, WeightUpdate
from cinegraph.recommender.repositories import ItemCatalog, RatingHistory
from cinegraph.recommender.sequence_model import PatternRecognizer, load_pattern_model

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ensure DB exists
    conn = connect()
    init_db(conn)
    conn.close()

    # pattern model is optional, predictions fall back to defaults without it
    app.state.pattern_model = load_pattern_model(settings.pattern_model_path)
    app.state.rng = random.Random()

    yield
    # nothing to clean up for sqlite here


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan,
)

if settings.cors_origins_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _service(conn) -> RecommendationService:
    return RecommendationService.create(
        conn,
        learning_rate=settings.feature_learning_rate,
        exploration_rate=settings.exploration_rate,
        policy=settings.bandit_policy,
        diversity_threshold=settings.diversity_threshold,
        max_consecutive_same_genre=settings.max_consecutive_same_genre,
        serendipity_rate=settings.serendipity_rate,
        candidates_limit=settings.candidates_limit,
        recency_half_life_years=settings.recency_half_life_years,
        embedding_dim=settings.embedding_dim,
        rng=getattr(app.state, "rng", None),
        write_retries=settings.write_retries,
    )


def _recognizer(conn) -> PatternRecognizer:
    return PatternRecognizer(
        history=RatingHistory(conn),
        catalog=ItemCatalog(conn),
        handle=getattr(app.state, "pattern_model", None),
    )


@app.get("/health")
def health():
    return {"status": "ok", "app": settings.app_name, "env": settings.app_env}


@app.get("/")
def root():
    return {"message": "CineGraph recommender API is running", "docs": "/docs", "health": "/health"}


@app.get("/debug/model")
def debug_model():
    handle = getattr(app.state, "pattern_model", None)
    return {
        "pattern_model_loaded": handle is not None,
        "pattern_model_version": handle.version if handle else None,
        "sequence_length": handle.sequence_length if handle else settings.sequence_length,
        "model_path": settings.pattern_model_path,
    }


@app.post("/debug/model/reload")
def reload_model():
    # swap the whole handle at once, in-flight requests keep the one they read
    app.state.pattern_model = load_pattern_model(settings.pattern_model_path)
    return debug_model()


@app.get("/debug/embeddings/{user_id}")
def debug_embedding(user_id: str):
    conn = connect()
    try:
        record = EmbeddingStore(conn, dim=settings.embedding_dim).get_record(user_id, "user")
    finally:
        conn.close()
    return {
        "user_id": user_id,
        "found": record is not None,
        "version": record.version if record else None,
        "dim": len(record.vector) if record else None,
        "expected_version": settings.embedding_version,
    }


# Pattern recognition
@app.get("/patterns/{user_id}/next")
def predict_next_action(user_id: str):
    conn = connect()
    try:
        return _recognizer(conn).predict_next_action(user_id).to_dict()
    finally:
        conn.close()


@app.get("/patterns/{user_id}/analysis")
def analyze_patterns(user_id: str):
    conn = connect()
    try:
        return _recognizer(conn).analyze_patterns(user_id).to_dict()
    finally:
        conn.close()


class SessionContext(BaseModel):
    recent_views: List[int] = Field(default_factory=list)
    media_type: str = Field("movie", min_length=1, max_length=16)


@app.post("/patterns/{user_id}/session")
def session_recommendations(user_id: str, session: Optional[SessionContext] = None):
    conn = connect()
    try:
        ctx = session.model_dump() if session else {}
        return _recognizer(conn).get_session_recommendations(user_id, ctx)
    finally:
        conn.close()


# Recommendations
@app.get("/recommendations")
def recommendations(
    user_id: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=100),
    diversity_level: Optional[float] = Query(default=None, ge=0.0, le=1.0),
    explainability: bool = Query(True),
    strategy: Optional[str] = Query(default=None),
    media_type: Optional[str] = Query(default=None),
    session_id: Optional[str] = Query(default=None),
    time_of_day: Optional[str] = Query(default=None),
    day_type: Optional[str] = Query(default=None),
    session_duration: Optional[int] = Query(default=None, ge=0),
    device_type: Optional[str] = Query(default=None),
):
    if strategy is not None and strategy not in ARMS:
        raise HTTPException(status_code=400, detail=f"strategy must be one of: {', '.join(ARMS)}")

    options = RecommendationOptions(
        limit=limit,
        diversity_level=settings.default_diversity_level if diversity_level is None else diversity_level,
        explainability=explainability,
        strategy=strategy,
        media_type=media_type,
        session_id=session_id,
    )
    context = {
        "time_of_day": time_of_day,
        "day_type": day_type,
        "session_duration": session_duration,
        "device_type": device_type,
    }

    conn = connect()
    try:
        batch = _service(conn).generate_recommendations(user_id, context, options)
    finally:
        conn.close()

    return {
        "user_id": batch.user_id,
        "strategy": batch.strategy,
        "experiment_id": batch.experiment_id,
        "degraded": batch.degraded,
        "items": batch.items,
        "diversity_metrics": batch.metrics.to_dict(),
    }


# Feedback
class FeedbackEvent(BaseModel):
    correlation_id: str = Field(..., min_length=1)  # recommendation_id or experiment_id
    outcome_type: str = Field(..., min_length=1, max_length=32)
    reward: Optional[float] = Field(default=None, ge=0.0, le=1.0)


def _apply_weight_updates(updates: List[WeightUpdate]) -> None:
    if not updates:
        return
    conn = connect()
    try:
        applied = _service(conn).apply_weight_updates(updates)
        logger.debug("applied %d/%d feature weight updates", applied, 2 * len(updates))
    finally:
        conn.close()


@app.post("/feedback")
def record_feedback(ev: FeedbackEvent, background_tasks: BackgroundTasks):
    conn = connect()
    try:
        ack = _service(conn).record_interaction_feedback(
            ev.correlation_id, ev.outcome_type, reward=ev.reward, apply_weights=False
        )
    finally:
        conn.close()

    # weight learning happens after the response is sent
    background_tasks.add_task(_apply_weight_updates, ack.weight_updates)
    return ack.to_dict()


@app.get("/explain")
def explain(
    user_id: str = Query(..., min_length=1),
    item_id: int = Query(..., ge=1),
    media_type: str = Query("movie"),
    recommendation_id: Optional[str] = Query(default=None),
):
    conn = connect()
    try:
        return _service(conn).explain(user_id, item_id, media_type, recommendation_id).to_dict()
    finally:
        conn.close()


@app.get("/bandit/{user_id}/stats")
def bandit_stats(user_id: str):
    conn = connect()
    try:
        return BanditArmSelector(conn, exploration_rate=settings.exploration_rate).statistics(user_id)
    finally:
        conn.close()
