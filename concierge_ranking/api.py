"""
FastAPI surface for the ranking engine.

- GET /health  liveness only
- POST /rank   one RankingRequest in, one RankingOutcome out

Provider, parse and validation failures never surface as HTTP errors; the
engine answers with a deterministic fallback instead. Only malformed
request bodies are rejected (422).
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .cache import InMemoryRankingCache, drain_pending_writes
from .config import (
    LOG_DIR,
    LOG_LEVEL,
    EngineConfig,
    HealthResponse,
    RankingOutcome,
    RankingRequest,
    configure_logging,
)
from .orchestrator import rank_products
from .provider import OpenAIChatClient

app = FastAPI(title="concierge-ranking")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_config() -> EngineConfig:
    return EngineConfig.from_env()


@lru_cache(maxsize=1)
def get_client() -> Optional[OpenAIChatClient]:
    config = get_config()
    return OpenAIChatClient(config) if config.ai_enabled else None


@lru_cache(maxsize=1)
def get_cache() -> InMemoryRankingCache:
    return InMemoryRankingCache()


@app.on_event("startup")
def startup_event() -> None:
    configure_logging(LOG_LEVEL, LOG_DIR)
    logger.info("Ranking service ready (provider {})", "enabled" if get_client() is not None else "disabled")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await drain_pending_writes()


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


@app.post("/rank", response_model=RankingOutcome)
async def rank(req: RankingRequest) -> RankingOutcome:
    return await rank_products(req, get_client(), get_config(), get_cache())
