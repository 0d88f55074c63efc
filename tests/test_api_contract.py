from fastapi.testclient import TestClient

from concierge_ranking.api import app, get_cache, get_config
from concierge_ranking.config import EngineConfig, RankingOutcome


client = TestClient(app)

BODY = {
    "user_intent": "linen shirt",
    "candidates": [
        {"handle": "linen-shirt", "title": "Linen Shirt", "price": "$59.00", "tags": ["linen"]},
        {"handle": "oxford-shirt", "title": "Oxford Shirt"},
    ],
    "result_count": 2,
}


async def dummy_rank(request, client, config, cache=None) -> RankingOutcome:
    # Minimal deterministic fake: echo the pool order
    return RankingOutcome(
        selected_handles=[c.handle for c in request.candidates][: request.result_count],
        reasoning="stub",
        source="provider",
        attempts=1,
    )


def test_health_endpoint():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


def test_rank_rejects_negative_result_count(monkeypatch):
    monkeypatch.setattr("concierge_ranking.api.rank_products", dummy_rank)
    resp = client.post("/rank", json={**BODY, "result_count": -1})
    assert resp.status_code == 422


def test_rank_rejects_duplicate_handles(monkeypatch):
    monkeypatch.setattr("concierge_ranking.api.rank_products", dummy_rank)
    body = {**BODY, "candidates": BODY["candidates"] + [{"handle": "linen-shirt"}]}
    resp = client.post("/rank", json=body)
    assert resp.status_code == 422


def test_rank_returns_outcome(monkeypatch):
    monkeypatch.setattr("concierge_ranking.api.rank_products", dummy_rank)
    resp = client.post("/rank", json=BODY)
    assert resp.status_code == 200
    data = resp.json()
    assert data["selected_handles"] == ["linen-shirt", "oxford-shirt"]
    assert data["source"] == "provider"


def test_rank_without_provider_falls_back(monkeypatch):
    monkeypatch.setattr("concierge_ranking.api.get_config", lambda: EngineConfig(feature_enabled=False))
    monkeypatch.setattr("concierge_ranking.api.get_client", lambda: None)
    monkeypatch.setattr("concierge_ranking.api.get_cache", lambda: None)
    resp = client.post("/rank", json=BODY)
    assert resp.status_code == 200
    data = resp.json()
    assert data["source"] == "fallback"
    assert data["trust_fallback"] is True
    assert data["parse_fail_reason"] == "provider_disabled"
    # more tags ranks first in the fallback order
    assert data["selected_handles"] == ["linen-shirt", "oxford-shirt"]


def test_engine_objects_are_built_once(monkeypatch):
    monkeypatch.setenv("FEATURE_AI_RANKING", "false")
    get_config.cache_clear()
    get_cache.cache_clear()
    try:
        assert get_config() is get_config()
        assert get_cache() is get_cache()
        assert get_config().ai_enabled is False
    finally:
        get_config.cache_clear()
        get_cache.cache_clear()
