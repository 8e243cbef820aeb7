"""Tests for the vetting API endpoints."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.api.routes import vetting
from src.api.routes.vetting import split_ingredients_text
from src.vetting.orchestrator import VettingOrchestrator
from src.vetting.research import ResearchService
from src.vetting.score_lookup import SafetyScoreLookup
from src.vetting.types import ScoreLookupResult

SCORES = {"glycerin": 1, "sodium lauryl sulfate": 5, "propylparaben": 9}


def _lookup(name: str) -> ScoreLookupResult:
    score = SCORES.get(name.lower())
    if score is None:
        return ScoreLookupResult.not_found(name)
    return ScoreLookupResult(
        name=name,
        score=score,
        data_availability="Good",
        url=f"https://www.ewg.org/skindeep/ingredients/{name.lower().replace(' ', '-')}/",
        found=True,
    )


@pytest_asyncio.fixture
async def orchestrator(analysis_cache):
    score_lookup = MagicMock()
    score_lookup.lookup = AsyncMock(side_effect=_lookup)
    research = MagicMock()
    research.search = AsyncMock(return_value=[])
    return VettingOrchestrator(
        score_lookup=score_lookup,
        research=research,
        classifier=None,
        cache=analysis_cache,
        item_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def client(orchestrator):
    app = FastAPI()
    app.include_router(vetting.router)
    app.state.orchestrator = orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def test_split_ingredients_text():
    text = "Glycerin, Water\n\n  Sodium Lauryl Sulfate ,, \nPropylparaben"
    assert split_ingredients_text(text) == [
        "Glycerin",
        "Water",
        "Sodium Lauryl Sulfate",
        "Propylparaben",
    ]


@pytest.mark.asyncio
async def test_vet_ingredients(client):
    resp = await client.post(
        "/api/vet-ingredients",
        json={"ingredientsText": "Glycerin, Sodium Lauryl Sulfate\nPropylparaben"},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["overallStatus"] == "banned"
    assert data["summary"].startswith("Overall assessment: Avoid use. 3 ingredients")

    names = [i["name"] for i in data["ingredients"]]
    assert names == ["Glycerin", "Sodium Lauryl Sulfate", "Propylparaben"]

    first = data["ingredients"][0]
    assert first["status"] == "safe"
    assert first["originalStatus"] == "safe"
    assert first["isOverride"] is False
    assert first["ewgScore"] == 1
    assert first["sourceUrl"] == "https://www.ewg.org/skindeep/ingredients/glycerin/"
    assert first["confidence"] == 0.9
    assert "createdAt" in first and "updatedAt" in first


@pytest.mark.asyncio
async def test_unknown_ingredient_needs_review(client):
    resp = await client.post("/api/vet-ingredients", json={"ingredientsText": "Mystery Extract"})

    ingredient = resp.json()["ingredients"][0]
    assert ingredient["status"] == "caution"
    assert ingredient["confidence"] == 0.0
    assert ingredient["needsReview"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"ingredientsText": "   "}, {"ingredientsText": " , \n"}, {}])
async def test_blank_ingredients_text_is_rejected(client, payload):
    resp = await client.post("/api/vet-ingredients", json=payload)

    assert resp.status_code == 400
    assert resp.json() == {"detail": "ingredientsText is required"}


@pytest.mark.asyncio
async def test_unexpected_failure_returns_hint(client, orchestrator):
    orchestrator.vet_ingredients = AsyncMock(side_effect=RuntimeError("event loop closed"))

    resp = await client.post("/api/vet-ingredients", json={"ingredientsText": "Glycerin"})

    assert resp.status_code == 500
    detail = resp.json()["detail"]
    assert detail["error"] == "Failed to vet ingredients"
    assert detail["message"] == "event loop closed"
    assert "hint" in detail


@pytest.mark.asyncio
async def test_get_ingredient_analysis(client):
    resp = await client.get("/api/ingredient-analyses/Glycerin")
    assert resp.status_code == 404

    await client.post("/api/vet-ingredients", json={"ingredientsText": "Glycerin"})

    resp = await client.get("/api/ingredient-analyses/GLYCERIN")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "safe"
    assert data["analysisVersion"] == 1
    assert data["ewgDataAvailability"] == "Good"


@pytest.mark.asyncio
async def test_refresh_ingredient_analysis(client, orchestrator):
    await client.post("/api/vet-ingredients", json={"ingredientsText": "Glycerin"})

    resp = await client.post("/api/ingredient-analyses/Glycerin/refresh")

    assert resp.status_code == 200
    assert resp.json()["analysisVersion"] == 2
    assert orchestrator.score_lookup.lookup.await_count == 2


@pytest.mark.asyncio
async def test_health_and_metrics():
    from src.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        health = await ac.get("/health")
        metrics = await ac.get("/metrics")

    assert health.json() == {"status": "healthy"}
    assert metrics.status_code == 200
    assert "ingredients_vetted_total" in metrics.text


@pytest.mark.asyncio
async def test_vet_ingredients_with_no_services_configured(analysis_cache):
    orchestrator = VettingOrchestrator(
        score_lookup=SafetyScoreLookup(enabled=False),
        research=ResearchService(api_key="", cx_id=""),
        classifier=None,
        cache=analysis_cache,
        item_delay_seconds=0,
    )
    app = FastAPI()
    app.include_router(vetting.router)
    app.state.orchestrator = orchestrator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        resp = await ac.post(
            "/api/vet-ingredients", json={"ingredientsText": "Water, Phthalate, Vitamin C"}
        )
    await orchestrator.close()

    assert resp.status_code == 200
    data = resp.json()
    assert data["overallStatus"] == "caution"
    assert data["summary"].startswith("Overall assessment: Needs caution. 3 ingredients")
    assert [i["name"] for i in data["ingredients"]] == ["Water", "Phthalate", "Vitamin C"]
    assert [i["status"] for i in data["ingredients"]] == ["caution"] * 3
    assert all(i["needsReview"] for i in data["ingredients"])
