"""Unit tests for the model API endpoints."""

import httpx
import pytest
from fastapi import FastAPI

from polyedge.api.dependencies import get_trading_engine
from polyedge.api.routes import health, models


class TestModelRoutes:
    """Exercise the routers against an in-memory engine."""

    @pytest.fixture(autouse=True)
    def _app(self, engine):
        self.engine = engine
        app = FastAPI()
        app.include_router(health.router)
        app.include_router(models.router)
        app.dependency_overrides[get_trading_engine] = lambda: engine
        self.client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        )

    @pytest.mark.asyncio
    async def test_health(self):
        response = await self.client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_list_and_stats(self, make_model, add_settled_trade):
        model = await make_model()
        await add_settled_trade(model.id, 4.0)

        listed = await self.client.get("/api/models")
        stats = await self.client.get(f"/api/models/{model.id}/stats")

        assert [m["name"] for m in listed.json()] == ["Balanced"]
        assert listed.json()[0]["thresholds"]["bet_threshold"] == 0.65
        assert stats.json()["total_trades"] == 1
        assert stats.json()["wins"] == 1

    @pytest.mark.asyncio
    async def test_unknown_model_is_404(self):
        response = await self.client.get("/api/models/99/stats")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_versions_and_promote(self, make_model, now):
        model = await make_model()
        v1 = await self.engine.versions.seed_v1(model)

        history = await self.client.get(f"/api/models/{model.id}/versions")
        best = await self.client.get(f"/api/models/{model.id}/versions/best")
        promoted = await self.client.post(f"/api/models/versions/{v1.id}/promote")
        missing = await self.client.post("/api/models/versions/999/promote")

        assert [v["version_num"] for v in history.json()] == [1]
        assert best.json() is None
        assert promoted.json() == {
            "promoted_version_id": v1.id,
            "new_version_id": v1.id + 1,
            "new_version_num": 2,
        }
        assert missing.status_code == 404
