import pytest
from httpx import AsyncClient


@pytest.mark.anyio("asyncio")
async def test_health_endpoint(api_client: AsyncClient) -> None:
    response = await api_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.anyio("asyncio")
async def test_settings_endpoint(api_client: AsyncClient) -> None:
    response = await api_client.get("/api/system/settings")

    assert response.status_code == 200
    data = response.json()
    assert data["project"] == "Therapy Auto-Scheduling API"
    assert data["grid_resolution_minutes"] == 15


@pytest.mark.anyio("asyncio")
async def test_default_constraints_endpoint(api_client: AsyncClient) -> None:
    response = await api_client.get("/api/system/constraints")

    assert response.status_code == 200
    data = response.json()
    assert data["min_break_minutes"] == 15
    assert data["max_consecutive_sessions"] == 4
    assert data["default_unit_caps"] == {"one_to_one": 0, "supervision": 0, "parent_consult": 0}
