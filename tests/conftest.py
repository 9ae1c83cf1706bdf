from collections.abc import AsyncIterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from therapy_scheduler.main import create_application


@pytest.fixture()
def app() -> FastAPI:
    return create_application()


@pytest.fixture()
async def api_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"
