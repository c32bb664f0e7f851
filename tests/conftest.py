import httpx
import pytest
import pytest_asyncio

from shopscout.main import app
from shopscout.services.run_store import InMemoryRunStore


@pytest.fixture
def run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest_asyncio.fixture
async def client(run_store):
    """ASGI client against the app, with an in-memory run store.

    The lifespan does not run under ASGITransport, so app state is set here.
    """
    app.state.run_store = run_store
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        app.state.http_client = c
        yield c
    app.dependency_overrides.clear()
