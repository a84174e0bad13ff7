import pytest
from pathlib import Path
from typing import Dict, Optional
from unittest.mock import AsyncMock
from dotenv import load_dotenv

# Load the test environment before anything reads flowbot.config.settings
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test")

from flowbot.models.flow import FlowGraph  # noqa: E402
from flowbot.services.http_service import ExternalApiClient  # noqa: E402
from flowbot.workflows.engine import FlowEngine  # noqa: E402



class InMemoryStateStore:
    """Dict-backed stand-in for the Redis cache service that records TTLs."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str, ttl: int):
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys: str):
        for key in keys:
            self.data.pop(key, None)
            self.ttls.pop(key, None)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        if key in self.data:
            return False
        await self.set(key, value, ttl)
        return True

    def expire(self, key: str):
        """Simulate the key's TTL running out."""
        self.data.pop(key, None)
        self.ttls.pop(key, None)


def node(node_id: str, node_type: str, **properties) -> dict:
    return {"id": node_id, "type": node_type, "data": {"properties": properties}}


def edge(source: str, target: str, label: Optional[str] = None) -> dict:
    data = {"source": source, "target": target}
    if label is not None:
        data["label"] = label
    return data


def build_graph(nodes, edges) -> FlowGraph:
    return FlowGraph.model_validate({"nodes": nodes, "edges": edges})


class FlowFactory:
    """Exposed as a fixture so test modules can build graphs without importing conftest."""
    node = staticmethod(node)
    edge = staticmethod(edge)
    graph = staticmethod(build_graph)


@pytest.fixture
def flow():
    return FlowFactory


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def gateway():
    gateway = AsyncMock()
    gateway.send_text.return_value = "wamid.text"
    gateway.send_buttons.return_value = "wamid.buttons"
    gateway.send_media.return_value = "wamid.media"
    return gateway


@pytest.fixture
def api_client():
    return AsyncMock(spec=ExternalApiClient)


@pytest.fixture
def engine(store, gateway, api_client):
    return FlowEngine(
        store,
        gateway,
        api_client,
        session_ttl=3600,
        max_invalid_attempts=3,
        max_question_retries=3,
        max_steps=20,
        max_buttons=3,
        global_button_scan=True,
    )


def sent_texts(gateway) -> list:
    return [c.args[1] for c in gateway.send_text.await_args_list]


@pytest.fixture
def texts():
    """Callable returning every text body sent through a mocked gateway, in order."""
    return sent_texts


@pytest.fixture(scope="function")
def test_client(mocker):
    """TestClient with database index creation and client shutdown stubbed out."""
    from fastapi.testclient import TestClient
    mocker.patch("flowbot.utils.lifecycle.project_repository.create_indexes", new_callable=AsyncMock)
    mocker.patch("flowbot.utils.lifecycle.shutdown_clients", new_callable=AsyncMock)

    from flowbot.main import app
    with TestClient(app) as client:
        yield client
