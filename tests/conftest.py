"""
Pytest configuration and fixtures.

Environment variables are set before any workflow_vcs import so Settings never
needs a real n8n instance. Every test gets a fresh in-memory store, a fake
engine preloaded with a two-node workflow, and a registry wired to both.
"""
import os

os.environ.setdefault("N8N_API_KEY", "test-key")
os.environ["VCS_STORE_BACKEND"] = "memory"
os.environ["VCS_DEFAULT_BRANCH"] = "main"
os.environ["VCS_PUSH_TO_ENGINE"] = "true"

import pytest
from fastapi.testclient import TestClient

from workflow_vcs.services import registry
from workflow_vcs.services.catalog import NodeTypeCatalog
from workflow_vcs.services.orchestrator import MergeOrchestrator
from workflow_vcs.services.store import InMemoryVersionRepository
from workflow_vcs.services.versioning import VersionService

from tests.factories import FakeEngine, link, make_document, make_node

CATALOG_DATA = {
    "n8n-nodes-base.webhook": {
        "display_name": "Webhook",
        "defaults": {"httpMethod": "GET", "path": "", "responseMode": "onReceived"}
    },
    "n8n-nodes-base.cron": {
        "display_name": "Cron",
        "defaults": {"triggerTimes": {"item": [{"mode": "everyDay"}]}}
    },
    "n8n-nodes-base.httpRequest": {
        "display_name": "HTTP Request",
        "defaults": {"method": "GET", "url": ""}
    },
}


@pytest.fixture
def base_document():
    """Webhook -> Set, tagged 'a'."""
    return make_document(
        nodes=[
            make_node("n1", "Webhook", "n8n-nodes-base.webhook", parameters={"path": "leads"}),
            make_node("n2", "Set", position=[200, 0], parameters={"values": {"string": []}}),
        ],
        connections=link("Webhook", "Set"),
        tags=["a"],
    )


@pytest.fixture
def engine(base_document):
    fake = FakeEngine()
    fake.load(base_document)
    return fake


@pytest.fixture
def catalog():
    return NodeTypeCatalog.from_data(CATALOG_DATA)


@pytest.fixture
def versions(engine):
    return VersionService(
        InMemoryVersionRepository(),
        engine,
        default_branch="main",
        default_author="tester",
        push_to_engine=True
    )


@pytest.fixture
def orchestrator(versions, catalog):
    return MergeOrchestrator(versions, catalog)


@pytest.fixture(autouse=True)
def service_registry(engine, catalog):
    """Route the tool layer to the fake engine and a fresh store."""
    registry.configure(
        repository=InMemoryVersionRepository(),
        engine=engine,
        catalog=catalog,
        push_to_engine=True
    )
    yield registry
    registry.reset()


@pytest.fixture
def client():
    from workflow_vcs.main import app
    return TestClient(app, raise_server_exceptions=False)
