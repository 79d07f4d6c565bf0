"""Shared fixtures for lead routing tests."""

import os

import pytest
from fastapi.testclient import TestClient

# Run the API on in-memory stores with local collaborators
os.environ["DATABASE_URL"] = ""
os.environ["SALES_SERVICE_URL"] = ""
os.environ["WHATSAPP_API_TOKEN"] = ""
os.environ["WHATSAPP_PHONE_NUMBER_ID"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

from helpers import Env  # noqa: E402
from lead_routing.models import AgentSlot  # noqa: E402


@pytest.fixture
def client():
    """FastAPI test client with a fresh service container."""
    from api.main import app
    from api.services import reset_services

    reset_services()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def env():
    """Pipeline with two equal-priority agents and no caps."""
    return Env(slots=[AgentSlot(agent_id="agent-a"), AgentSlot(agent_id="agent-b")])


@pytest.fixture
def empty_env():
    """Pipeline with an empty roster."""
    return Env()
