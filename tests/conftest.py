"""Shared fixtures: in-memory database, fake identity provider, fake model."""

import asyncio
import json
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool

from tasklane import models  # noqa: F401  (registers the tasks table)
from tasklane.config import Settings, get_settings
from tasklane.database import get_engine
from tasklane.deps import get_identity_client, get_model_client
from tasklane.errors import Unauthorized
from tasklane.identity import Principal
from tasklane.main import app
from tasklane.repository import TaskRepository

ALICE = {"Authorization": "Bearer alice-token"}
BOB = {"Authorization": "Bearer bob-token"}


class FakeIdentity:
    """Stands in for the hosted identity provider."""

    def __init__(self) -> None:
        self.users = {
            "alice-token": {"id": "user-alice", "email": "alice@example.com"},
            "bob-token": {"id": "user-bob", "email": "bob@example.com"},
        }
        self.signed_out: list[str] = []
        self.metadata_updates: list[dict[str, Any]] = []

    async def get_user(self, token: str) -> Principal:
        user = self.users.get(token)
        if user is None:
            raise Unauthorized("Invalid or expired token")
        return Principal(id=user["id"], email=user["email"], token=token, user=user)

    async def sign_up(self, email, password, user_metadata=None):
        return {"user": {"id": "user-new", "email": email, "user_metadata": user_metadata}, "session": None}

    async def sign_in_with_password(self, email, password):
        if password != "correct-horse":
            raise Unauthorized("Invalid login credentials", error="Authentication Failed")
        return {
            "user": {"id": "user-alice", "email": email},
            "session": {"access_token": "alice-token", "refresh_token": "r1"},
        }

    async def sign_out(self, token: str) -> None:
        self.signed_out.append(token)

    async def update_user(self, token, user_metadata):
        self.metadata_updates.append(user_metadata)
        return {"id": self.users[token]["id"], "user_metadata": user_metadata}

    async def refresh_session(self, refresh_token):
        return {"access_token": "alice-token", "refresh_token": "r2"}


class FakeModel:
    """Scripted model client: returns ``reply``, raises ``error`` or stalls for ``delay``."""

    def __init__(self, reply: str = "", error: Optional[Exception] = None, delay: float = 0) -> None:
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        self.calls.append({"system": system, "prompt": prompt, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


def enhance_reply(**overrides) -> str:
    payload = {
        "enhanced_title": "Build a responsive marketing website",
        "enhanced_description": "Design and ship a five-page site with a contact form.",
        "enhancement_notes": "Clarified scope and deliverables",
    }
    payload.update(overrides)
    return "Here is the enhanced task:\n" + json.dumps(payload)


def split_reply(count: int = 4) -> str:
    subtasks = [
        {
            "title": f"Step {i}",
            "description": f"Do part {i}",
            "estimated_effort": f"{i} hours",
            "priority": "high" if i == 1 else "low",
            "tags": [f"step-{i}"],
        }
        for i in range(1, count + 1)
    ]
    return json.dumps({"subtasks": subtasks, "split_reasoning": "Natural workflow"})


@pytest.fixture(name="engine")
def engine_fixture():
    """Create a fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="repository")
def repository_fixture(engine):
    return TaskRepository(engine)


@pytest.fixture(name="identity")
def identity_fixture():
    return FakeIdentity()


@pytest.fixture(name="model")
def model_fixture():
    return FakeModel(reply=enhance_reply())


@pytest.fixture(name="settings")
def settings_fixture():
    return Settings(
        enhancement_timeout_seconds=0.2,
        status_poll_interval_seconds=0.01,
        status_stream_timeout_seconds=0.1,
    )


@pytest.fixture(name="client")
def client_fixture(engine, identity, model, settings):
    """Create a test client wired to the in-memory database and fakes."""
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_identity_client] = lambda: identity
    app.dependency_overrides[get_model_client] = lambda: model
    app.dependency_overrides[get_settings] = lambda: settings
    app.state.rate_limiter.reset()
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="unconfigured_client")
def unconfigured_client_fixture(engine):
    """Test client with the real identity dependency and no provider configured."""
    app.dependency_overrides[get_engine] = lambda: engine
    app.state.identity = None
    app.state.rate_limiter.reset()
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


def create_task(client: TestClient, headers=ALICE, **fields) -> dict:
    body = {"title": "Build website", **fields}
    response = client.post("/api/tasks/", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["task"]


def parse_events(body: str) -> list[tuple[str, dict]]:
    """Split an SSE body into (event name, data) pairs."""
    events = []
    for frame in body.strip().split("\n\n"):
        lines = frame.split("\n")
        assert lines[0].startswith("event: ")
        assert lines[1].startswith("data: ")
        events.append((lines[0][len("event: "):], json.loads(lines[1][len("data: "):])))
    return events
