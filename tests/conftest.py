"""Shared fixtures: an in-memory store and scripted generators in place of Gemini."""

import json

import pytest
from fastapi.testclient import TestClient

from aida.errors import PersistenceError
from aida.integrations import IntegrationRegistry
from aida.models import AgentOpinion, SessionContext, User
from aida.orchestrator import ConsultationOrchestrator
from aida.store import InMemoryConsultationStore


def agent_reply(opinion: str, confidence: int = 80, reasoning: str = "Clinical reasoning") -> str:
    return json.dumps({
        "opinion": opinion,
        "reasoning": reasoning,
        "confidence": confidence,
        "sources": [{"title": "NICE guideline", "url": "https://example.org/nice"}],
    })


class FakeGenerator:
    """Answers by specialty hint; a hint mapped to an exception raises it."""

    def __init__(self, replies: dict | None = None, default: str | None = None):
        self.replies = replies or {}
        self.default = default if default is not None else agent_reply("Looks stable")
        self.prompts: list[tuple[str, str | None]] = []
        self.collaborative_calls: list[tuple[str, list[str]]] = []
        self.collaborative_opinions: list[AgentOpinion] | None = None

    def generate(self, prompt: str, specialty_hint: str | None = None) -> str:
        self.prompts.append((prompt, specialty_hint))
        reply = self.replies.get(specialty_hint, self.default)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def generate_collaborative(self, query: str, specialties: list[str]) -> list[AgentOpinion]:
        self.collaborative_calls.append((query, specialties))
        if self.collaborative_opinions is not None:
            return self.collaborative_opinions
        return [
            AgentOpinion(specialty=s, opinion=f"{s} view", reasoning="", confidence=70)
            for s in specialties
        ]


class FailingStore(InMemoryConsultationStore):
    """In-memory store whose named methods raise PersistenceError."""

    def __init__(self, failing: set[str]):
        super().__init__()
        self.failing = failing

    def _maybe_fail(self, name: str):
        if name in self.failing:
            raise PersistenceError(f"{name} unavailable")

    def create_consultation(self, *args, **kwargs):
        self._maybe_fail("create_consultation")
        return super().create_consultation(*args, **kwargs)

    def get_consultation(self, *args, **kwargs):
        self._maybe_fail("get_consultation")
        return super().get_consultation(*args, **kwargs)

    def update_consultation(self, *args, **kwargs):
        self._maybe_fail("update_consultation")
        return super().update_consultation(*args, **kwargs)

    def add_message(self, *args, **kwargs):
        self._maybe_fail("add_message")
        return super().add_message(*args, **kwargs)

    def add_agent_contribution(self, *args, **kwargs):
        self._maybe_fail("add_agent_contribution")
        return super().add_agent_contribution(*args, **kwargs)


@pytest.fixture
def store():
    return InMemoryConsultationStore()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def integrations():
    return IntegrationRegistry()


@pytest.fixture
def orchestrator(store, generator, integrations):
    return ConsultationOrchestrator(store, generator, integrations, max_free_agents=3)


@pytest.fixture
def session():
    return SessionContext(user=User(id="doc-1", email="doc@example.org"), tier="free")


@pytest.fixture
def premium_session():
    return SessionContext(user=User(id="doc-1", email="doc@example.org"), tier="premium")


@pytest.fixture
def client(orchestrator, integrations):
    from aida.integrations import get_integrations
    from aida.main import app, get_orchestrator

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_integrations] = lambda: integrations
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"X-User-Id": "doc-1", "X-User-Email": "doc@example.org"}
