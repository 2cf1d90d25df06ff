"""Shared fixtures and utilities for tests."""

import asyncio
import json
import os
from typing import Any, Callable, Optional

import httpx
import pytest
import pytest_asyncio

from core.config import Settings
from core.polling import Sleeper
from database.engine import Database


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables before running tests."""
    os.environ.setdefault("APP_ENV", "test")
    os.environ.setdefault("OPENAI_API_KEY", "sk-test-key-0000000000")
    os.environ.setdefault("OPENAI_ASSISTANT_ID", "asst_test")
    os.environ.setdefault("JSON_LOGS", "false")


class RecordingSleeper(Sleeper):
    """Records requested delays instead of waiting; still yields to the loop."""

    def __init__(self):
        self.delays: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path}/test.db"


@pytest_asyncio.fixture
async def database(db_url):
    """File-backed SQLite database with all tables created."""
    db = Database(db_url)
    await db.init()
    yield db
    await db.close()


def make_settings(db_url: str, **overrides: Any) -> Settings:
    values = {
        "APP_ENV": "test",
        "DATABASE_URL": db_url,
        "OPENAI_API_KEY": "sk-test-key-0000000000",
        "OPENAI_ASSISTANT_ID": "asst_test",
        "ASSISTANT_POLL_INTERVAL": 0,
        "ASSISTANT_MAX_POLL_ATTEMPTS": 5,
        "RESULT_POLL_INTERVAL": 0,
        "RESULT_MAX_POLL_ATTEMPTS": 3,
        "RESULT_WATCH_TIMEOUT": 1,
        "JSON_LOGS": False,
    }
    values.update(overrides)
    return Settings(**values)


# ==================== Fake OpenAI ==================== #
def analysis_payload(**overrides: Any) -> dict[str, Any]:
    """A complete schema-mode answer."""
    payload = {
        "power": 72,
        "gravity": 64,
        "risk": 41,
        "issue_confidence_pct": 90,
        "tl_dr": "Your manager is testing your boundaries.",
        "snapshot": "Short snapshot",
        "whats_happening": "A reorg is shifting who controls the budget.",
        "why_it_matters": "Budget control decides your next promotion.",
        "narrative_summary": "You hold more leverage than you think.",
        "moves": {
            "immediate_action": ["Document the last three requests", "Ask for written priorities"],
            "strategic_tool": ["Map who signs off on budget"],
            "analytical_check": ["Compare with last quarter"],
            "long_term_fix": ["Build a sponsor outside your team"],
        },
        "explanations": {
            "power": "You own the delivery pipeline.",
            "gravity": "Visible to the VP.",
            "risk": "Moderate exposure.",
        },
        "definitions": {
            "power": "Ability to shape outcomes.",
            "gravity": "How much the issue pulls on others.",
            "risk": "Downside if it goes wrong.",
        },
        "issue_type": "Workplace",
        "issue_category": "Power dynamics",
        "issue_layer": "Structural",
    }
    payload.update(overrides)
    return payload


class FakeOpenAI:
    """
    Scripted stand-in for the Assistants API behind ``httpx.MockTransport``.

    ``run_statuses`` is consumed one status per run poll; the last status
    repeats once the list is exhausted.
    """

    def __init__(
        self,
        content: Optional[str] = None,
        run_statuses: Optional[list[str]] = None,
        messages: Optional[list[dict[str, Any]]] = None,
        fail: Optional[dict[str, int]] = None,
    ):
        self.content = content if content is not None else json.dumps(analysis_payload())
        self.run_statuses = list(run_statuses or ["completed"])
        self.messages = messages
        self.fail = fail or {}
        self.requests: list[httpx.Request] = []
        self.run_polls = 0

    def paths(self) -> list[str]:
        return [f"{request.method} {request.url.path}" for request in self.requests]

    def bodies(self, suffix: str) -> list[dict[str, Any]]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.method == "POST" and request.url.path.endswith(suffix)
        ]

    def _status(self) -> str:
        index = min(self.run_polls, len(self.run_statuses) - 1)
        self.run_polls += 1
        return self.run_statuses[index]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        for fragment, status_code in self.fail.items():
            if fragment in f"{method} {path}":
                return httpx.Response(status_code, json={"error": {"message": f"{fragment} refused"}})

        if method == "POST" and path.endswith("/threads"):
            return httpx.Response(200, json={"id": "thread_1"})
        if method == "POST" and path.endswith("/threads/thread_1/messages"):
            return httpx.Response(200, json={"id": "msg_user"})
        if method == "POST" and path.endswith("/threads/thread_1/runs"):
            return httpx.Response(200, json={"id": "run_1", "status": "queued"})
        if method == "GET" and path.endswith("/threads/thread_1/runs/run_1"):
            status = self._status()
            body: dict[str, Any] = {"id": "run_1", "status": status}
            if status == "failed":
                body["last_error"] = {"code": "server_error", "message": "The model crashed"}
            return httpx.Response(200, json=body)
        if method == "GET" and path.endswith("/threads/thread_1/messages"):
            messages = self.messages
            if messages is None:
                messages = [
                    {
                        "id": "msg_assistant",
                        "role": "assistant",
                        "content": [{"type": "text", "text": {"value": self.content}}],
                    }
                ]
            return httpx.Response(200, json={"data": messages})
        if method == "GET" and "/assistants/" in path:
            return httpx.Response(200, json={"id": "asst_test", "model": "gpt-4o"})
        return httpx.Response(404, json={"error": {"message": f"unexpected {method} {path}"}})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_openai_factory() -> Callable[..., FakeOpenAI]:
    return FakeOpenAI


@pytest.fixture
def settings_factory(db_url) -> Callable[..., Settings]:
    """Test settings on the temporary database; keyword overrides use env names."""

    def factory(**overrides: Any) -> Settings:
        return make_settings(db_url, **overrides)

    return factory


@pytest.fixture
def payload_factory() -> Callable[..., dict[str, Any]]:
    return analysis_payload
