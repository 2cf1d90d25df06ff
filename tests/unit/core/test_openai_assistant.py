"""
Tests for the OpenAI Assistants client.
The remote API is replaced by an httpx mock transport.
"""

import httpx
import pytest

from core.exceptions import (
    ConfigurationError,
    MessageError,
    NoResponseError,
    UpstreamError,
    RunError,
    RunTimeout,
    ThreadCreationError,
)
from core.integrations.openai_assistant import (
    ANALYSIS_RESPONSE_SCHEMA,
    BETA_HEADER,
    JSON_INSTRUCTION,
    AssistantClient,
)
from core.polling import PollSchedule


def make_client(fake, sleeper, max_attempts=5, api_key="sk-test-key-0000000000", assistant_id="asst_test"):
    return AssistantClient(
        fake.client(),
        api_key=api_key,
        assistant_id=assistant_id,
        schedule=PollSchedule(interval=2.0, max_attempts=max_attempts),
        sleeper=sleeper,
    )



def reply_with(fake, route, response):
    """Answer one route of the fake with a fixed response."""
    original = fake.handler

    def handler(request):
        if f"{request.method} {request.url.path}" == route:
            fake.requests.append(request)
            return response
        return original(request)

    fake.handler = handler
    return fake

class TestRunAnalysis:
    """Full thread, message, run and fetch sequence."""

    @pytest.mark.asyncio
    async def test_completed_run_returns_content(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory(content='{"power": 50}', run_statuses=["queued", "in_progress", "completed"])
        client = make_client(fake, sleeper)

        response = await client.run_analysis("My manager keeps moving deadlines")

        assert response.content == '{"power": 50}'
        assert response.thread_id == "thread_1"
        assert response.run_id == "run_1"
        assert fake.run_polls == 3
        assert sleeper.delays == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_request_order(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()
        await make_client(fake, sleeper).run_analysis("Situation text")

        assert fake.paths() == [
            "POST /v1/threads",
            "POST /v1/threads/thread_1/messages",
            "POST /v1/threads/thread_1/runs",
            "GET /v1/threads/thread_1/runs/run_1",
            "GET /v1/threads/thread_1/messages",
        ]

    @pytest.mark.asyncio
    async def test_beta_and_auth_headers(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()
        await make_client(fake, sleeper).run_analysis("Situation text")

        for request in fake.requests:
            assert request.headers["OpenAI-Beta"] == BETA_HEADER
            assert request.headers["Authorization"] == "Bearer sk-test-key-0000000000"

    @pytest.mark.asyncio
    async def test_schema_mode_attaches_response_format(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()
        await make_client(fake, sleeper).run_analysis("Situation text")

        run_body = fake.bodies("/runs")[0]
        assert run_body["assistant_id"] == "asst_test"
        assert run_body["response_format"] == ANALYSIS_RESPONSE_SCHEMA
        assert fake.bodies("/messages")[0]["content"] == "Situation text"

    @pytest.mark.asyncio
    async def test_free_form_mode_adds_json_instruction(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()
        await make_client(fake, sleeper).run_analysis("Situation text", free_form=True)

        assert "response_format" not in fake.bodies("/runs")[0]
        assert fake.bodies("/messages")[0]["content"] == f"Situation text{JSON_INSTRUCTION}"

    @pytest.mark.asyncio
    async def test_vector_store_forces_free_form(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()
        await make_client(fake, sleeper).run_analysis("Situation text", vector_store_id="vs_1", free_form=False)

        run_body = fake.bodies("/runs")[0]
        assert run_body["tool_resources"] == {"file_search": {"vector_store_ids": ["vs_1"]}}
        assert "response_format" not in run_body
        assert fake.bodies("/messages")[0]["content"].endswith(JSON_INSTRUCTION)

    @pytest.mark.asyncio
    async def test_status_callback(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()
        seen = []

        async def on_status(status, context):
            seen.append((status, context))

        await make_client(fake, sleeper).run_analysis("Situation text", on_status=on_status)

        assert seen == [
            ("thread_created", {"thread_id": "thread_1"}),
            ("run_started", {"thread_id": "thread_1", "run_id": "run_1", "assistant_id": "asst_test"}),
        ]


class TestRunFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["failed", "cancelled", "expired"])
    async def test_terminal_failure_status(self, fake_openai_factory, sleeper, status):
        fake = fake_openai_factory(run_statuses=["queued", status])

        with pytest.raises(RunError) as exc_info:
            await make_client(fake, sleeper).run_analysis("Situation text")

        assert exc_info.value.run_status == status
        assert str(exc_info.value).startswith(f"Assistant run {status}")

    @pytest.mark.asyncio
    async def test_failed_run_carries_last_error(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory(run_statuses=["failed"])

        with pytest.raises(RunError) as exc_info:
            await make_client(fake, sleeper).run_analysis("Situation text")

        assert "The model crashed" in str(exc_info.value)
        assert exc_info.value.details["last_error"]["code"] == "server_error"

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory(run_statuses=["in_progress"])

        with pytest.raises(RunTimeout) as exc_info:
            await make_client(fake, sleeper, max_attempts=3).run_analysis("Situation text")

        assert "3 attempts" in str(exc_info.value)
        assert fake.run_polls == 3
        # no sleep after the final attempt
        assert sleeper.delays == [2.0, 2.0]
        assert not any(path.endswith("/messages") and path.startswith("GET") for path in fake.paths())

    @pytest.mark.asyncio
    async def test_thread_creation_http_error(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory(fail={"POST /v1/threads": 500})

        with pytest.raises(ThreadCreationError) as exc_info:
            await make_client(fake, sleeper).run_analysis("Situation text")

        assert exc_info.value.details == {"status_code": 500}
        assert "refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_api_key(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()

        with pytest.raises(ConfigurationError) as exc_info:
            await make_client(fake, sleeper, api_key=None).run_analysis("Situation text")

        assert "OPENAI_API_KEY" in str(exc_info.value)
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_missing_assistant_id(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()

        with pytest.raises(ConfigurationError) as exc_info:
            await make_client(fake, sleeper, assistant_id="").run_analysis("Situation text")

        assert "OPENAI_ASSISTANT_ID" in str(exc_info.value)
        assert fake.requests == []


class TestFetchResponse:
    @pytest.mark.asyncio
    async def test_no_assistant_message(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory(
            messages=[{"id": "m1", "role": "user", "content": [{"type": "text", "text": {"value": "hi"}}]}]
        )

        with pytest.raises(NoResponseError):
            await make_client(fake, sleeper).run_analysis("Situation text")

    @pytest.mark.asyncio
    async def test_assistant_message_without_text(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory(
            messages=[{"id": "m1", "role": "assistant", "content": [{"type": "image_file", "image_file": {}}]}]
        )

        with pytest.raises(NoResponseError):
            await make_client(fake, sleeper).run_analysis("Situation text")

    @pytest.mark.asyncio
    async def test_text_blocks_are_joined(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory(
            messages=[
                {
                    "id": "m2",
                    "role": "assistant",
                    "content": [
                        {"type": "text", "text": {"value": "first"}},
                        {"type": "text", "text": {"value": "second"}},
                    ],
                },
                {"id": "m1", "role": "assistant", "content": [{"type": "text", "text": {"value": "older"}}]},
            ]
        )

        text = await make_client(fake, sleeper).fetch_response_text("thread_1")

        assert text == "first\nsecond"


class TestVerifyAssistant:
    @pytest.mark.asyncio
    async def test_returns_assistant_summary(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory()

        info = await make_client(fake, sleeper).verify_assistant()

        assert info["id"] == "asst_test"
        assert info["model"] == "gpt-4o"
        assert info["tools"] == []


class TestMalformedReplies:
    """Successful HTTP replies with an unusable body fail with the step's error."""

    GATEWAY_PAGE = httpx.Response(200, text="<html>gateway</html>")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("route,error_cls", [
        ("POST /v1/threads", ThreadCreationError),
        ("POST /v1/threads/thread_1/messages", MessageError),
        ("POST /v1/threads/thread_1/runs", RunError),
        ("GET /v1/threads/thread_1/runs/run_1", RunError),
        ("GET /v1/threads/thread_1/messages", NoResponseError),
    ])
    async def test_non_json_reply(self, fake_openai_factory, sleeper, route, error_cls):
        fake = reply_with(fake_openai_factory(), route, self.GATEWAY_PAGE)

        with pytest.raises(error_cls) as exc_info:
            await make_client(fake, sleeper).run_analysis("Situation text")

        assert "non-JSON reply" in str(exc_info.value)
        assert exc_info.value.details == {"status_code": 200}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("route,error_cls", [
        ("POST /v1/threads", ThreadCreationError),
        ("POST /v1/threads/thread_1/runs", RunError),
    ])
    async def test_reply_without_id(self, fake_openai_factory, sleeper, route, error_cls):
        fake = reply_with(fake_openai_factory(), route, httpx.Response(200, json={"object": "thread"}))

        with pytest.raises(error_cls, match="no id"):
            await make_client(fake, sleeper).run_analysis("Situation text")

    @pytest.mark.asyncio
    async def test_reply_that_is_not_an_object(self, fake_openai_factory, sleeper):
        fake = reply_with(fake_openai_factory(), "GET /v1/threads/thread_1/messages", httpx.Response(200, json=[]))

        with pytest.raises(NoResponseError, match="unexpected reply list"):
            await make_client(fake, sleeper).run_analysis("Situation text")

    @pytest.mark.asyncio
    async def test_text_block_without_value(self, fake_openai_factory, sleeper):
        fake = fake_openai_factory(messages=[
            {"role": "assistant", "content": [{"type": "text", "text": "flat string"}]},
            "not a message",
        ])

        with pytest.raises(NoResponseError, match="no text content"):
            await make_client(fake, sleeper).run_analysis("Situation text")

    @pytest.mark.asyncio
    async def test_errors_are_upstream_errors(self, fake_openai_factory, sleeper):
        fake = reply_with(fake_openai_factory(), "POST /v1/threads", self.GATEWAY_PAGE)

        with pytest.raises(UpstreamError):
            await make_client(fake, sleeper).run_analysis("Situation text")
