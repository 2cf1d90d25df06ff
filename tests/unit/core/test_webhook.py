"""Tests for the automation webhook relay."""

import json

import httpx
import pytest

from core.exceptions import ConfigurationError, WebhookRelayError
from core.integrations.openai_files import Attachment
from core.integrations.webhook import PAYLOAD_SOURCE, WebhookRelay, build_job_payload


class TestBuildJobPayload:
    def test_payload_fields(self):
        attachment = Attachment(name="a.pdf", content_type="application/pdf", data="data:application/pdf;base64,QUJD", size=3)

        payload = build_job_payload(
            "job-1", "user-1", "u@example.com", "Some situation", [attachment],
            callback_url="https://api.example.com/api/v1/analyses/job-1/result",
        )

        assert payload["job_id"] == "job-1"
        assert payload["status"] == "pending"
        assert payload["source"] == PAYLOAD_SOURCE
        assert payload["created_at"] == payload["updated_at"]
        assert payload["attachments"] == [
            {"file_name": "a.pdf", "file_type": "application/pdf", "file_size": 3, "data": "QUJD"}
        ]
        assert payload["callback_url"].endswith("/job-1/result")

    def test_no_callback_url(self):
        payload = build_job_payload("job-1", "user-1", None, "Some situation")
        assert "callback_url" not in payload
        assert payload["attachments"] == []


class TestWebhookRelay:
    @pytest.mark.asyncio
    async def test_posts_payload(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(200, json={"accepted": True})

        relay = WebhookRelay(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "https://hook.example.com/x")
        await relay.send({"job_id": "job-1"})

        assert received == [{"job_id": "job-1"}]

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        relay = WebhookRelay(
            httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(502))),
            "https://hook.example.com/x",
        )

        with pytest.raises(WebhookRelayError) as exc_info:
            await relay.send({"job_id": "job-1"})

        assert exc_info.value.details == {"status_code": 502}

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        relay = WebhookRelay(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "https://hook.example.com/x")

        with pytest.raises(WebhookRelayError):
            await relay.send({"job_id": "job-1"})

    @pytest.mark.asyncio
    async def test_missing_url(self):
        relay = WebhookRelay(httpx.AsyncClient(), None)

        with pytest.raises(ConfigurationError):
            await relay.send({"job_id": "job-1"})
