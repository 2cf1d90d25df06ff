"""OpenAI Assistants integration: thread, message, run, poll, fetch."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
import logging

import httpx

from core.config import Settings
from core.exceptions import (
    ConfigurationError,
    MessageError,
    NoResponseError,
    RunError,
    RunTimeout,
    ThreadCreationError,
    UpstreamError,
)
from core.polling import AsyncioSleeper, PollSchedule, Sleeper

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
BETA_HEADER = "assistants=v2"

RUN_COMPLETED = "completed"
RUN_FAILURE_STATUSES = frozenset({"failed", "cancelled", "expired"})

JSON_INSTRUCTION = (
    "\n\nPlease analyze this situation and respond in JSON format with all required fields."
)


def _string(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def _number(description: str) -> dict[str, str]:
    return {"type": "number", "description": description}


def _string_list(description: str) -> dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}, "description": description}


def _strict_object(properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
        "additionalProperties": False,
    }


# Strict schema for runs without attachments. Every property is required.
ANALYSIS_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "situation_analysis",
        "strict": True,
        "schema": _strict_object(
            {
                "power": _number("Power dynamics score (0-100)"),
                "gravity": _number("Gravity/seriousness score (0-100)"),
                "risk": _number("Risk/danger score (0-100)"),
                "issue_confidence_pct": _number("Confidence in analysis (0-100)"),
                "tl_dr": _string("One-sentence summary"),
                "snapshot": _string("Quick snapshot (2-3 sentences)"),
                "whats_happening": _string("What's actually happening"),
                "why_it_matters": _string("Why this matters"),
                "narrative_summary": _string("Full narrative"),
                "moves": _strict_object(
                    {
                        "immediate_action": _string_list("Immediate tactical moves"),
                        "strategic_tool": _string_list("Strategic tools to use"),
                        "analytical_check": _string_list("Things to verify"),
                        "long_term_fix": _string_list("Long-term solutions"),
                    }
                ),
                "explanations": _strict_object(
                    {
                        "power": _string("Why this power score"),
                        "gravity": _string("Why this gravity score"),
                        "risk": _string("Why this risk score"),
                    }
                ),
                "definitions": _strict_object(
                    {
                        "power": _string("What power means here"),
                        "gravity": _string("What gravity means here"),
                        "risk": _string("What risk means here"),
                    }
                ),
                "issue_type": _string("Type of issue"),
                "issue_category": _string("Category"),
                "issue_layer": _string("Which layer"),
            }
        ),
    },
}


@dataclass(frozen=True)
class AssistantResponse:
    """Raw assistant output plus the identifiers of the run that produced it."""

    content: str
    thread_id: str
    run_id: str


StatusCallback = Callable[[str, dict[str, Any]], Awaitable[None]]


def upstream_error_detail(response: httpx.Response) -> str:
    """Best-effort upstream error message from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message") or str(body["error"])
    return str(body)


async def send_openai_request(
    http_client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    error_cls: type[UpstreamError],
    action: str,
    timeout: float,
    **kwargs: Any,
) -> dict[str, Any]:
    """Send one API request, mapping transport and HTTP errors to ``error_cls``."""
    try:
        response = await http_client.request(method, url, headers=headers, timeout=timeout, **kwargs)
    except httpx.HTTPError as exc:
        raise error_cls(f"Failed to {action}: {exc}") from exc

    if response.is_error:
        raise error_cls(
            f"Failed to {action}: {upstream_error_detail(response)}",
            details={"status_code": response.status_code},
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise error_cls(
            f"Failed to {action}: upstream returned a non-JSON reply",
            details={"status_code": response.status_code},
        ) from exc
    if not isinstance(body, dict):
        raise error_cls(
            f"Failed to {action}: unexpected reply {type(body).__name__}",
            details={"status_code": response.status_code},
        )
    return body


def required_id(body: dict[str, Any], error_cls: type[UpstreamError], action: str) -> str:
    """The ``id`` of a created object; a reply without one is an upstream fault."""
    object_id = body.get("id")
    if not isinstance(object_id, str) or not object_id:
        raise error_cls(f"Failed to {action}: reply carried no id")
    return object_id


class AssistantClient:
    """
    Client for one pre-configured assistant.

    ``run_analysis`` performs the full sequence: create a thread, post the
    user's message, start a run (with the strict response schema, or with a
    temporary vector store when attachments were indexed), poll the run and
    fetch the assistant's answer.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        assistant_id: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        schedule: Optional[PollSchedule] = None,
        sleeper: Optional[Sleeper] = None,
        timeout: float = 30.0,
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.assistant_id = assistant_id
        self.base_url = base_url.rstrip("/")
        self.schedule = schedule or PollSchedule(interval=2.0, max_attempts=60)
        self.sleeper = sleeper or AsyncioSleeper()
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls,
        http_client: httpx.AsyncClient,
        settings: Settings,
        sleeper: Optional[Sleeper] = None,
    ) -> "AssistantClient":
        return cls(
            http_client,
            api_key=settings.openai_api_key,
            assistant_id=settings.openai_assistant_id,
            base_url=settings.openai_base_url,
            schedule=PollSchedule(
                interval=settings.assistant_poll_interval,
                max_attempts=settings.assistant_max_poll_attempts,
            ),
            sleeper=sleeper,
            timeout=settings.openai_request_timeout,
        )

    # ==================== plumbing ==================== #
    def require_credentials(self) -> None:
        """Raise ``ConfigurationError`` when the key or assistant id is missing."""
        if not self.api_key:
            raise ConfigurationError(
                "OpenAI API key not configured",
                remediation="Set OPENAI_API_KEY (or VITE_OPENAI_API_KEY) in the environment.",
            )
        if not self.assistant_id:
            raise ConfigurationError(
                "OpenAI Assistant ID not configured",
                remediation=(
                    "1. Get the assistant id from https://platform.openai.com/assistants\n"
                    "2. Set OPENAI_ASSISTANT_ID (or VITE_OPENAI_ASSISTANT_ID) in the environment"
                ),
            )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": BETA_HEADER,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        error_cls: type[UpstreamError],
        action: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        return await send_openai_request(
            self.http_client,
            method,
            f"{self.base_url}{path}",
            headers=self._headers(),
            error_cls=error_cls,
            action=action,
            timeout=self.timeout,
            **kwargs,
        )

    # ==================== steps ==================== #
    async def create_thread(self) -> str:
        thread = await self._request("POST", "/threads", ThreadCreationError, "create thread", json={})
        thread_id = required_id(thread, ThreadCreationError, "create thread")
        logger.info(f"Thread created: {thread_id}")
        return thread_id

    async def post_message(self, thread_id: str, content: str, free_form: bool = False) -> str:
        """
        Post the user's message.

        Free-form runs rely on the prompt alone for JSON output, so the
        message carries an explicit JSON instruction.
        """
        if free_form:
            content = f"{content}{JSON_INSTRUCTION}"
        message = await self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            MessageError,
            "add message",
            json={"role": "user", "content": content},
        )
        return message.get("id", "")

    async def start_run(
        self,
        thread_id: str,
        vector_store_id: Optional[str] = None,
        free_form: bool = False,
    ) -> str:
        """Start a run; schema mode unless free-form or a vector store is attached."""
        payload: dict[str, Any] = {"assistant_id": self.assistant_id}
        if vector_store_id:
            payload["tool_resources"] = {"file_search": {"vector_store_ids": [vector_store_id]}}
        elif not free_form:
            payload["response_format"] = ANALYSIS_RESPONSE_SCHEMA

        run = await self._request(
            "POST", f"/threads/{thread_id}/runs", RunError, "run assistant", json=payload
        )
        run_id = required_id(run, RunError, "run assistant")
        logger.info(f"Run started: {run_id} (free_form={free_form or bool(vector_store_id)})")
        return run_id

    async def get_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"/threads/{thread_id}/runs/{run_id}", RunError, "check run status"
        )

    async def wait_for_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        """
        Poll the run until it completes.

        Raises:
            RunError: the run reached failed, cancelled or expired
            RunTimeout: attempts exhausted without a terminal status
        """
        max_attempts = self.schedule.max_attempts
        for attempt in range(1, max_attempts + 1):
            run = await self.get_run(thread_id, run_id)
            status = run.get("status")

            if status == RUN_COMPLETED:
                logger.info(f"Run {run_id} completed after {attempt} attempt(s)")
                return run

            if status in RUN_FAILURE_STATUSES:
                last_error = run.get("last_error") or {}
                raise RunError(
                    f"Assistant run {status}: {last_error.get('message') or 'Unknown error'}",
                    run_status=status,
                    details={"run_id": run_id, "last_error": last_error},
                )

            logger.debug(f"Run {run_id} status: {status} (attempt {attempt}/{max_attempts})")
            if attempt < max_attempts:
                await self.sleeper.sleep(self.schedule.delay_after(attempt))

        raise RunTimeout(
            f"Assistant run timeout after {max_attempts} attempts",
            details={"run_id": run_id, "thread_id": thread_id},
        )

    async def fetch_response_text(self, thread_id: str) -> str:
        """Text of the most recent assistant message, text blocks newline-joined."""
        messages = await self._request(
            "GET",
            f"/threads/{thread_id}/messages",
            NoResponseError,
            "retrieve messages",
            params={"order": "desc", "limit": 10},
        )
        assistant_message = next(
            (m for m in messages.get("data") or [] if isinstance(m, dict) and m.get("role") == "assistant"),
            None,
        )
        if assistant_message is None:
            raise NoResponseError("No assistant response found")

        texts = [
            block["text"]["value"]
            for block in assistant_message.get("content") or []
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), dict)
            and isinstance(block["text"].get("value"), str)
        ]
        if not texts:
            raise NoResponseError("Assistant response contained no text content")
        return "\n".join(texts)

    async def run_analysis(
        self,
        input_text: str,
        vector_store_id: Optional[str] = None,
        free_form: Optional[bool] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> AssistantResponse:
        """
        Run the assistant on one situation.

        ``on_status`` is awaited between steps with a status name and context,
        for callers that record progress on the job row. Runs with a vector
        store are always free-form.
        """
        self.require_credentials()
        if free_form is None or vector_store_id:
            free_form = bool(vector_store_id)

        thread_id = await self.create_thread()
        if on_status:
            await on_status("thread_created", {"thread_id": thread_id})

        await self.post_message(thread_id, input_text, free_form=free_form)

        run_id = await self.start_run(thread_id, vector_store_id, free_form=free_form)
        if on_status:
            await on_status(
                "run_started",
                {"thread_id": thread_id, "run_id": run_id, "assistant_id": self.assistant_id},
            )

        await self.wait_for_run(thread_id, run_id)
        content = await self.fetch_response_text(thread_id)
        logger.info(f"Assistant response received ({len(content)} chars)")
        return AssistantResponse(content=content, thread_id=thread_id, run_id=run_id)

    async def verify_assistant(self) -> dict[str, Any]:
        """Fetch the configured assistant; surfaces a wrong id or key early."""
        self.require_credentials()
        assistant = await self._request(
            "GET", f"/assistants/{self.assistant_id}", UpstreamError, "retrieve assistant"
        )
        return {
            "id": assistant.get("id"),
            "name": assistant.get("name"),
            "model": assistant.get("model"),
            "tools": [tool.get("type") for tool in assistant.get("tools", [])],
        }
