"""
Submission orchestration.

``SubmissionOrchestrator.submit`` validates the input, creates the job rows,
hands the job to a strategy and persists the outcome:

    validating -> creating_records -> invoking_model -> parsing -> persisting -> done | failed

Two strategies share that flow. ``DirectAnalysisStrategy`` calls the
assistant itself and parses the answer. ``WebhookRelayStrategy`` posts the
job to the external automation, which runs the model and writes the result
back through the callback endpoint, then waits on a result watcher.

Errors never leave ``submit``: every fault marks both rows failed (known
pipeline errors) or error (anything unexpected) and comes back as an
unsuccessful ``SubmissionOutcome``.
"""

from dataclasses import dataclass, field
from typing import Any, Optional
import logging
import time
import uuid

import httpx

from api.services.job_store import AnalysisRecord, JobRecordStore, StoreResult, utcnow
from api.services.result_watcher import ResultWatcher
from core.config import Settings
from core.exceptions import (
    AnalysisError,
    AnalysisFailed,
    ConfigurationError,
    DuplicateSubmission,
    InputValidationError,
    ParseError,
    PersistenceError,
    UpstreamError,
)
from core.integrations.openai_assistant import AssistantClient
from core.integrations.openai_files import Attachment, OpenAIFilesClient
from core.integrations.webhook import WebhookRelay, build_job_payload
from core.parsers.analysis_response import (
    AnalysisResult,
    normalize_payload,
    parse_analysis_response,
    to_row_values,
)
from core.polling import Sleeper
from database.models.analyses import JobStatus

logger = logging.getLogger(__name__)

UPSTREAM_CHECKLIST = (
    "OPENAI_API_KEY is valid and has not expired or been revoked",
    "OPENAI_ASSISTANT_ID names an assistant in the same OpenAI project as the key",
    "The OpenAI account has remaining quota or credits",
    "The assistant's model is still available (https://status.openai.com)",
    "The assistant's instructions ask for the JSON analysis format",
)


def upstream_diagnostics(message: str) -> str:
    """Append the operator checklist to an upstream failure message."""
    checklist = "\n".join(f"- {item}" for item in UPSTREAM_CHECKLIST)
    return f"{message}\n\nLikely causes:\n{checklist}"


def error_payload(exc: BaseException, code: str) -> dict[str, Any]:
    return {
        "message": str(exc) or type(exc).__name__,
        "code": code,
        "timestamp": utcnow().isoformat(),
    }


def completed_patch(result: AnalysisResult, metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Analysis columns for a successfully parsed result."""
    patch = to_row_values(result)
    patch.update(
        {
            "status": JobStatus.COMPLETED,
            "is_ready": True,
            "error_json": None,
            "processing_completed_at": utcnow(),
        }
    )
    if metadata:
        patch.update({key: value for key, value in metadata.items() if value is not None})
    return patch


# ==================== Outcomes ==================== #
@dataclass
class SubmissionOutcome:
    """What ``submit`` returns; mirrors the HTTP response body."""

    success: bool
    job_id: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        if self.error_code in (InputValidationError.code, DuplicateSubmission.code):
            return 400
        return 500

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "jobId": self.job_id,
            "elapsedTime": self.elapsed_ms,
        }
        if self.data is not None:
            body["data"] = self.data
        if self.error is not None:
            body["error"] = self.error
            body["code"] = self.error_code
        return body


@dataclass(frozen=True)
class JobContext:
    job_id: str
    user_id: str
    user_email: Optional[str]
    input_text: str
    attachments: tuple[Attachment, ...] = ()


@dataclass
class StrategyResult:
    """Either a parsed result still to persist, or a record already persisted upstream."""

    result: Optional[AnalysisResult] = None
    record: Optional[AnalysisRecord] = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ==================== Strategies ==================== #
class AnalysisStrategy:
    name = "base"

    async def execute(self, job: JobContext) -> StrategyResult:
        raise NotImplementedError


class DirectAnalysisStrategy(AnalysisStrategy):
    """Call the assistant from this process and parse its answer."""

    name = "direct"

    def __init__(
        self,
        store: JobRecordStore,
        assistant: AssistantClient,
        files: Optional[OpenAIFilesClient] = None,
    ):
        self.store = store
        self.assistant = assistant
        self.files = files

    async def execute(self, job: JobContext) -> StrategyResult:
        self.assistant.require_credentials()

        prompt_text = job.input_text
        vector_store_id = None
        free_form = False
        if job.attachments:
            if self.files is None:
                raise ConfigurationError("Attachments were sent but file handling is not configured")
            prepared = await self.files.prepare_attachments(
                job.job_id, job.input_text, list(job.attachments)
            )
            prompt_text = prepared.prompt_text
            vector_store_id = prepared.vector_store_id
            free_form = True

        async def record_progress(step: str, context: dict[str, Any]) -> None:
            patch = {k: v for k, v in context.items() if k in ("thread_id", "run_id", "assistant_id")}
            if vector_store_id:
                patch["vector_store_id"] = vector_store_id
            updated = await self.store.update_analysis(job.job_id, patch)
            if not updated.success:
                logger.warning(f"Job {job.job_id}: could not record {step}: {updated.error}")

        response = await self.assistant.run_analysis(
            prompt_text,
            vector_store_id=vector_store_id,
            free_form=free_form,
            on_status=record_progress,
        )
        result = parse_analysis_response(response.content)
        logger.info(
            f"Job {job.job_id} parsed: P{result.power_score} G{result.gravity_score} R{result.risk_score}"
        )
        return StrategyResult(
            result=result,
            metadata={
                "thread_id": response.thread_id,
                "run_id": response.run_id,
                "vector_store_id": vector_store_id,
            },
        )


class WebhookRelayStrategy(AnalysisStrategy):
    """Hand the job to the automation webhook and wait for it to write the row."""

    name = "webhook"

    def __init__(self, relay: WebhookRelay, watcher: ResultWatcher, callback_url: Optional[str] = None):
        self.relay = relay
        self.watcher = watcher
        self.callback_url = callback_url

    async def execute(self, job: JobContext) -> StrategyResult:
        callback_url = None
        if self.callback_url:
            callback_url = self.callback_url.format(job_id=job.job_id)
        payload = build_job_payload(
            job.job_id,
            job.user_id,
            job.user_email,
            job.input_text,
            attachments=list(job.attachments),
            callback_url=callback_url,
        )
        await self.relay.send(payload)
        record = await self.watcher.wait_for_result(job.job_id)
        return StrategyResult(record=record)


# ==================== Duplicate guard ==================== #
class SubmissionLatch:
    """In-process guard against concurrent submits from the same user."""

    def __init__(self):
        self._active: set[str] = set()

    def acquire(self, key: str) -> bool:
        if key in self._active:
            return False
        self._active.add(key)
        return True

    def release(self, key: str) -> None:
        self._active.discard(key)

    def is_active(self, key: str) -> bool:
        return key in self._active


# ==================== Orchestrator ==================== #
class SubmissionOrchestrator:
    def __init__(
        self,
        store: JobRecordStore,
        strategy: AnalysisStrategy,
        min_input_length: int = 10,
        latch: Optional[SubmissionLatch] = None,
    ):
        self.store = store
        self.strategy = strategy
        self.min_input_length = min_input_length
        self.latch = latch

    def validate(self, input_text: Optional[str], user_id: Optional[str]) -> str:
        text = (input_text or "").strip()
        if len(text) < self.min_input_length:
            raise InputValidationError(
                f"Input text must be at least {self.min_input_length} characters"
            )
        if not user_id:
            raise InputValidationError("An authenticated user is required")
        return text

    async def submit(
        self,
        input_text: Optional[str],
        user_id: Optional[str],
        user_email: Optional[str] = None,
        attachments: Optional[list[Attachment]] = None,
    ) -> SubmissionOutcome:
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            text = self.validate(input_text, user_id)
        except InputValidationError as exc:
            logger.info(f"Submission rejected: {exc.message}")
            return SubmissionOutcome(
                success=False, error=exc.message, error_code=exc.code, elapsed_ms=elapsed()
            )

        if self.latch is not None and not self.latch.acquire(user_id):
            exc = DuplicateSubmission("A submission is already in progress for this user")
            return SubmissionOutcome(
                success=False, error=exc.message, error_code=exc.code, elapsed_ms=elapsed()
            )

        try:
            outcome = await self._run(text, user_id, user_email, list(attachments or []))
        finally:
            if self.latch is not None:
                self.latch.release(user_id)
        outcome.elapsed_ms = elapsed()
        return outcome

    async def _run(
        self,
        text: str,
        user_id: str,
        user_email: Optional[str],
        attachments: list[Attachment],
    ) -> SubmissionOutcome:
        job_id = str(uuid.uuid4())
        job = JobContext(job_id, user_id, user_email, text, tuple(attachments))
        logger.info(
            f"Job {job_id}: user={user_id} text={len(text)} chars files={len(attachments)} "
            f"mode={self.strategy.name}"
        )

        created = await self.store.create_job(
            analysis={
                "id": job_id,
                "user_id": user_id,
                "email": user_email,
                "input_text": text,
                "status": JobStatus.PROCESSING,
                "is_ready": False,
                "integration_mode": self.strategy.name,
                "processing_started_at": utcnow(),
            },
            submission={
                "id": str(uuid.uuid4()),
                "job_id": job_id,
                "user_id": user_id,
                "email": user_email,
                "input_text": text,
                "status": JobStatus.PENDING,
                "attachment_count": len(attachments),
            },
        )
        if not created.success:
            exc = PersistenceError(f"Failed to create job records: {created.error}")
            logger.error(f"Job {job_id}: {exc.message}")
            return SubmissionOutcome(success=False, error=exc.message, error_code=exc.code)

        await self.store.update_submission_by_job_id(job_id, {"status": JobStatus.PROCESSING})

        try:
            executed = await self.strategy.execute(job)
        except AnalysisError as exc:
            return await self._fail(job_id, JobStatus.FAILED, exc, exc.code)
        except Exception as exc:
            logger.exception(f"Job {job_id}: unexpected failure")
            return await self._fail(job_id, JobStatus.ERROR, exc, "INTERNAL_ERROR")

        if executed.record is not None:
            record = executed.record
        else:
            persisted = await self.store.update_analysis(
                job_id, completed_patch(executed.result, executed.metadata)
            )
            if not persisted.success:
                exc = PersistenceError(
                    f"Failed to save analysis result: {persisted.error}", after_model_call=True
                )
                logger.error(f"Job {job_id}: analysis result lost after model call: {persisted.error}")
                return await self._fail(job_id, JobStatus.FAILED, exc, exc.code)
            record = AnalysisRecord.from_values(persisted.data)

        await self.store.update_submission_by_job_id(
            job_id, {"status": JobStatus.COMPLETED, "error_json": None}
        )
        logger.info(f"Job {job_id} completed")
        return SubmissionOutcome(success=True, job_id=job_id, data=record.to_response())

    async def _fail(
        self,
        job_id: str,
        status: JobStatus,
        exc: BaseException,
        code: str,
    ) -> SubmissionOutcome:
        payload = error_payload(exc, code)
        if isinstance(exc, AnalysisFailed) and exc.error_payload:
            # failure already reported by the row's writer; keep its code and message
            payload.update(exc.error_payload)
        logger.error(f"Job {job_id} {status.value}: [{code}] {payload['message']}")

        for update in (
            self.store.update_analysis(
                job_id, {"status": status, "is_ready": False, "error_json": payload}
            ),
            self.store.update_submission_by_job_id(
                job_id, {"status": status, "error_json": payload}
            ),
        ):
            result = await update
            if not result.success:
                logger.error(f"Job {job_id}: failed to record {status.value} status: {result.error}")

        message = payload["message"]
        if isinstance(exc, UpstreamError):
            message = upstream_diagnostics(message)
        return SubmissionOutcome(success=False, job_id=job_id, error=message, error_code=code)


# ==================== Automation callback ==================== #
async def apply_callback_result(
    store: JobRecordStore,
    job_id: str,
    *,
    content: Optional[str] = None,
    payload: Optional[dict[str, Any]] = None,
    error: Optional[dict[str, Any]] = None,
) -> StoreResult[dict[str, Any]]:
    """
    Record the automation's outcome for a relayed job.

    Only a job still ``processing`` is updated; a second callback for the
    same job is refused.
    """
    if error is not None:
        failure = {
            "message": error.get("message") or "Automation reported a failure",
            "code": error.get("code") or "AUTOMATION_ERROR",
            "timestamp": utcnow().isoformat(),
        }
        return await _record_failure(store, job_id, failure)

    try:
        if content is not None:
            result = parse_analysis_response(content)
        else:
            result = normalize_payload(payload if payload is not None else {})
    except (ParseError, ConfigurationError) as exc:
        return await _record_failure(store, job_id, error_payload(exc, exc.code))

    updated = await store.update_analysis(
        job_id, completed_patch(result), expected_status=JobStatus.PROCESSING
    )
    if updated.success:
        await store.update_submission_by_job_id(job_id, {"status": JobStatus.COMPLETED})
    return updated


async def _record_failure(
    store: JobRecordStore,
    job_id: str,
    failure: dict[str, Any],
) -> StoreResult[dict[str, Any]]:
    updated = await store.update_analysis(
        job_id,
        {"status": JobStatus.FAILED, "is_ready": False, "error_json": failure},
        expected_status=JobStatus.PROCESSING,
    )
    if updated.success:
        await store.update_submission_by_job_id(
            job_id, {"status": JobStatus.FAILED, "error_json": failure}
        )
    return updated


def callback_url_template(settings: Settings) -> Optional[str]:
    if not settings.public_base_url:
        return None
    base = settings.public_base_url.rstrip("/")
    return f"{base}{settings.api_v1_prefix}/analyses/{{job_id}}/result"


def build_strategy(
    settings: Settings,
    store: JobRecordStore,
    http_client: httpx.AsyncClient,
    watcher: ResultWatcher,
    sleeper: Optional[Sleeper] = None,
) -> AnalysisStrategy:
    """Strategy for the configured integration mode."""
    if settings.integration_mode == "webhook":
        relay = WebhookRelay(http_client, settings.webhook_url, timeout=settings.openai_request_timeout)
        return WebhookRelayStrategy(relay, watcher, callback_url=callback_url_template(settings))
    return DirectAnalysisStrategy(
        store,
        AssistantClient.from_settings(http_client, settings, sleeper=sleeper),
        OpenAIFilesClient.from_settings(http_client, settings, sleeper=sleeper),
    )
