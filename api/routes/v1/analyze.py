"""Submission endpoint used by the UI."""

import logging
from typing import Callable
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from api.dependencies import get_orchestrator
from api.schemas.analysis import AnalyzeRequest
from api.services.submissions import SubmissionOrchestrator, SubmissionOutcome
from core.exceptions import InputValidationError
from core.middleware.error_handling import format_validation_errors

logger = logging.getLogger(__name__)


def invalid_body_outcome(exc: RequestValidationError) -> SubmissionOutcome:
    problems = "; ".join(
        f"{error['field']}: {error['message']}" for error in format_validation_errors(exc)
    )
    return SubmissionOutcome(
        success=False,
        error=f"Invalid request body: {problems}",
        error_code=InputValidationError.code,
    )


class SubmissionRoute(APIRoute):
    """Reports a malformed body as a rejected submission (400) instead of a 422 envelope."""

    def get_route_handler(self) -> Callable:
        original_handler = super().get_route_handler()

        async def handler(request: Request) -> Response:
            try:
                return await original_handler(request)
            except RequestValidationError as exc:
                outcome = invalid_body_outcome(exc)
                logger.warning(f"Rejected submission body: {outcome.error}")
                return JSONResponse(status_code=outcome.status_code, content=outcome.to_response())

        return handler


router = APIRouter(route_class=SubmissionRoute)


@router.options("/analyze", include_in_schema=False)
async def analyze_preflight() -> Response:
    """CORS preflight; the CORS middleware adds the headers."""
    return Response(status_code=status.HTTP_200_OK)


@router.post(
    "/analyze",
    summary="Analyze a situation",
    description="Run one analysis job end to end and return the normalized result",
)
async def analyze(
    request: AnalyzeRequest,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Submit a situation for analysis.

    - **inputText** (or legacy **prompt**): at least 10 characters
    - **userId**: owner of the job
    - **userEmail**: optional
    - **files**: optional list of `{name, type, size, data}` with base64 data

    Responds 200 with `{success, jobId, elapsedTime, data}`, 400 when the
    input is rejected before a job exists, and 500 with `{success: false,
    error}` for any failure after that.
    """
    outcome = await orchestrator.submit(
        request.text,
        request.user_id,
        user_email=request.user_email,
        attachments=request.attachments(),
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_response())
