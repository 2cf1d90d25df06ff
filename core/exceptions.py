"""
Error taxonomy for the analysis pipeline.

Every error carries a machine-readable ``code``. The submission orchestrator
catches these and turns them into failed job rows; the HTTP error middleware
maps any that escape a route to a status code.
"""

from typing import Any, Optional


class AnalysisError(Exception):
    """Base class for all analysis pipeline errors."""

    code = "ANALYSIS_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload = {"message": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class InputValidationError(AnalysisError):
    """Input too short or required identity fields missing. No job is created."""

    code = "VALIDATION_ERROR"
    status_code = 400


class DuplicateSubmission(InputValidationError):
    """The same user already has a submission in flight in this process."""

    code = "DUPLICATE_SUBMISSION"


class ConfigurationError(AnalysisError):
    """Missing credentials, or the model answered in an obsolete response shape."""

    code = "CONFIGURATION_ERROR"
    status_code = 500

    def __init__(self, message: str, *, remediation: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.remediation = remediation

    def __str__(self) -> str:
        if self.remediation:
            return f"{self.message}\n\n{self.remediation}"
        return self.message


# ==================== Upstream (remote model) ==================== #
class UpstreamError(AnalysisError):
    """Any failure talking to the remote model. Never retried."""

    code = "UPSTREAM_ERROR"
    status_code = 502


class ThreadCreationError(UpstreamError):
    code = "THREAD_CREATION_ERROR"


class MessageError(UpstreamError):
    code = "MESSAGE_ERROR"


class RunError(UpstreamError):
    """Run reached failed, cancelled or expired."""

    code = "RUN_ERROR"

    def __init__(self, message: str, *, run_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.run_status = run_status


class RunTimeout(UpstreamError):
    code = "RUN_TIMEOUT"
    status_code = 504


class NoResponseError(UpstreamError):
    code = "NO_RESPONSE"


class FileUploadError(UpstreamError):
    code = "FILE_UPLOAD_ERROR"


class VisionError(UpstreamError):
    code = "VISION_ERROR"


class WebhookRelayError(UpstreamError):
    code = "WEBHOOK_RELAY_ERROR"


# ==================== Parsing / persistence ==================== #
class ParseError(AnalysisError):
    """No JSON object could be located or decoded in the model output."""

    code = "PARSE_ERROR"
    status_code = 502


class PersistenceError(AnalysisError):
    """A job record write failed."""

    code = "PERSISTENCE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, after_model_call: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.after_model_call = after_model_call


# ==================== Watchers ==================== #
class JobNotFound(AnalysisError):
    code = "NOT_FOUND"
    status_code = 404


class PollingTimeout(AnalysisError):
    """Watcher exhausted its attempt budget."""

    code = "POLLING_TIMEOUT"
    status_code = 504

    def __init__(self, message: str, *, row_seen: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.row_seen = row_seen


class WatcherDatabaseError(AnalysisError):
    code = "DATABASE_ERROR"
    status_code = 503


class AnalysisFailed(AnalysisError):
    """The job reached a failed/error status; carries the stored error payload."""

    code = "ANALYSIS_FAILED"
    status_code = 422

    def __init__(self, message: str, *, error_payload: Optional[dict[str, Any]] = None, **kwargs):
        kwargs.setdefault("details", error_payload)
        super().__init__(message, **kwargs)
        self.error_payload = error_payload or {}
