"""
API Services Layer.

Job persistence, submission orchestration, result watching and the
action-item checklist used by the API routes.
"""

from api.services.job_store import (
    AnalysisRecord,
    JobRecordStore,
    StoreResult,
)

from api.services.submissions import (
    DirectAnalysisStrategy,
    SubmissionLatch,
    SubmissionOrchestrator,
    SubmissionOutcome,
    WebhookRelayStrategy,
    apply_callback_result,
    build_strategy,
)

from api.services.result_watcher import (
    RealtimeWatcher,
    ResultPoller,
    ResultWatcher,
    WatchHandle,
)

from api.services.action_items import (
    ActionItemTracker,
    completion_percent_by_section,
    overall_completion_percent,
    parse_action_steps,
)

__all__ = [
    # Job store
    "AnalysisRecord",
    "JobRecordStore",
    "StoreResult",
    # Submissions
    "DirectAnalysisStrategy",
    "SubmissionLatch",
    "SubmissionOrchestrator",
    "SubmissionOutcome",
    "WebhookRelayStrategy",
    "apply_callback_result",
    "build_strategy",
    # Result watching
    "RealtimeWatcher",
    "ResultPoller",
    "ResultWatcher",
    "WatchHandle",
    # Action items
    "ActionItemTracker",
    "completion_percent_by_section",
    "overall_completion_percent",
    "parse_action_steps",
]
