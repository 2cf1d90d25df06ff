"""FastAPI dependencies for dependency injection.

Everything is built once in the application lifespan and kept on
``app.state``; these accessors hand it to the routes.
"""

from fastapi import Request

from api.services.action_items import ActionItemTracker
from api.services.job_store import JobRecordStore
from api.services.result_watcher import ResultPoller, RealtimeWatcher
from api.services.submissions import SubmissionOrchestrator
from core.config import Settings
from database.engine import Database


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_job_store(request: Request) -> JobRecordStore:
    return request.app.state.job_store


def get_orchestrator(request: Request) -> SubmissionOrchestrator:
    return request.app.state.orchestrator


def get_action_item_tracker(request: Request) -> ActionItemTracker:
    return request.app.state.action_items


def get_result_poller(request: Request) -> ResultPoller:
    return request.app.state.result_poller


def get_realtime_watcher(request: Request) -> RealtimeWatcher:
    return request.app.state.realtime_watcher
