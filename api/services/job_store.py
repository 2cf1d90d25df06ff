"""
Job record store: create/update/read over the analyses and submissions tables.

Every operation returns a ``StoreResult`` instead of raising, so callers
decide whether a failure is fatal or just "not ready yet". A missing row is
reported with ``not_found=True`` and is distinct from a database error.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Iterable, Optional, TypeVar, Union
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from core.change_feed import ChangeEvent, ChangeFeed
from core.parsers.analysis_response import AnalysisResult, result_from_row
from database.engine import Database
from database.models.analyses import Analysis, JobStatus
from database.models.submissions import Submission

logger = logging.getLogger(__name__)

T = TypeVar("T")

StatusLike = Union[str, JobStatus]

ANALYSIS_COLUMNS = frozenset(Analysis.__table__.columns.keys())
SUBMISSION_COLUMNS = frozenset(Submission.__table__.columns.keys())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoreResult(Generic[T]):
    """Outcome of one store operation."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    not_found: bool = False

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "StoreResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "StoreResult[T]":
        return cls(success=False, error=error)

    @classmethod
    def missing(cls, error: str) -> "StoreResult[T]":
        return cls(success=False, error=error, not_found=True)


@dataclass(frozen=True)
class AnalysisRecord:
    """An analyses row with its result fields normalized."""

    id: str
    user_id: str
    input_text: str
    status: str
    is_ready: bool
    result: AnalysisResult
    email: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Analysis) -> "AnalysisRecord":
        return cls.from_values(row.to_dict())

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> "AnalysisRecord":
        return cls(
            id=values["id"],
            user_id=values["user_id"],
            input_text=values.get("input_text") or "",
            status=values.get("status") or JobStatus.PENDING.value,
            is_ready=bool(values.get("is_ready")),
            result=result_from_row(values),
            email=values.get("email"),
            error=values.get("error_json"),
            created_at=values.get("created_at"),
            updated_at=values.get("updated_at"),
            processing_completed_at=values.get("processing_completed_at"),
            extra={
                key: values.get(key)
                for key in ("thread_id", "run_id", "assistant_id", "vector_store_id", "integration_mode")
            },
        )

    @property
    def is_completed(self) -> bool:
        return self.is_ready and self.status == JobStatus.COMPLETED.value

    @property
    def is_failed(self) -> bool:
        return self.status in (JobStatus.FAILED.value, JobStatus.ERROR.value)

    def to_response(self) -> dict[str, Any]:
        """camelCase view for the UI."""
        return {
            "id": self.id,
            "jobId": self.id,
            "userId": self.user_id,
            "title": self.result.title,
            "inputText": self.input_text,
            "status": self.status,
            "isReady": self.is_ready,
            "error": self.error,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "processedAt": (
                self.processing_completed_at.isoformat() if self.processing_completed_at else None
            ),
            **self.result.model_dump(by_alias=True),
        }


def _clean_patch(patch: dict[str, Any], columns: frozenset[str]) -> dict[str, Any]:
    unknown = set(patch) - columns
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")
    return {
        key: value.value if isinstance(value, JobStatus) else value
        for key, value in patch.items()
    }


def _status_values(expected: Union[StatusLike, Iterable[StatusLike]]) -> set[str]:
    if isinstance(expected, (str, JobStatus)):
        expected = [expected]
    return {s.value if isinstance(s, JobStatus) else s for s in expected}


class JobRecordStore:
    """Thin data access over the job tables; never raises."""

    def __init__(self, database: Database, change_feed: Optional[ChangeFeed] = None):
        self.database = database
        self.change_feed = change_feed

    # ==================== creates ==================== #
    async def create_analysis(self, payload: dict[str, Any]) -> StoreResult[dict[str, Any]]:
        try:
            values = _clean_patch(payload, ANALYSIS_COLUMNS)
            now = utcnow()
            values.setdefault("created_at", now)
            values["updated_at"] = now
            async with self.database.session() as session:
                row = Analysis(**values)
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return StoreResult.ok(row.to_dict())
        except (SQLAlchemyError, OSError, ValueError, TypeError) as exc:
            logger.error(f"Failed to create analysis {payload.get('id')}: {exc}")
            return StoreResult.fail(str(exc))

    async def create_submission(self, payload: dict[str, Any]) -> StoreResult[dict[str, Any]]:
        """Insert a submission row. Its ``job_id`` must reference an existing analysis."""
        try:
            values = _clean_patch(payload, SUBMISSION_COLUMNS)
            now = utcnow()
            values.setdefault("created_at", now)
            values["updated_at"] = now
            async with self.database.session() as session:
                row = Submission(**values)
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return StoreResult.ok(row.to_dict())
        except (SQLAlchemyError, OSError, ValueError, TypeError) as exc:
            logger.error(f"Failed to create submission for job {payload.get('job_id')}: {exc}")
            return StoreResult.fail(str(exc))

    async def create_job(
        self,
        analysis: dict[str, Any],
        submission: dict[str, Any],
    ) -> StoreResult[dict[str, Any]]:
        """Create the analysis and submission rows in one transaction."""
        try:
            analysis_values = _clean_patch(analysis, ANALYSIS_COLUMNS)
            submission_values = _clean_patch(submission, SUBMISSION_COLUMNS)
            now = utcnow()
            for values in (analysis_values, submission_values):
                values.setdefault("created_at", now)
                values["updated_at"] = now

            async with self.database.session() as session:
                async with session.begin():
                    analysis_row = Analysis(**analysis_values)
                    session.add(analysis_row)
                    await session.flush()
                    submission_row = Submission(**submission_values)
                    session.add(submission_row)
                await session.refresh(analysis_row)
                await session.refresh(submission_row)
                return StoreResult.ok(
                    {"analysis": analysis_row.to_dict(), "submission": submission_row.to_dict()}
                )
        except (SQLAlchemyError, OSError, ValueError, TypeError) as exc:
            logger.error(f"Failed to create job records for {analysis.get('id')}: {exc}")
            return StoreResult.fail(str(exc))

    # ==================== updates ==================== #
    async def update_analysis(
        self,
        job_id: str,
        patch: dict[str, Any],
        expected_status: Optional[Union[StatusLike, Iterable[StatusLike]]] = None,
    ) -> StoreResult[dict[str, Any]]:
        """
        Apply ``patch`` to the analysis row and publish a change event.

        With ``expected_status`` the update is refused unless the row is
        currently in one of those statuses.
        """
        try:
            values = _clean_patch(patch, ANALYSIS_COLUMNS)
            async with self.database.session() as session:
                row = await session.get(Analysis, job_id)
                if row is None:
                    return StoreResult.missing(f"Analysis {job_id} not found")
                if expected_status is not None and row.status not in _status_values(expected_status):
                    return StoreResult.fail(
                        f"Analysis {job_id} is {row.status}, expected {sorted(_status_values(expected_status))}"
                    )
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = utcnow()
                await session.commit()
                data = row.to_dict()
        except (SQLAlchemyError, OSError, ValueError, TypeError) as exc:
            logger.error(f"Failed to update analysis {job_id}: {exc}")
            return StoreResult.fail(str(exc))

        await self._publish(data)
        return StoreResult.ok(data)

    async def update_submission_by_job_id(
        self,
        job_id: str,
        patch: dict[str, Any],
        expected_status: Optional[Union[StatusLike, Iterable[StatusLike]]] = None,
    ) -> StoreResult[dict[str, Any]]:
        try:
            values = _clean_patch(patch, SUBMISSION_COLUMNS)
            async with self.database.session() as session:
                result = await session.execute(select(Submission).where(Submission.job_id == job_id))
                row = result.scalar_one_or_none()
                if row is None:
                    return StoreResult.missing(f"Submission for job {job_id} not found")
                if expected_status is not None and row.status not in _status_values(expected_status):
                    return StoreResult.fail(
                        f"Submission for job {job_id} is {row.status}, expected {sorted(_status_values(expected_status))}"
                    )
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = utcnow()
                await session.commit()
                return StoreResult.ok(row.to_dict())
        except (SQLAlchemyError, OSError, ValueError, TypeError) as exc:
            logger.error(f"Failed to update submission for job {job_id}: {exc}")
            return StoreResult.fail(str(exc))

    # ==================== reads ==================== #
    async def get_analysis_by_id(self, job_id: str) -> StoreResult[AnalysisRecord]:
        try:
            async with self.database.session() as session:
                row = await session.get(Analysis, job_id)
                if row is None:
                    return StoreResult.missing(f"Analysis {job_id} not found")
                return StoreResult.ok(AnalysisRecord.from_row(row))
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"Failed to read analysis {job_id}: {exc}")
            return StoreResult.fail(str(exc))

    async def get_ready_analysis(self, job_id: str) -> StoreResult[AnalysisRecord]:
        """The analysis only once ``is_ready`` is set; otherwise ``not_found``."""
        try:
            async with self.database.session() as session:
                query = select(Analysis).where(Analysis.id == job_id, Analysis.is_ready.is_(True))
                row = (await session.execute(query)).scalar_one_or_none()
                if row is None:
                    return StoreResult.missing(f"No ready analysis {job_id}")
                return StoreResult.ok(AnalysisRecord.from_row(row))
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"Failed to read analysis {job_id}: {exc}")
            return StoreResult.fail(str(exc))

    async def get_analyses_by_user_id(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> StoreResult[list[AnalysisRecord]]:
        """Analyses of one user, newest first. An empty history is a success."""
        try:
            async with self.database.session() as session:
                query = (
                    select(Analysis)
                    .where(Analysis.user_id == user_id)
                    .order_by(Analysis.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
                result = await session.execute(query)
                return StoreResult.ok([AnalysisRecord.from_row(row) for row in result.scalars().all()])
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"Failed to list analyses for user {user_id}: {exc}")
            return StoreResult.fail(str(exc))

    async def get_submission_by_job_id(self, job_id: str) -> StoreResult[dict[str, Any]]:
        try:
            async with self.database.session() as session:
                result = await session.execute(select(Submission).where(Submission.job_id == job_id))
                row = result.scalar_one_or_none()
                if row is None:
                    return StoreResult.missing(f"Submission for job {job_id} not found")
                return StoreResult.ok(row.to_dict())
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"Failed to read submission for job {job_id}: {exc}")
            return StoreResult.fail(str(exc))

    async def _publish(self, row: dict[str, Any]) -> None:
        if self.change_feed is None:
            return
        event = ChangeEvent(
            job_id=row["id"],
            status=row.get("status"),
            is_ready=bool(row.get("is_ready")),
            error=row.get("error_json"),
        )
        try:
            await self.change_feed.publish(event)
        except Exception as exc:
            # the row is already committed; watchers fall back to their initial read
            logger.warning(f"Failed to publish change event for {row['id']}: {exc}")
