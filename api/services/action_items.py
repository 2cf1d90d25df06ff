"""Action-item checklist derived from the strategic moves of a completed analysis."""

from typing import Any, Iterable, Mapping, Optional, Union
import logging
import math
import re
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.services.job_store import StoreResult, utcnow
from database.engine import Database
from database.models.action_items import ActionItem, ActionSection

logger = logging.getLogger(__name__)

SECTIONS = tuple(section.value for section in ActionSection)

# "• ", "- ", "* ", "1. ", "2) "
_MARKER_RE = re.compile(r"^\s*(?:[•\-*]|\d+[.)])\s*")

ItemLike = Union[ActionItem, Mapping[str, Any]]


def parse_action_steps(text: Optional[str]) -> list[str]:
    """Split a move field into steps, one per non-empty line, markers removed."""
    if not text:
        return []
    steps = []
    for line in text.splitlines():
        step = _MARKER_RE.sub("", line, count=1).strip()
        if step:
            steps.append(step)
    return steps


def _percent(done: int, total: int) -> int:
    if total == 0:
        return 0
    return math.floor(done * 100 / total + 0.5)


def _field(item: ItemLike, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name)


def completion_percent_by_section(items: Iterable[ItemLike]) -> dict[str, int]:
    """Percent complete for each of the four sections; an empty section is 0."""
    totals = {section: 0 for section in SECTIONS}
    done = {section: 0 for section in SECTIONS}
    for item in items:
        section = _field(item, "section")
        if section not in totals:
            continue
        totals[section] += 1
        if _field(item, "completed"):
            done[section] += 1
    return {section: _percent(done[section], totals[section]) for section in SECTIONS}


def overall_completion_percent(items: Iterable[ItemLike]) -> int:
    """Done/total across all sections, 0 when there are no items."""
    items = list(items)
    done = sum(1 for item in items if _field(item, "completed"))
    return _percent(done, len(items))


class ActionItemTracker:
    def __init__(self, database: Database):
        self.database = database

    async def list_items(self, analysis_id: str) -> StoreResult[list[dict[str, Any]]]:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    select(ActionItem)
                    .where(ActionItem.analysis_id == analysis_id)
                    .order_by(ActionItem.section, ActionItem.step_index)
                )
                rows = result.scalars().all()
                return StoreResult.ok(self._in_section_order([row.to_dict() for row in rows]))
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"Failed to list action items for {analysis_id}: {exc}")
            return StoreResult.fail(str(exc))

    async def ensure_items(
        self,
        analysis_id: str,
        user_id: str,
        move_fields: Mapping[str, Optional[str]],
    ) -> StoreResult[list[dict[str, Any]]]:
        """
        Create the checklist for an analysis unless it already exists.

        Idempotent: when any item exists for ``analysis_id`` the existing
        items are returned and nothing is written.
        """
        existing = await self.list_items(analysis_id)
        if not existing.success or existing.data:
            return existing

        now = utcnow()
        rows = [
            ActionItem(
                id=str(uuid.uuid4()),
                analysis_id=analysis_id,
                user_id=user_id,
                section=section,
                step_index=index,
                step_text=step,
                completed=False,
                created_at=now,
                updated_at=now,
            )
            for section in SECTIONS
            for index, step in enumerate(parse_action_steps(move_fields.get(section)))
        ]
        if not rows:
            return StoreResult.ok([])

        try:
            async with self.database.session() as session:
                session.add_all(rows)
                await session.commit()
        except IntegrityError:
            # a concurrent ensure_items call created them first
            logger.info(f"Action items for {analysis_id} already created")
            return await self.list_items(analysis_id)
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"Failed to create action items for {analysis_id}: {exc}")
            return StoreResult.fail(str(exc))

        logger.info(f"Created {len(rows)} action items for {analysis_id}")
        return await self.list_items(analysis_id)

    async def toggle(
        self,
        item_id: str,
        completed: bool,
        user_id: Optional[str] = None,
    ) -> StoreResult[dict[str, Any]]:
        """
        Set the completed flag.

        ``completed_at`` records the first transition to completed; repeating
        a completion keeps it, un-completing clears it.
        """
        try:
            async with self.database.session() as session:
                row = await session.get(ActionItem, item_id)
                if row is None or (user_id is not None and row.user_id != user_id):
                    return StoreResult.missing(f"Action item {item_id} not found")
                if not completed:
                    row.completed_at = None
                elif not row.completed or row.completed_at is None:
                    row.completed_at = utcnow()
                row.completed = completed
                row.updated_at = utcnow()
                await session.commit()
                return StoreResult.ok(row.to_dict())
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"Failed to toggle action item {item_id}: {exc}")
            return StoreResult.fail(str(exc))

    @staticmethod
    def _in_section_order(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        order = {section: position for position, section in enumerate(SECTIONS)}
        return sorted(items, key=lambda item: (order.get(item["section"], len(order)), item["step_index"]))
