"""Read surface for displaying the activity log.

Results are ordered by chain position, newest first, and paginated with
a keyset cursor on ``sequence`` so concurrent appends never shift a page.
No integrity checking happens here.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.orm import sessionmaker

from activitylog.chain.entry import ActivityEntry
from activitylog.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from activitylog.storage.models import ActivityRecord


class ActivityFilters(BaseModel):
    actor_id: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    search: Optional[str] = None


class ActivityPage(BaseModel):
    items: List[ActivityEntry]
    total: int
    # pass as ``before`` to get the next (older) page
    next_before: Optional[int] = None


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_ESCAPE = "\\"


def _contains(text: str) -> str:
    """LIKE pattern matching *text* literally anywhere in a value."""
    for ch in (_ESCAPE, "%", "_"):
        text = text.replace(ch, _ESCAPE + ch)
    return f"%{text.strip()}%"


def _conditions(filters: ActivityFilters) -> list:
    conditions = []
    if filters.actor_id:
        conditions.append(ActivityRecord.actor_id == filters.actor_id)
    if filters.action:
        conditions.append(ActivityRecord.action == filters.action)
    if filters.resource:
        conditions.append(ActivityRecord.resource == filters.resource)
    if filters.start:
        conditions.append(ActivityRecord.created_at >= _utc(filters.start))
    if filters.end:
        conditions.append(ActivityRecord.created_at <= _utc(filters.end))
    if filters.search:
        pattern = _contains(filters.search)
        conditions.append(
            or_(
                ActivityRecord.action.ilike(pattern, escape=_ESCAPE),
                ActivityRecord.resource.ilike(pattern, escape=_ESCAPE),
                ActivityRecord.resource_id.ilike(pattern, escape=_ESCAPE),
                ActivityRecord.actor_id.ilike(pattern, escape=_ESCAPE),
                cast(ActivityRecord.actor, String).ilike(pattern, escape=_ESCAPE),
                cast(ActivityRecord.target, String).ilike(pattern, escape=_ESCAPE),
                cast(ActivityRecord.meta, String).ilike(pattern, escape=_ESCAPE),
            )
        )
    return conditions


class ActivityQuery:
    """Filtered, paginated retrieval of activity entries."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def find_page(
        self,
        filters: ActivityFilters | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        before: int | None = None,
    ) -> ActivityPage:
        filters = filters or ActivityFilters()
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        conditions = _conditions(filters)

        with self._session_factory() as session:
            total = session.scalar(select(func.count()).select_from(ActivityRecord).where(*conditions)) or 0

            stmt = select(ActivityRecord).where(*conditions)
            if before is not None:
                stmt = stmt.where(ActivityRecord.sequence < before)
            # one extra row tells us whether an older page exists
            stmt = stmt.order_by(ActivityRecord.sequence.desc()).limit(limit + 1)
            rows = list(session.scalars(stmt))

            items = [r.to_entry() for r in rows[:limit]]
        next_before = items[-1].sequence if len(rows) > limit else None
        return ActivityPage(items=items, total=total, next_before=next_before)

    def find_by_id(self, entry_id: str) -> ActivityEntry | None:
        with self._session_factory() as session:
            record = session.get(ActivityRecord, entry_id)
            return record.to_entry() if record is not None else None

    def count(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(ActivityRecord)) or 0

    def distinct_actions(self) -> List[str]:
        with self._session_factory() as session:
            return list(session.scalars(select(ActivityRecord.action).distinct().order_by(ActivityRecord.action)))

    def distinct_resources(self) -> List[str]:
        with self._session_factory() as session:
            return list(session.scalars(select(ActivityRecord.resource).distinct().order_by(ActivityRecord.resource)))

    def summary(self, days: int = 7, now: datetime | None = None) -> List[Dict[str, object]]:
        """Entry counts per action over the last *days* days, most frequent first."""
        since = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        count = func.count().label("count")
        stmt = (
            select(ActivityRecord.action, count)
            .where(ActivityRecord.created_at >= _utc(since))
            .group_by(ActivityRecord.action)
            .order_by(count.desc(), ActivityRecord.action)
        )
        with self._session_factory() as session:
            return [{"action": action, "count": n} for action, n in session.execute(stmt)]

    def recent_by_user(self, user_id: str, limit: int = 10) -> List[ActivityEntry]:
        stmt = (
            select(ActivityRecord)
            .where(ActivityRecord.actor_id == user_id)
            .order_by(ActivityRecord.sequence.desc())
            .limit(limit)
        )
        with self._session_factory() as session:
            return [r.to_entry() for r in session.scalars(stmt)]
