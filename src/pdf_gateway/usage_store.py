"""
Asynchronous facade over :class:`UsageDatabase`.

The sqlite driver blocks, so each call is pushed to Starlette's threadpool and
awaited; request handling on the event loop never waits on disk I/O.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from .database import UsageDatabase
from .models import OperationCount, OperationLogEntry, OperationRecord, Subject, UsageStats, UserRecord
from .utils import utc_now, utc_today


class UsageStore:
    def __init__(self, db: UsageDatabase) -> None:
        self.db = db

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        return await run_in_threadpool(self.db.get_user, user_id)

    async def get_count(self, subject: Subject, usage_date: Optional[date] = None) -> int:
        return await run_in_threadpool(self.db.get_count, subject, usage_date or utc_today())

    async def increment(self, subject: Subject, usage_date: Optional[date] = None) -> None:
        await run_in_threadpool(self.db.increment, subject, usage_date or utc_today())

    async def append(self, entry: OperationLogEntry) -> str:
        return await run_in_threadpool(self.db.append_operation, entry)

    async def recent_operations(self, limit: int = 50) -> List[OperationRecord]:
        return await run_in_threadpool(self.db.recent_operations, limit)

    async def user_operations(self, user_id: str, limit: int = 20) -> List[OperationRecord]:
        return await run_in_threadpool(self.db.user_operations, user_id, limit)

    async def usage_stats(self, now: Optional[datetime] = None) -> UsageStats:
        """Operation counts for today, the last 7 and 30 days, and overall."""
        now = now or utc_now()
        today = datetime(now.year, now.month, now.day)
        counts = await run_in_threadpool(
            self.db.operation_counts,
            {
                "today": today,
                "week": today - timedelta(days=7),
                "month": today - timedelta(days=30),
            },
        )
        return UsageStats(
            today=counts["today"],
            thisWeek=counts["week"],
            thisMonth=counts["month"],
            total=counts["total"],
            byOperation=[
                OperationCount(operation=operation, count=count)
                for operation, count in counts["by_operation"]
            ],
        )

    async def ping(self) -> bool:
        return await run_in_threadpool(self.db.ping)
