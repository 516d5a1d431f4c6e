"""History collaborator: one record per terminal transition out of live."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from streamflow.models.history import HistoryRecord, HistoryStats

logger = logging.getLogger(__name__)

HISTORY_TABLE = "stream_history"


class HistorySink(ABC):
    """Accepts history records and answers per-owner queries."""

    @abstractmethod
    async def record(self, record: HistoryRecord) -> None:
        """Persist one record."""

    @abstractmethod
    async def list_for_owner(self, owner_id: str) -> list[HistoryRecord]:
        """Records for owner, newest start first."""

    async def stats(self, owner_id: str) -> HistoryStats:
        """Totals over an owner's history."""
        records = await self.list_for_owner(owner_id)
        return HistoryStats(
            total_streams=len(records),
            completed_streams=sum(1 for r in records if r.status == "completed"),
            error_streams=sum(1 for r in records if r.status == "error"),
            total_duration_seconds=sum(r.duration_seconds for r in records),
        )


def _newest_first(record: HistoryRecord) -> datetime:
    return record.started_at or record.ended_at


class InMemoryHistory(HistorySink):
    """List-backed history for development and tests."""

    def __init__(self) -> None:
        self.records: list[HistoryRecord] = []

    async def record(self, record: HistoryRecord) -> None:
        self.records.append(record)

    async def list_for_owner(self, owner_id: str) -> list[HistoryRecord]:
        owned = [r for r in self.records if r.owner_id == owner_id]
        return sorted(owned, key=_newest_first, reverse=True)


class HistoryService(HistorySink):
    """History rows in the Supabase ``stream_history`` table."""

    def __init__(self, supabase_client: Any) -> None:
        self.supabase = supabase_client

    async def record(self, record: HistoryRecord) -> None:
        """
        Insert a history row.

        Raises:
            Exception: Whatever the client raises; callers decide whether it matters
        """
        row = record.model_dump(mode="json")
        row["stream_id"] = row.pop("job_id")
        row["user_id"] = row.pop("owner_id")
        row["start_time"] = row.pop("started_at")
        row["end_time"] = row.pop("ended_at")
        self.supabase.table(HISTORY_TABLE).insert(row).execute()
        logger.info(f"Recorded {record.status} history for stream {record.job_id}")

    async def list_for_owner(self, owner_id: str) -> list[HistoryRecord]:
        result = (
            self.supabase.table(HISTORY_TABLE).select("*").eq("user_id", owner_id).execute()
        )
        records = [
            HistoryRecord(
                owner_id=row["user_id"],
                job_id=row["stream_id"],
                title=row.get("title") or "",
                platform=row.get("platform") or "Custom",
                status=row["status"],
                started_at=row.get("start_time"),
                ended_at=row["end_time"],
                duration_seconds=row.get("duration_seconds") or 0,
                error_message=row.get("error_message"),
            )
            for row in result.data or []
        ]
        return sorted(records, key=_newest_first, reverse=True)
