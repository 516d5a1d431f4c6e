"""Pytest fixtures and fakes for StreamFlow tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from streamflow.config import Settings
from streamflow.models.job import Destination, EncodeParams, Job, JobStatus, Schedule, SourceRef
from streamflow.services.history import InMemoryHistory
from streamflow.services.job_store import InMemoryJobStore
from streamflow.services.media import StaticMediaLibrary
from streamflow.services.orchestrator import Orchestrator

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


# ==================== Fake Encoder Process ====================


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, pid: int, ignore_sigterm: bool = False) -> None:
        self.pid = pid
        self.returncode: Optional[int] = None
        self.stderr = asyncio.StreamReader()
        self.ignore_sigterm = ignore_sigterm
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode  # type: ignore[return-value]

    def exit(self, code: int) -> None:
        """Simulate the process ending on its own."""
        if self.returncode is None:
            self.returncode = code
            self.stderr.feed_eof()
            self._exited.set()

    def emit(self, data: bytes) -> None:
        """Write raw bytes to the encoder's stderr."""
        self.stderr.feed_data(data)

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_sigterm:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    """Records every launch and hands out FakeProcess instances."""

    def __init__(self) -> None:
        self.launches: List[List[str]] = []
        self.processes: List[FakeProcess] = []
        self.error: Optional[BaseException] = None
        self.ignore_sigterm = False

    async def __call__(self, argv: List[str]) -> FakeProcess:
        # Yield once, like a real exec, so concurrent callers interleave.
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        self.launches.append(argv)
        process = FakeProcess(pid=4000 + len(self.processes), ignore_sigterm=self.ignore_sigterm)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


class ManualClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FailingHistory(InMemoryHistory):
    """History collaborator that is always down."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    async def record(self, record: Any) -> None:
        self.attempts += 1
        raise ConnectionError("history store unavailable")


# ==================== Mock Supabase Client ====================


class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: Optional[List[Dict[str, Any]]] = None) -> None:
        self.data = data or []


class MockSupabaseTable:
    """Mock Supabase table supporting the query chains the services use."""

    def __init__(self, pk_field: str = "id") -> None:
        self._data: Dict[Any, Dict[str, Any]] = {}
        self._pk_field = pk_field
        self._reset_query()

    def _reset_query(self) -> None:
        self._filters: List[tuple[str, Any]] = []
        self._order: Optional[str] = None
        self._mode = "select"
        self._payload: Dict[str, Any] = {}

    def select(self, columns: str = "*") -> "MockSupabaseTable":
        self._mode = "select"
        return self

    def insert(self, data: Dict[str, Any]) -> "MockSupabaseTable":
        self._mode = "insert"
        self._payload = data
        return self

    def upsert(self, data: Dict[str, Any]) -> "MockSupabaseTable":
        self._mode = "upsert"
        self._payload = data
        return self

    def update(self, data: Dict[str, Any]) -> "MockSupabaseTable":
        self._mode = "update"
        self._payload = data
        return self

    def delete(self) -> "MockSupabaseTable":
        self._mode = "delete"
        return self

    def eq(self, field: str, value: Any) -> "MockSupabaseTable":
        self._filters.append((field, value))
        return self

    def order(self, field: str) -> "MockSupabaseTable":
        self._order = field
        return self

    def _matches(self, record: Dict[str, Any]) -> bool:
        return all(record.get(field) == value for field, value in self._filters)

    def execute(self) -> MockSupabaseResponse:
        mode, payload = self._mode, self._payload
        matching = [r for r in self._data.values() if self._matches(r)]
        order = self._order
        self._reset_query()

        if mode in ("insert", "upsert"):
            key = payload.get(self._pk_field, len(self._data) + 1)
            if mode == "upsert" and key in self._data:
                self._data[key].update(payload)
            else:
                self._data[key] = dict(payload)
            return MockSupabaseResponse([dict(self._data[key])])
        if mode == "update":
            for record in matching:
                record.update(payload)
            return MockSupabaseResponse([dict(r) for r in matching])
        if mode == "delete":
            for record in matching:
                self._data.pop(record.get(self._pk_field))
            return MockSupabaseResponse(matching)
        if order:
            matching = sorted(matching, key=lambda r: r.get(order))
        return MockSupabaseResponse([dict(r) for r in matching])


class MockSupabaseClient:
    """Mock Supabase client for testing."""

    def __init__(self) -> None:
        self._tables: Dict[str, MockSupabaseTable] = {}
        self.fail = False

    def table(self, name: str) -> MockSupabaseTable:
        if self.fail:
            raise ConnectionError("supabase unreachable")
        if name not in self._tables:
            self._tables[name] = MockSupabaseTable()
        return self._tables[name]

    def rows(self, table_name: str) -> List[Dict[str, Any]]:
        if table_name in self._tables:
            return list(self._tables[table_name]._data.values())
        return []


# ==================== Fixtures ====================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def history() -> InMemoryHistory:
    return InMemoryHistory()


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def media() -> StaticMediaLibrary:
    return StaticMediaLibrary({
        "video-1": ["/media/intro.mp4"],
        "playlist-1": ["/media/intro.mp4", "/media/main.mp4", "/media/outro.mp4"],
    })


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        supabase_url="",
        supabase_key="",
        scheduler_tick_seconds=1.0,
        stop_grace_seconds=0.05,
        history_retry_attempts=1,
        base_delay_seconds=0.0,
        max_concurrent_uploads=3,
    )


@pytest.fixture
def make_job() -> Callable[..., Job]:
    """Factory for jobs with sensible defaults."""

    def _make(
        job_id: str = "job-1",
        status: JobStatus = JobStatus.IDLE,
        owner_id: str = "user-1",
        source_id: str = "video-1",
        kind: str = "video",
        url: str = "rtmp://a.rtmp.youtube.com/live2",
        key: str = "abcd-efgh",
        loop: bool = True,
        start_at: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
        **extra: Any,
    ) -> Job:
        return Job(
            id=job_id,
            owner_id=owner_id,
            title=f"Stream {job_id}",
            source_ref=SourceRef(kind=kind, id=source_id),
            destination=Destination(url=url, key=key),
            encode=EncodeParams(loop=loop),
            schedule=Schedule(start_at=start_at, duration_minutes=duration_minutes),
            status=status,
            **extra,
        )

    return _make


@pytest.fixture
def orchestrator(
    store: InMemoryJobStore,
    media: StaticMediaLibrary,
    history: InMemoryHistory,
    test_settings: Settings,
    clock: ManualClock,
    spawner: FakeSpawner,
) -> Orchestrator:
    return Orchestrator(
        store=store,
        media=media,
        history=history,
        settings=test_settings,
        clock=clock,
        spawner=spawner,
    )


@pytest.fixture
def supabase_client() -> MockSupabaseClient:
    return MockSupabaseClient()


@pytest.fixture
def failing_history() -> FailingHistory:
    return FailingHistory()
