"""Process supervisor: owns the encoder process of every live job."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

from streamflow.models.history import HistoryRecord
from streamflow.models.job import STARTABLE_STATUSES, Job, JobStatus, is_allowed
from streamflow.services.encoder import build_relay_command, command_as_string, write_concat_list
from streamflow.services.history import HistorySink
from streamflow.services.job_store import JobStore
from streamflow.services.media import MediaResolver
from streamflow.services.platform import detect_platform
from streamflow.utils.clock import Clock, ensure_utc, utcnow
from streamflow.utils.errors import (
    ConflictError,
    CrashError,
    SpawnError,
    StopTimeoutError,
    StreamFlowError,
    ValidationError,
)
from streamflow.utils.retry import with_retry

logger = logging.getLogger(__name__)

ORPHANED_REASON = "orphaned process: no running encoder found after restart"
STDERR_TAIL_LINES = 20
STDERR_CHUNK_BYTES = 4096
STDERR_LINE_BYTES = 1024
STDERR_FLUSH_SECONDS = 1.0


class EncoderProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` the supervisor uses."""

    pid: int
    returncode: Optional[int]
    stderr: Optional[asyncio.StreamReader]

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


Spawner = Callable[[list[str]], Awaitable[EncoderProcess]]


async def spawn_subprocess(argv: list[str]) -> EncoderProcess:
    """Launch the encoder with stderr piped for crash diagnostics."""
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


@dataclass
class SupervisedProcess:
    """Supervisor entry for one job; released exactly once."""

    job_id: str
    process: Optional[EncoderProcess] = None
    watcher: Optional["asyncio.Task[None]"] = None
    concat_file: Optional[Path] = None
    stop_requested: bool = False
    released: bool = False
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    stderr_tail: deque = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))


class ProcessSupervisor:
    """
    Starts, stops and watches encoder processes.

    Every status change goes through ``JobStore.transition``; when an exit
    watcher and a stop request race, whichever compare-and-swap lands first
    decides the outcome and the other side backs off.

    Between claiming ``live`` and launching the encoder a job reads as
    ``live`` with no process handle. The supervisor entry already exists
    in that window, so a stop arriving then waits for the launch to
    settle before signalling. History records are written by background
    tasks; ``drain_history`` waits for them.
    """

    def __init__(
        self,
        store: JobStore,
        media: MediaResolver,
        history: HistorySink,
        ffmpeg_path: str = "ffmpeg",
        grace_seconds: float = 5.0,
        clock: Clock = utcnow,
        spawner: Spawner = spawn_subprocess,
        history_attempts: int = 3,
        history_base_delay: float = 1.0,
    ) -> None:
        self.store = store
        self.media = media
        self.history = history
        self.ffmpeg_path = ffmpeg_path
        self.grace_seconds = grace_seconds
        self.clock = clock
        self.spawner = spawner
        self.history_attempts = history_attempts
        self.history_base_delay = history_base_delay
        self._processes: dict[str, SupervisedProcess] = {}
        self._history_tasks: set["asyncio.Task[None]"] = set()

    # ==================== QUERIES ====================

    def is_supervised(self, job_id: str) -> bool:
        return job_id in self._processes

    def supervised_ids(self) -> list[str]:
        return list(self._processes)

    def _now(self):
        return ensure_utc(self.clock())

    async def _transition(self, job: Job, expected: JobStatus, new: JobStatus, **fields) -> Optional[Job]:
        if not is_allowed(expected, new):
            raise StreamFlowError(
                f"Illegal transition {expected.value} -> {new.value}", job_id=job.id
            )
        updated = await self.store.transition(job.id, expected, new, **fields)
        if updated is not None and expected != new:
            logger.info(f"Job {job.id}: {expected.value} -> {new.value}")
        return updated

    # ==================== START ====================

    async def start(self, job: Job) -> Job:
        """
        Move a job to live and spawn its encoder.

        Args:
            job: Snapshot of the job as last read from the store

        Returns:
            The job after the process handle is recorded

        Raises:
            ConflictError: If the job is already live/stopping or another caller won
            ValidationError: If the destination or source is unusable
            SpawnError: If the encoder could not be launched
        """
        if job.status not in STARTABLE_STATUSES:
            raise ConflictError(job.id, expected="a startable status", actual=job.status.value)

        destination = job.destination
        if not destination.url or not destination.key or "://" not in destination.url:
            await self._fail_start(job, ValidationError("Destination URL and stream key are required", job_id=job.id))

        try:
            media = await self.media.resolve(job.source_ref)
        except ValidationError as e:
            e.job_id = job.id
            await self._fail_start(job, e)

        claimed = await self._transition(
            job,
            job.status,
            JobStatus.LIVE,
            started_at=self._now(),
            ended_at=None,
            last_error=None,
            process_handle=None,
        )
        if claimed is None:
            current = await self.store.get(job.id)
            raise ConflictError(
                job.id, expected=job.status.value, actual=current.status.value if current else None
            )

        # Registered before the first await so a concurrent stop finds it.
        entry = SupervisedProcess(job_id=job.id)
        self._processes[job.id] = entry

        try:
            if media.is_playlist:
                entry.concat_file = write_concat_list(media.paths)
                argv = build_relay_command(claimed, entry.concat_file, self.ffmpeg_path, concat=True)
            else:
                argv = build_relay_command(claimed, media.paths[0], self.ffmpeg_path)
            logger.info(
                f"Spawning encoder for job {job.id}: "
                f"{command_as_string(argv, secret=claimed.destination.key)}"
            )
            entry.process = await self.spawner(argv)
        except (OSError, ValueError) as e:
            error = SpawnError(f"Failed to launch encoder: {e}", job_id=job.id)
            await self._abort_spawn(entry, claimed, str(error))
            raise error from e
        except BaseException as e:
            # Cancellation or a bug: still leave no live row without a process.
            await self._abort_spawn(entry, claimed, f"Failed to launch encoder: {e!r}")
            raise

        entry.watcher = asyncio.create_task(self._watch(entry), name=f"encoder-watch-{job.id}")
        entry.ready.set()

        attached = await self._transition(
            claimed, JobStatus.LIVE, JobStatus.LIVE, process_handle=entry.process.pid
        )
        logger.info(f"Job {job.id} is live with pid {entry.process.pid}")
        if attached is not None:
            return attached
        return await self.store.get(job.id) or claimed

    async def _abort_spawn(self, entry: SupervisedProcess, claimed: Job, reason: str) -> None:
        """Undo a claimed start whose encoder never launched."""
        self._release(entry)
        entry.ready.set()
        logger.error(f"Spawn failed for job {claimed.id}: {reason}")
        await self._transition(
            claimed,
            JobStatus.LIVE,
            JobStatus.ERROR,
            last_error=reason,
            ended_at=self._now(),
            process_handle=None,
        )

    async def _fail_start(self, job: Job, error: StreamFlowError) -> None:
        """Record a failed start on the job, then raise the error."""
        logger.error(f"Start failed for job {job.id}: {error}")
        await self._transition(
            job, job.status, JobStatus.ERROR, last_error=str(error), process_handle=None
        )
        raise error

    # ==================== STOP ====================

    async def stop(self, job: Job) -> Job:
        """
        Stop a live job: SIGTERM, wait out the grace period, then SIGKILL.

        Stopping a job that is not live is a no-op.

        Returns:
            The job after the stop (or the unchanged snapshot)
        """
        if job.status != JobStatus.LIVE:
            return job

        stopping = await self._transition(job, JobStatus.LIVE, JobStatus.STOPPING)
        if stopping is None:
            # Lost to the exit watcher or another stop; theirs is the outcome.
            return await self.store.get(job.id) or job

        await self._terminate(job.id)
        return await self._finish_stop(stopping)

    async def _finish_stop(self, job: Job) -> Job:
        ended_at = self._now()
        offline = await self._transition(
            job, JobStatus.STOPPING, JobStatus.OFFLINE, process_handle=None, ended_at=ended_at
        )
        if offline is None:
            return await self.store.get(job.id) or job
        self._emit(HistoryRecord.from_job(
            job, detect_platform(job.destination.url), "completed", ended_at
        ))
        return offline

    async def _terminate(self, job_id: str) -> None:
        entry = self._processes.get(job_id)
        if entry is None:
            return
        entry.stop_requested = True
        await entry.ready.wait()
        process = entry.process
        if process is None or entry.watcher is None:
            return

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

        try:
            await asyncio.wait_for(asyncio.shield(entry.watcher), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            # Escalation is logged, not raised: the stop still succeeds.
            escalation = StopTimeoutError(
                f"Encoder pid {process.pid} ignored SIGTERM for {self.grace_seconds}s, sending SIGKILL",
                job_id=job_id,
            )
            logger.warning(f"Job {job_id}: {escalation}")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await entry.watcher

    # ==================== EXIT WATCHER ====================

    async def _drain_stderr(self, entry: SupervisedProcess) -> None:
        """Keep the last lines of stderr; reads fixed-size chunks so no line length can fail it."""
        stream = entry.process.stderr if entry.process else None
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(STDERR_CHUNK_BYTES)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            pending = pending[-STDERR_LINE_BYTES:]
            for line in lines:
                entry.stderr_tail.append(line[-STDERR_LINE_BYTES:].decode("utf-8", errors="replace").rstrip())
        if pending:
            entry.stderr_tail.append(pending.decode("utf-8", errors="replace").rstrip())

    async def _watch(self, entry: SupervisedProcess) -> None:
        drain = asyncio.create_task(self._drain_stderr(entry), name=f"encoder-stderr-{entry.job_id}")
        try:
            # Only the process exit may release the entry; stderr trouble is diagnostics.
            returncode = await entry.process.wait()
            try:
                await asyncio.wait_for(drain, timeout=STDERR_FLUSH_SECONDS)
            except Exception as e:
                logger.warning(f"Could not read encoder stderr for job {entry.job_id}: {e}")
        finally:
            if not drain.done():
                drain.cancel()
            self._release(entry)

        if entry.stop_requested:
            return

        try:
            await self._handle_exit(entry, returncode)
        except Exception:
            logger.exception(f"Exit handling failed for job {entry.job_id}")

    async def _handle_exit(self, entry: SupervisedProcess, returncode: Optional[int]) -> None:
        job = await self.store.get(entry.job_id)
        if job is None or job.status != JobStatus.LIVE:
            return

        if returncode == 0 and not job.encode.loop:
            logger.info(f"Encoder for job {job.id} reached the end of its source")
            stopping = await self._transition(job, JobStatus.LIVE, JobStatus.STOPPING)
            if stopping is not None:
                await self._finish_stop(stopping)
            return

        detail = entry.stderr_tail[-1] if entry.stderr_tail else ""
        crash = CrashError(job.id, returncode, detail)
        logger.error(f"Job {job.id}: {crash}")
        ended_at = self._now()
        errored = await self._transition(
            job,
            JobStatus.LIVE,
            JobStatus.ERROR,
            last_error=str(crash),
            ended_at=ended_at,
            process_handle=None,
        )
        if errored is not None:
            self._emit(HistoryRecord.from_job(
                job, detect_platform(job.destination.url), "error", ended_at, str(crash)
            ))

    def _release(self, entry: SupervisedProcess) -> None:
        if entry.released:
            return
        entry.released = True
        if self._processes.get(entry.job_id) is entry:
            del self._processes[entry.job_id]
        if entry.concat_file is not None:
            entry.concat_file.unlink(missing_ok=True)

    # ==================== RECONCILIATION ====================

    async def reconcile(self) -> int:
        """
        One-time pass before the scheduler starts: settle rows whose process is gone.

        Live rows become error with an orphan reason; stopping rows finish
        their interrupted stop. Failures are logged per job.

        Returns:
            Number of jobs reconciled
        """
        reconciled = 0
        for status in (JobStatus.LIVE, JobStatus.STOPPING):
            try:
                jobs = await self.store.list_by_status(status)
            except StreamFlowError as e:
                logger.error(f"Reconciliation could not list {status.value} jobs: {e}")
                continue

            for job in jobs:
                if self.is_supervised(job.id):
                    continue
                try:
                    if status == JobStatus.LIVE:
                        settled = await self._reconcile_orphan(job)
                    else:
                        settled = (await self._finish_stop(job)).status == JobStatus.OFFLINE
                except Exception:
                    logger.exception(f"Reconciliation failed for job {job.id}")
                    continue
                reconciled += int(settled)
        if reconciled:
            logger.warning(f"Reconciled {reconciled} job(s) left active by a previous run")
        return reconciled

    async def _reconcile_orphan(self, job: Job) -> bool:
        reason = ORPHANED_REASON
        if job.process_handle is not None:
            reason = f"{reason} (pid {job.process_handle})"
        ended_at = self._now()
        errored = await self._transition(
            job,
            JobStatus.LIVE,
            JobStatus.ERROR,
            last_error=reason,
            ended_at=ended_at,
            process_handle=None,
        )
        if errored is None:
            return False
        self._emit(HistoryRecord.from_job(
            job, detect_platform(job.destination.url), "error", ended_at, reason
        ))
        return True

    # ==================== HISTORY ====================

    def _emit(self, record: HistoryRecord) -> None:
        """Hand a record to the history collaborator in the background."""
        task = asyncio.create_task(self._send_history(record), name=f"history-{record.job_id}")
        self._history_tasks.add(task)
        task.add_done_callback(self._history_tasks.discard)

    async def _send_history(self, record: HistoryRecord) -> None:
        send = with_retry(
            max_attempts=self.history_attempts, base_delay=self.history_base_delay
        )(self.history.record)
        try:
            await send(record)
        except Exception as e:
            # Never undoes the transition that produced the record.
            logger.error(f"Failed to record history for job {record.job_id}: {e}")

    async def drain_history(self, timeout: Optional[float] = None) -> int:
        """
        Wait for pending history writes.

        Args:
            timeout: Seconds to wait before cancelling what is left; None waits for all

        Returns:
            Number of writes cancelled
        """
        pending = set(self._history_tasks)
        if not pending:
            return 0
        if timeout is not None and timeout <= 0:
            unfinished = pending
        else:
            _, unfinished = await asyncio.wait(pending, timeout=timeout)
        for task in unfinished:
            task.cancel()
        if unfinished:
            logger.warning(f"Dropped {len(unfinished)} pending history write(s)")
            await asyncio.gather(*unfinished, return_exceptions=True)
        return len(unfinished)
