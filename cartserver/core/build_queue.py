"""
Build scheduler - admission control and isolated, serialized build jobs.

Pipeline for one job, run under an exclusive per-repository lock:
1. Create <commit>.build/ under the build root
2. Extract `git archive --format=tar <commit>` into it
3. Run the repository's build hook with the working directory as cwd
4. Success: package the directory into <commit>.tar.gz (atomic rename)
5. Any failure: no artifact, failure recorded on the job
The working directory is removed on both paths.

Security:
- No shell=True, the hook is executed directly from the extracted tree
- Hook gets a minimal environment and its own process group
- Hard wall-clock timeout kills the whole process group
- Hook output reaches the log through a bounded copy, capped at MAX_LOG_SIZE
- Archive members are extracted through tarfile's "data" filter
"""
import fcntl
import hashlib
import io
import logging
import os
import shutil
import signal
import stat
import subprocess
import tarfile
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Union

from cartserver.core.errors import BuildFailed, CartridgeError, QueueFull
from cartserver.core.git_gateway import validate_commit_id
from cartserver.core.log_context import build_job_context
from cartserver.core.manifest import BUILD_HOOK_PATH
from cartserver.core.metrics import metrics

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_CAPACITY = 4

# Timeouts (seconds)
BUILD_TIMEOUT = 1800
KILL_GRACE_SECONDS = 5

MAX_LOG_SIZE = 1 * 1024 * 1024
LOG_CHUNK_SIZE = 64 * 1024
LOG_TRUNCATED_MARKER = b"\n... (log truncated)\n"
MAX_RECENT_JOBS = 100


class JobState(str, Enum):
    """Build job lifecycle."""
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


@dataclass
class Job:
    """One build of one commit. Terminal states are final."""
    commit_id: str
    repo_root: Path
    working_dir: Path
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    log_path: Optional[Path] = None
    _finished: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job is terminal. Returns False on timeout."""
        return self._finished.wait(timeout)

    def mark_running(self) -> None:
        if self.state != JobState.CREATED:
            raise RuntimeError(f"job {self.id} cannot start from state {self.state.value}")
        self.state = JobState.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def mark_finished(self, state: JobState, error: Optional[str] = None) -> None:
        if state not in TERMINAL_STATES:
            raise ValueError(f"{state.value} is not a terminal state")
        if self.is_terminal:
            raise RuntimeError(f"job {self.id} already finished as {self.state.value}")
        self.error = error
        self.finished_at = datetime.now(timezone.utc)
        self.state = state
        self._finished.set()


class RepositoryLock:
    """
    Exclusive, non-blocking lock on the builds of one repository.

    flock on a file named from a digest of the repository root. Every
    acquisition opens its own file description, so the lock excludes other
    threads of this process as well as other processes sharing lock_dir.
    """

    def __init__(self, lock_dir: Union[str, Path], repo_root: Union[str, Path]):
        digest = hashlib.sha256(str(Path(repo_root).resolve()).encode("utf-8")).hexdigest()[:16]
        self.path = Path(lock_dir) / f".repo-{digest}.lock"
        self._handle = None

    def try_acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        self._handle = handle
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None


class _ChunkReader(io.RawIOBase):
    """Read-only file object over an iterator of byte chunks."""

    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = iter(chunks)
        self._buffer = b""

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while not self._buffer:
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n


# =============================================================================
# Pipeline Helpers
# =============================================================================

def _sanitize_env(workdir: Path, commit_id: str) -> dict:
    """Minimal environment for the build hook."""
    return {
        "PATH": "/usr/local/bin:/usr/bin:/bin",
        "HOME": str(workdir),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "CI": "true",
        "CART_COMMIT_ID": commit_id,
        "CART_BUILD_DIR": str(workdir),
    }


def _remove_working_directory(workdir: Path) -> None:
    """Best-effort removal. Failures are logged, never raised."""
    if not workdir.exists():
        return
    try:
        shutil.rmtree(workdir)
        logger.info(f"workspace_cleaned dir={workdir.name}")
    except OSError as e:
        logger.warning(f"workspace_cleanup_failed dir={workdir.name} error={type(e).__name__}")


def _kill_process_group(proc: subprocess.Popen) -> None:
    """Terminate the hook and everything it spawned."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            break
        try:
            proc.wait(timeout=KILL_GRACE_SECONDS)
            break
        except subprocess.TimeoutExpired:
            continue
    if proc.poll() is None:
        proc.wait()


def _copy_bounded(source, log, limit: int) -> None:
    """
    Copy hook output into the log until `limit` bytes, then discard the rest.

    Keeps draining after the limit so the hook never blocks on a full pipe.
    Closes both files.
    """
    written = 0
    dropped = False
    try:
        while True:
            chunk = source.read1(LOG_CHUNK_SIZE)
            if not chunk:
                break
            room = limit - written
            if len(chunk) > room:
                dropped = True
            if room > 0:
                log.write(chunk[:room])
                written += min(room, len(chunk))
        if dropped:
            log.write(LOG_TRUNCATED_MARKER)
    finally:
        source.close()
        log.close()


# =============================================================================
# Scheduler
# =============================================================================

class BuildScheduler:
    """
    Accepts build requests up to a fixed number of unfinished jobs.

    One instance per process, created at startup and handed to whoever
    submits builds. It does not deduplicate by commit: callers check the
    artifact store first.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        build_timeout: int = BUILD_TIMEOUT,
        lock_dir: Optional[Union[str, Path]] = None,
        hook_path: str = BUILD_HOOK_PATH,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._build_timeout = build_timeout
        self._lock_dir = Path(lock_dir) if lock_dir else None
        self._hook_path = hook_path
        self._lock = threading.Lock()
        self._jobs: list[Job] = []
        self._recent: "OrderedDict[str, Job]" = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _purge_terminal(self) -> None:
        self._jobs = [job for job in self._jobs if not job.is_terminal]

    def active_jobs(self) -> list[Job]:
        """Jobs not yet completed or failed."""
        with self._lock:
            self._purge_terminal()
            return list(self._jobs)

    def job_for(self, commit_id: str) -> Optional[Job]:
        """Most recent job submitted for a commit during this process lifetime."""
        with self._lock:
            return self._recent.get(commit_id)

    def submit(self, commit_id: str, gateway, store) -> Job:
        """
        Register a build and start it in the background.

        Raises:
            QueueFull: If `capacity` jobs are already unfinished
        """
        validate_commit_id(commit_id)

        with self._lock:
            self._purge_terminal()
            if len(self._jobs) >= self._capacity:
                metrics.inc("builds_rejected_total")
                logger.warning(f"build_rejected commit={commit_id[:8]} active={len(self._jobs)}")
                raise QueueFull(f"Build queue is full ({self._capacity} builds in progress)")

            job = Job(
                commit_id=commit_id,
                repo_root=gateway.root,
                working_dir=store.working_directory(commit_id),
                log_path=store.log_path(commit_id),
            )
            self._jobs.append(job)
            self._recent[commit_id] = job
            self._recent.move_to_end(commit_id)
            while len(self._recent) > MAX_RECENT_JOBS:
                self._recent.popitem(last=False)

        metrics.inc("builds_submitted_total")
        logger.info(f"build_queued job_id={job.id} commit={commit_id[:8]}")

        # Daemon thread: builds in flight at shutdown are abandoned
        worker = threading.Thread(
            target=self._run_job,
            args=(job, gateway, store),
            name=f"build-{commit_id[:8]}",
            daemon=True,
        )
        worker.start()
        return job

    def _run_job(self, job: Job, gateway, store) -> None:
        with build_job_context(job.id, job.commit_id):
            self._run_under_lock(job, gateway, store)

    def _run_under_lock(self, job: Job, gateway, store) -> None:
        job.mark_running()
        lock = None
        # Every exit path, lock setup included, must finish the job
        try:
            lock = RepositoryLock(self._lock_dir or store.build_root, gateway.root)
            if not lock.try_acquire():
                lock = None
                raise BuildFailed("Another build is running for this repository")

            logger.info(f"build_started job_id={job.id} commit={job.commit_id[:8]}")
            self._execute(job, gateway, store)
        except CartridgeError as e:
            self._finish(job, JobState.FAILED, str(e))
        except Exception as e:
            logger.exception(f"build_error job_id={job.id}")
            self._finish(job, JobState.FAILED, f"Unexpected error: {type(e).__name__}")
        else:
            self._finish(job, JobState.COMPLETED)
        finally:
            if lock is not None:
                lock.release()

    def _execute(self, job: Job, gateway, store) -> None:
        workdir = job.working_dir
        try:
            # Leftovers from an interrupted run must not end up in the artifact
            _remove_working_directory(workdir)
            workdir.mkdir(parents=True)

            self._materialize(gateway, job.commit_id, workdir)
            job.exit_code = self._run_hook(job, workdir)
            if job.exit_code != 0:
                raise BuildFailed(f"Build hook exited with status {job.exit_code}")

            store.store_artifact(job.commit_id, workdir)
        finally:
            _remove_working_directory(workdir)

    def _materialize(self, gateway, commit_id: str, workdir: Path) -> None:
        """Extract the full tree at a commit into the working directory."""
        stream = gateway.archive(commit_id, "tar")
        try:
            with tarfile.open(fileobj=_ChunkReader(stream), mode="r|") as tar:
                tar.extractall(path=str(workdir), filter="data")
            # Drain so a failing git exit status still surfaces
            for _ in stream:
                pass
        except tarfile.TarError as e:
            logger.warning(f"archive_extract_failed commit={commit_id[:8]} error={type(e).__name__}")
            raise BuildFailed("Source archive could not be extracted")
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    def _run_hook(self, job: Job, workdir: Path) -> int:
        """Run the build hook, returning its exit status."""
        hook = workdir / self._hook_path
        if not hook.is_file():
            raise BuildFailed(f"Build hook {self._hook_path} is missing")
        hook.chmod(hook.stat().st_mode | stat.S_IXUSR)

        log = open(job.log_path, "wb")
        try:
            proc = subprocess.Popen(
                [str(hook)],
                cwd=str(workdir),
                env=_sanitize_env(workdir, job.commit_id),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            log.close()
            logger.warning(f"hook_spawn_failed job_id={job.id} error={type(e).__name__}")
            raise BuildFailed("Build hook could not be started")

        # The pump owns both files from here on
        pump = threading.Thread(
            target=_copy_bounded,
            args=(proc.stdout, log, MAX_LOG_SIZE),
            name=f"build-log-{job.commit_id[:8]}",
            daemon=True,
        )
        pump.start()
        logger.info(f"hook_started job_id={job.id} pid={proc.pid}")

        try:
            return proc.wait(timeout=self._build_timeout)
        except subprocess.TimeoutExpired:
            _kill_process_group(proc)
            logger.warning(f"hook_timeout job_id={job.id} timeout={self._build_timeout}")
            raise BuildFailed(f"Build timed out after {self._build_timeout}s")
        finally:
            # A process that left the group can keep the pipe open; the log stays bounded
            pump.join(timeout=KILL_GRACE_SECONDS)
            if pump.is_alive():
                logger.warning(f"hook_output_still_open job_id={job.id}")

    def _finish(self, job: Job, state: JobState, error: Optional[str] = None) -> None:
        job.mark_finished(state, error)
        if state == JobState.COMPLETED:
            metrics.inc("builds_completed_total")
        else:
            metrics.inc("builds_failed_total")
        logger.info(
            f"build_finished job_id={job.id} commit={job.commit_id[:8]} "
            f"state={state.value} exit_code={job.exit_code} duration_ms={job.duration_ms}"
        )
