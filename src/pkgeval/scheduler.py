"""Concurrent job scheduler.

Runs every job through the sandbox with a fixed pool of worker threads.
Workers pull jobs from a shared stack, each job gets its own timeout, and
outcomes are written into a shared result map. A progress reporter thread
watches the shared state and ends the run once the stack is drained and
every worker is idle.

Shared state and who touches it:

* the work queue: popped only together with the claiming worker's slot,
  under one lock, so no two workers ever run the same job;
* the result map: each job name is written once, by the worker that
  claimed it, so the dict itself needs no lock;
* worker slots: written by their owner, read best-effort by the reporter;
* the :class:`~pkgeval.cancel.ShutdownController`: one per run.

All CPU-heavy work happens in sandbox subprocesses, so threads are enough.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, MutableMapping, Sequence
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from pkgeval.cancel import TIMEOUT, CancelToken, ShutdownController
from pkgeval.config import Settings
from pkgeval.errors import JobCancelled
from pkgeval.lists import PackageLists, apply_lists, runtime_stdlibs
from pkgeval.logging import get_logger
from pkgeval.progress import (
    NullSink,
    ProgressReporter,
    ProgressSink,
    ProgressSnapshot,
    WorkerStatus,
)
from pkgeval.registry import JobDescriptor
from pkgeval.results import Outcome, tally
from pkgeval.sandbox import run_sandboxed_test, warm_up
from pkgeval.versions import obtain_runtime

log = get_logger("scheduler")

DEFAULT_TIMEOUT = 45 * 60

# (job, runtime directory, cancel token) -> passed?
JobRunner = Callable[[JobDescriptor, Path, CancelToken], bool]


# ---------------------------------------------------------------------------
# Shared state
# ---------------------------------------------------------------------------


@dataclass
class WorkerSlot:
    """What a worker is running right now; ``job`` is None when idle."""

    job: str | None = None
    started_at: float = 0.0


class WorkQueue:
    """Stack of pending jobs whose pops are tied to slot updates."""

    def __init__(self, jobs: Sequence[JobDescriptor]) -> None:
        self._jobs = list(jobs)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def claim(self, slot: WorkerSlot) -> JobDescriptor | None:
        """Pop a job and mark *slot* busy with it. Returns None when empty."""
        with self._lock:
            if not self._jobs:
                return None
            job = self._jobs.pop()
            slot.job = job.name
            slot.started_at = time.monotonic()
            return job

    def release(self, slot: WorkerSlot) -> None:
        """Mark *slot* idle again."""
        with self._lock:
            slot.job = None

    def is_drained(self, slots: Sequence[WorkerSlot]) -> bool:
        """True when no job is pending and no slot is busy."""
        with self._lock:
            return not self._jobs and all(s.job is None for s in slots)


# ---------------------------------------------------------------------------
# Per-job timeout
# ---------------------------------------------------------------------------


def run_with_timeout(
    runner: JobRunner,
    job: JobDescriptor,
    runtime_dir: Path,
    timeout: float,
    worker_token: CancelToken,
) -> bool:
    """Run one job, cancelling it if it takes longer than *timeout* seconds.

    A timed-out job counts as a failure. Errors raised while a cancelled run
    is being torn down are ignored.

    Raises:
        JobCancelled: If the worker itself was cancelled before the run
            finished on its own.
    """
    token = CancelToken(parent=worker_token)

    def _expire() -> None:
        if token.cancel(TIMEOUT):
            log.warning("%s timed out after %ss, cancelling", job.name, timeout)

    timer = threading.Timer(timeout, _expire)
    timer.daemon = True
    timer.start()
    try:
        passed = runner(job, runtime_dir, token)
        cut_short = token.is_cancelled()
    except Exception as exc:
        if not token.is_cancelled():
            raise
        log.debug("Ignoring error from cancelled run of %s: %s", job.name, exc)
        passed = False
        cut_short = True
    finally:
        timer.cancel()

    # A run that finished before any cancellation keeps its outcome.
    if not cut_short:
        return passed
    if worker_token.is_cancelled():
        raise JobCancelled(job.name)
    return False


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class Scheduler:
    """One run of a job set over a worker pool.

    Use :func:`run_all` for the full flow; this class assumes the runtime
    is already installed and working.
    """

    def __init__(
        self,
        jobs: Sequence[JobDescriptor],
        workers: int,
        runner: JobRunner,
        runtime_dir: Path,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        results: MutableMapping[str, str] | None = None,
        sink: ProgressSink | None = None,
        interval: float = 1.0,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        self.results: MutableMapping[str, str] = {} if results is None else results
        self.queue = WorkQueue(jobs)
        self.slots = [WorkerSlot() for _ in range(workers)]
        self.tokens = [CancelToken() for _ in range(workers)]
        self.shutdown = ShutdownController()
        self.runner = runner
        self.runtime_dir = runtime_dir
        self.timeout = timeout
        self.interval = interval
        self.sink: ProgressSink = sink if sink is not None else NullSink()
        job_names = {job.name for job in jobs}
        self.total = len(jobs) + sum(1 for name in self.results if name not in job_names)
        self._errors: list[BaseException] = []
        self._errors_lock = threading.Lock()

    def _record_error(self, exc: BaseException) -> None:
        with self._errors_lock:
            self._errors.append(exc)

    def snapshot(self) -> ProgressSnapshot:
        """Best-effort view of the shared state; never raises on a racing slot."""
        counts = tally(self.results)
        now = time.monotonic()
        workers = []
        for i, slot in enumerate(self.slots, start=1):
            job, started = slot.job, slot.started_at
            elapsed = max(0.0, now - started) if job is not None else 0.0
            workers.append(WorkerStatus(index=i, job=job, elapsed=elapsed))
        return ProgressSnapshot(
            ok=counts.ok,
            fail=counts.fail,
            skipped=counts.skipped,
            remaining=max(0, self.total - counts.done),
            workers=tuple(workers),
        )

    def is_idle(self) -> bool:
        return self.queue.is_drained(self.slots)

    def _work(self, index: int) -> None:
        slot = self.slots[index]
        token = self.tokens[index]
        try:
            while not self.shutdown.is_stop_requested() and not token.is_cancelled():
                job = self.queue.claim(slot)
                if job is None:
                    break
                log.debug("Worker %d: starting %s", index + 1, job.name)
                try:
                    passed = run_with_timeout(
                        self.runner, job, self.runtime_dir, self.timeout, token
                    )
                    self.results[job.name] = Outcome.OK if passed else Outcome.FAIL
                    log.info("%s: %s", job.name, "ok" if passed else "fail")
                finally:
                    self.queue.release(slot)
        except JobCancelled as exc:
            log.debug("Worker %d: cancelled while running %s", index + 1, exc)
        except Exception as exc:
            log.exception("Worker %d failed: %s", index + 1, exc)
            self._record_error(exc)
            self.shutdown.request_stop()

    def _report(self) -> None:
        reporter = ProgressReporter(
            self.snapshot, self.is_idle, self.shutdown, self.sink, self.interval
        )
        try:
            reporter.run()
        except Exception as exc:
            log.exception("Progress reporter failed: %s", exc)
            self._record_error(exc)

    def run(self) -> MutableMapping[str, str]:
        """Run every job and return the result map.

        Blocks until all workers and the reporter have exited. If a worker
        or the reporter failed, the first error is re-raised after that;
        the result map still holds every outcome recorded before the stop.
        """
        threads = [
            threading.Thread(target=self._work, args=(i,), name=f"pkgeval-worker-{i + 1}")
            for i in range(len(self.slots))
        ]
        for thread, token in zip(threads, self.tokens):
            self.shutdown.register(thread, token)
        reporter = threading.Thread(target=self._report, name="pkgeval-progress")

        log.info("Testing %d package(s) with %d worker(s)", len(self.queue), len(threads))
        for thread in threads:
            thread.start()
        reporter.start()
        try:
            for thread in [*threads, reporter]:
                thread.join()
        except KeyboardInterrupt:
            log.warning("Interrupted, stopping workers")
            self.shutdown.request_stop()
            for thread in [*threads, reporter]:
                thread.join()
            raise

        if self._errors:
            for extra in self._errors[1:]:
                log.error("Additional error during run: %r", extra)
            raise self._errors[0]
        return self.results


def run_all(
    jobs: Sequence[JobDescriptor],
    workers: int,
    version: str,
    *,
    settings: Settings | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    results: MutableMapping[str, str] | None = None,
    depwarn_as_error: bool = False,
    sink: ProgressSink | None = None,
    interval: float = 1.0,
    runner: JobRunner | None = None,
    assume_stdlib_ok: bool = True,
) -> MutableMapping[str, str]:
    """Test every job in *jobs* against runtime *version*.

    The runtime is obtained and the sandbox started once before any worker
    runs; failures there abort the run. Pass *results* to collect outcomes
    into an existing mapping (it is updated in place, also on failure).

    Args:
        jobs: Packages to test.
        workers: Number of concurrent sandbox runs.
        version: Runtime version from the version manifest.
        settings: Filesystem locations; defaults to :class:`Settings()`.
        timeout: Per-job wall-clock limit in seconds.
        results: Existing result map to update.
        depwarn_as_error: Turn deprecation warnings into errors.
        sink: Progress sink; defaults to discarding progress.
        interval: Seconds between progress snapshots.
        runner: Job runner; defaults to the sandboxed test runner.
        assume_stdlib_ok: Record the runtime's bundled standard libraries
            as ok instead of testing them.

    Returns:
        The result map, name -> ``"ok"`` / ``"fail"`` / ``"skipped"``.
    """
    if workers < 1:
        raise ValueError(f"workers must be at least 1, got {workers}")
    settings = settings if settings is not None else Settings()

    runtime_dir = obtain_runtime(version, settings)
    log.info("Runtime %s at %s", version, runtime_dir)
    warm_up(runtime_dir, settings)

    results = {} if results is None else results
    if assume_stdlib_ok:
        jobs = apply_lists(jobs, PackageLists(ok=runtime_stdlibs(runtime_dir)), results)

    if runner is None:
        runner = partial(
            _sandbox_runner,
            version=version,
            settings=settings,
            depwarn_as_error=depwarn_as_error,
        )
    scheduler = Scheduler(
        jobs,
        workers,
        runner,
        runtime_dir,
        timeout=timeout,
        results=results,
        sink=sink,
        interval=interval,
    )
    return scheduler.run()


def _sandbox_runner(
    job: JobDescriptor,
    runtime_dir: Path,
    cancel: CancelToken,
    *,
    version: str,
    settings: Settings,
    depwarn_as_error: bool,
) -> bool:
    return run_sandboxed_test(
        job.name,
        runtime_dir,
        version=version,
        settings=settings,
        depwarn_as_error=depwarn_as_error,
        cancel=cancel,
    )
