"""Tests for pkgeval.scheduler."""

from __future__ import annotations

import os
import random
import signal
import tempfile
import threading
import time
import unittest
from collections import Counter
from pathlib import Path
from unittest.mock import MagicMock, patch
from uuid import uuid4

from pkgeval.cancel import TIMEOUT, CancelToken
from pkgeval.config import Settings
from pkgeval.errors import ArtifactError, JobCancelled, SandboxError
from pkgeval.progress import ProgressSnapshot
from pkgeval.registry import JobDescriptor
from pkgeval.scheduler import Scheduler, WorkerSlot, WorkQueue, run_all, run_with_timeout

_RUNTIME = Path("/runtime")


def _jobs(*names: str) -> list[JobDescriptor]:
    return [JobDescriptor(name=n, uuid=uuid4(), path=Path("/registry") / n) for n in names]


def _pass(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
    return True


def _wait_for_cancel(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
    """Stand-in for a sandbox run that takes 10s unless cancelled."""
    return not cancel.wait(10)


class RecordingSink:
    def __init__(self) -> None:
        self.snapshots: list[ProgressSnapshot] = []
        self.closed = False

    def report(self, snapshot: ProgressSnapshot) -> None:
        self.snapshots.append(snapshot)

    def close(self) -> None:
        self.closed = True


class TestWorkQueue(unittest.TestCase):
    def test_claim_marks_slot(self) -> None:
        queue = WorkQueue(_jobs("A", "B"))
        slot = WorkerSlot()
        job = queue.claim(slot)
        assert job is not None
        self.assertEqual(slot.job, job.name)
        self.assertEqual(len(queue), 1)
        self.assertFalse(queue.is_drained([slot]))

    def test_drained_after_release(self) -> None:
        queue = WorkQueue(_jobs("A"))
        slot = WorkerSlot()
        queue.claim(slot)
        self.assertFalse(queue.is_drained([slot]))
        queue.release(slot)
        self.assertTrue(queue.is_drained([slot]))
        self.assertIsNone(queue.claim(slot))
        self.assertIsNone(slot.job)


class TestRunWithTimeout(unittest.TestCase):
    def test_pass_through(self) -> None:
        job = _jobs("A")[0]
        self.assertTrue(run_with_timeout(_pass, job, _RUNTIME, 5, CancelToken()))

    def test_timeout_is_failure(self) -> None:
        job = _jobs("Slow")[0]
        seen: list[str | None] = []

        def runner(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
            cancel.wait(10)
            seen.append(cancel.reason)
            return True

        start = time.monotonic()
        self.assertFalse(run_with_timeout(runner, job, _RUNTIME, 0.2, CancelToken()))
        self.assertLess(time.monotonic() - start, 5)
        self.assertEqual(seen, [TIMEOUT])

    def test_error_during_forced_cancel_swallowed(self) -> None:
        job = _jobs("Slow")[0]

        def runner(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
            cancel.wait(10)
            raise OSError("teardown failed")

        self.assertFalse(run_with_timeout(runner, job, _RUNTIME, 0.1, CancelToken()))

    def test_unexpected_error_propagates(self) -> None:
        job = _jobs("Bad")[0]

        def runner(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            run_with_timeout(runner, job, _RUNTIME, 5, CancelToken())

    def test_worker_cancel_raises_job_cancelled(self) -> None:
        job = _jobs("A")[0]
        worker = CancelToken()
        threading.Timer(0.05, worker.cancel).start()
        with self.assertRaises(JobCancelled):
            run_with_timeout(_wait_for_cancel, job, _RUNTIME, 10, worker)

    def test_finished_run_kept_despite_late_shutdown(self) -> None:
        job = _jobs("A")[0]
        worker = CancelToken()

        class LateShutdownTimer:
            """Timer whose cancel() lands a shutdown right after the run returned."""

            def __init__(self, interval: float, function: object) -> None:
                self.daemon = False

            def start(self) -> None:
                pass

            def cancel(self) -> None:
                worker.cancel()

        with patch("pkgeval.scheduler.threading.Timer", LateShutdownTimer):
            self.assertTrue(run_with_timeout(_pass, job, _RUNTIME, 5, worker))
        self.assertTrue(worker.is_cancelled())


class TestScheduler(unittest.TestCase):
    def test_rejects_zero_workers(self) -> None:
        with self.assertRaises(ValueError):
            Scheduler(_jobs("A"), 0, _pass, _RUNTIME)

    def test_every_job_recorded_once(self) -> None:
        names = [f"Pkg{i}" for i in range(20)]
        calls: Counter[str] = Counter()
        running: set[str] = set()
        overlaps: list[str] = []
        lock = threading.Lock()

        def runner(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
            with lock:
                calls[job.name] += 1
                if job.name in running:
                    overlaps.append(job.name)
                running.add(job.name)
            time.sleep(random.uniform(0, 0.02))
            with lock:
                running.discard(job.name)
            return job.name != "Pkg3"

        results = Scheduler(_jobs(*names), 4, runner, _RUNTIME, interval=0.01).run()
        self.assertEqual(set(results), set(names))
        self.assertEqual(len(results), 20)
        self.assertEqual(results["Pkg3"], "fail")
        self.assertEqual(sum(1 for v in results.values() if v == "ok"), 19)
        self.assertEqual(set(calls.values()), {1})
        self.assertEqual(overlaps, [])

    def test_more_workers_than_jobs(self) -> None:
        results = Scheduler(_jobs("A", "B"), 5, _pass, _RUNTIME, interval=0.01).run()
        self.assertEqual(results, {"A": "ok", "B": "ok"})

    def test_no_jobs(self) -> None:
        sink = RecordingSink()
        results = Scheduler([], 2, _pass, _RUNTIME, sink=sink, interval=0.01).run()
        self.assertEqual(results, {})
        self.assertTrue(sink.closed)

    def test_timeout_only_affects_that_job(self) -> None:
        def runner(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
            if job.name == "Slow":
                return not cancel.wait(10)
            return True

        start = time.monotonic()
        results = Scheduler(
            _jobs("Fast1", "Slow", "Fast2"), 2, runner, _RUNTIME, timeout=0.3, interval=0.01
        ).run()
        self.assertLess(time.monotonic() - start, 5)
        self.assertEqual(results, {"Fast1": "ok", "Slow": "fail", "Fast2": "ok"})

    def test_results_updated_in_place(self) -> None:
        existing = {"Listed": "skipped"}
        sink = RecordingSink()
        results = Scheduler(
            _jobs("A"), 1, _pass, _RUNTIME, results=existing, sink=sink, interval=0.01
        ).run()
        self.assertIs(results, existing)
        self.assertEqual(existing, {"Listed": "skipped", "A": "ok"})
        first = sink.snapshots[0]
        self.assertEqual(first.skipped + first.ok + first.fail + first.remaining, 2)

    def test_final_snapshot_is_complete(self) -> None:
        sink = RecordingSink()
        Scheduler(_jobs("A", "B", "C"), 2, _pass, _RUNTIME, sink=sink, interval=0.01).run()
        last = sink.snapshots[-1]
        self.assertEqual((last.ok, last.fail, last.remaining), (3, 0, 0))
        self.assertEqual(len(last.workers), 2)
        self.assertTrue(all(w.job is None for w in last.workers))

    def test_snapshot_shows_running_job(self) -> None:
        started = threading.Event()

        def runner(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
            started.set()
            cancel.wait(10)
            return True

        scheduler = Scheduler(_jobs("Busy"), 1, runner, _RUNTIME, timeout=0.5, interval=0.01)
        thread = threading.Thread(target=scheduler.run)
        thread.start()
        self.assertTrue(started.wait(5))
        snap = scheduler.snapshot()
        self.assertEqual(snap.running, ["Busy"])
        self.assertEqual(snap.remaining, 1)
        thread.join(timeout=10)
        self.assertFalse(thread.is_alive())
        self.assertEqual(scheduler.results, {"Busy": "fail"})

    def test_reporter_error_stops_workers(self) -> None:
        class BrokenSink(RecordingSink):
            def report(self, snapshot: ProgressSnapshot) -> None:
                raise RuntimeError("terminal gone")

        start = time.monotonic()
        with self.assertRaisesRegex(RuntimeError, "terminal gone"):
            Scheduler(
                _jobs("A", "B"), 2, _wait_for_cancel, _RUNTIME, sink=BrokenSink(), interval=0.01
            ).run()
        self.assertLess(time.monotonic() - start, 5)

    def test_interrupt_stops_workers_and_propagates(self) -> None:
        if signal.getsignal(signal.SIGINT) is not signal.default_int_handler:
            self.skipTest("SIGINT is not delivered as KeyboardInterrupt here")
        scheduler = Scheduler(_jobs("A", "B", "C"), 2, _wait_for_cancel, _RUNTIME, interval=0.01)
        interrupt = threading.Timer(0.3, os.kill, args=(os.getpid(), signal.SIGINT))
        start = time.monotonic()
        interrupt.start()
        try:
            with self.assertRaises(KeyboardInterrupt):
                scheduler.run()
        finally:
            interrupt.cancel()
        self.assertLess(time.monotonic() - start, 5)
        self.assertTrue(scheduler.shutdown.is_stop_requested())
        self.assertTrue(all(token.is_cancelled() for token in scheduler.tokens))
        self.assertEqual(scheduler.results, {})


@patch("pkgeval.scheduler.warm_up")
@patch("pkgeval.scheduler.obtain_runtime", return_value=_RUNTIME)
class TestRunAll(unittest.TestCase):
    def test_scenario_both_succeed(self, mock_obtain: MagicMock, mock_warm: MagicMock) -> None:
        results = run_all(
            _jobs("PkgA", "PkgB"), 2, "1.0.3", settings=Settings(), runner=_pass, interval=0.01
        )
        self.assertEqual(results, {"PkgA": "ok", "PkgB": "ok"})
        mock_obtain.assert_called_once()
        self.assertEqual(mock_obtain.call_args[0][0], "1.0.3")
        mock_warm.assert_called_once()

    def test_scenario_timeout(self, mock_obtain: MagicMock, mock_warm: MagicMock) -> None:
        observed: list[str | None] = []

        def runner(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
            finished = not cancel.wait(10)
            observed.append(cancel.reason)
            return finished

        start = time.monotonic()
        results = run_all(
            _jobs("PkgSlow"), 1, "1.0.3", timeout=1, runner=runner, interval=0.01
        )
        elapsed = time.monotonic() - start
        self.assertEqual(results, {"PkgSlow": "fail"})
        self.assertEqual(observed, [TIMEOUT])
        self.assertLess(elapsed, 5)

    def test_scenario_worker_error(self, mock_obtain: MagicMock, mock_warm: MagicMock) -> None:
        def runner(job: JobDescriptor, runtime_dir: Path, cancel: CancelToken) -> bool:
            if job.name == "PkgB":
                raise RuntimeError("worker exploded")
            return not cancel.wait(10)

        results: dict[str, str] = {}
        start = time.monotonic()
        with self.assertRaisesRegex(RuntimeError, "worker exploded"):
            run_all(
                _jobs("PkgA", "PkgB", "PkgC"),
                3,
                "1.0.3",
                results=results,
                runner=runner,
                interval=0.01,
            )
        self.assertLess(time.monotonic() - start, 5)
        self.assertNotIn("PkgB", results)
        for name in ("PkgA", "PkgC"):
            self.assertIn(results.get(name, "cancelled"), ("ok", "cancelled"))

    def test_obtain_failure_is_fatal(self, mock_obtain: MagicMock, mock_warm: MagicMock) -> None:
        mock_obtain.side_effect = ArtifactError("Requested version not found: 9.9")
        runner = MagicMock(return_value=True)
        with self.assertRaises(ArtifactError):
            run_all(_jobs("A"), 1, "9.9", runner=runner)
        runner.assert_not_called()
        mock_warm.assert_not_called()

    def test_warm_up_failure_is_fatal(self, mock_obtain: MagicMock, mock_warm: MagicMock) -> None:
        mock_warm.side_effect = SandboxError("no privileges")
        runner = MagicMock(return_value=True)
        with self.assertRaises(SandboxError):
            run_all(_jobs("A"), 1, "1.0.3", runner=runner)
        runner.assert_not_called()

    def test_runtime_stdlibs_assumed_ok(
        self, mock_obtain: MagicMock, mock_warm: MagicMock
    ) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            runtime = Path(tmp)
            (runtime / "share" / "julia" / "stdlib" / "v1.0" / "Test").mkdir(parents=True)
            mock_obtain.return_value = runtime
            runner = MagicMock(return_value=True)
            results = run_all(
                _jobs("Test", "PkgA"), 1, "1.0.3", runner=runner, interval=0.01
            )
            self.assertEqual(results, {"Test": "ok", "PkgA": "ok"})
            self.assertEqual([c[0][0].name for c in runner.call_args_list], ["PkgA"])

            runner.reset_mock()
            results = run_all(
                _jobs("Test"), 1, "1.0.3", runner=runner, interval=0.01, assume_stdlib_ok=False
            )
            self.assertEqual(results, {"Test": "ok"})
            runner.assert_called_once()

    def test_zero_workers(self, mock_obtain: MagicMock, mock_warm: MagicMock) -> None:
        with self.assertRaises(ValueError):
            run_all(_jobs("A"), 0, "1.0.3", runner=_pass)
        mock_obtain.assert_not_called()

    @patch("pkgeval.scheduler.run_sandboxed_test", return_value=False)
    def test_default_runner_uses_sandbox(
        self, mock_test: MagicMock, mock_obtain: MagicMock, mock_warm: MagicMock
    ) -> None:
        settings = Settings()
        results = run_all(
            _jobs("PkgA"), 1, "1.0.3", settings=settings, depwarn_as_error=True, interval=0.01
        )
        self.assertEqual(results, {"PkgA": "fail"})
        args, kwargs = mock_test.call_args
        self.assertEqual(args, ("PkgA", _RUNTIME))
        self.assertEqual(kwargs["version"], "1.0.3")
        self.assertIs(kwargs["settings"], settings)
        self.assertTrue(kwargs["depwarn_as_error"])
        self.assertIsInstance(kwargs["cancel"], CancelToken)


if __name__ == "__main__":
    unittest.main()
