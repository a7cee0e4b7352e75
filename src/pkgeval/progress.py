"""Live progress reporting.

The reporter runs next to the worker pool, takes a snapshot of the shared
state once per interval and hands it to a sink. Sinks only render; they
have no say in scheduling. When the queue is drained and every worker is
idle, the reporter requests shutdown, which is how a run normally ends.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import click

from pkgeval.cancel import ShutdownController
from pkgeval.formatting import format_duration, truncate
from pkgeval.logging import get_logger

log = get_logger("progress")

_CSI = "\x1b["


@dataclass(frozen=True)
class WorkerStatus:
    """What one worker was doing when the snapshot was taken."""

    index: int
    job: str | None = None
    elapsed: float = 0.0


@dataclass(frozen=True)
class ProgressSnapshot:
    """Aggregate counts plus per-worker status at one point in time."""

    ok: int
    fail: int
    skipped: int
    remaining: int
    workers: tuple[WorkerStatus, ...] = ()

    @property
    def running(self) -> list[str]:
        return [w.job for w in self.workers if w.job is not None]


class ProgressSink(Protocol):
    """Destination for progress snapshots."""

    def report(self, snapshot: ProgressSnapshot) -> None: ...

    def close(self) -> None: ...


class NullSink:
    """Discard all progress."""

    def report(self, snapshot: ProgressSnapshot) -> None:
        pass

    def close(self) -> None:
        pass


class LogSink:
    """Log a one-line tally at INFO, at most once every *every* seconds."""

    def __init__(self, every: float = 30.0) -> None:
        self.every = every
        self._last: float | None = None

    def report(self, snapshot: ProgressSnapshot) -> None:
        now = time.monotonic()
        if self._last is not None and now - self._last < self.every:
            return
        self._last = now
        log.info(
            "Progress: %d ok, %d failed, %d skipped, %d remaining; running: %s",
            snapshot.ok,
            snapshot.fail,
            snapshot.skipped,
            snapshot.remaining,
            ", ".join(snapshot.running) or "-",
        )

    def close(self) -> None:
        self._last = None


def render_snapshot(snapshot: ProgressSnapshot, *, color: bool = True) -> list[str]:
    """Render a snapshot as terminal lines: a tally line, then one line per worker."""

    def style(text: object, fg: str) -> str:
        return click.style(str(text), fg=fg) if color else str(text)

    lines = [
        f"Success: {style(snapshot.ok, 'green')}"
        f"\tFailed: {style(snapshot.fail, 'red')}"
        f"\tSkipped: {style(snapshot.skipped, 'yellow')}"
        f"\tRemaining: {snapshot.remaining}"
    ]
    for worker in snapshot.workers:
        if worker.job is None:
            lines.append(f"Worker {worker.index}: -------")
        else:
            name = truncate(worker.job, 40)
            lines.append(
                f"Worker {worker.index}: {name} running for {format_duration(worker.elapsed)}"
            )
    return lines


class TerminalSink:
    """Redraw a fixed block of the terminal with every snapshot."""

    def __init__(self, *, color: bool = True) -> None:
        self.color = color
        self._drawn = 0

    def report(self, snapshot: ProgressSnapshot) -> None:
        lines = render_snapshot(snapshot, color=self.color)
        prefix = ""
        if self._drawn:
            # Move up over the previous block and clear to the end of the screen.
            prefix = f"{_CSI}{self._drawn}A{_CSI}1G{_CSI}0J"
        click.echo(prefix + "\n".join(lines))
        self._drawn = len(lines)

    def close(self) -> None:
        self._drawn = 0


class ProgressReporter:
    """Periodically report progress until the work is done or a stop is requested.

    Args:
        snapshot: Builds the current :class:`ProgressSnapshot`.
        is_idle: Returns True once the queue is empty and no worker is busy.
        shutdown: The run's shutdown controller.
        sink: Where snapshots go.
        interval: Seconds between snapshots.
    """

    def __init__(
        self,
        snapshot: Callable[[], ProgressSnapshot],
        is_idle: Callable[[], bool],
        shutdown: ShutdownController,
        sink: ProgressSink,
        interval: float = 1.0,
    ) -> None:
        self._snapshot = snapshot
        self._is_idle = is_idle
        self._shutdown = shutdown
        self._sink = sink
        self._interval = interval

    def run(self) -> None:
        """Report until done, then request shutdown.

        Any error requests shutdown as well and is re-raised.
        """
        try:
            while not self._shutdown.is_stop_requested() and not self._is_idle():
                self._sink.report(self._snapshot())
                self._shutdown.wait(self._interval)
            self._sink.report(self._snapshot())
        except Exception:
            self._shutdown.request_stop()
            raise
        finally:
            self._sink.close()
        self._shutdown.request_stop()
