"""Job outcomes, result persistence and run summaries."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pkgeval.errors import PkgEvalError
from pkgeval.formatting import (
    format_duration,
    format_outcome_icon,
    format_percentage,
    format_section_header,
)
from pkgeval.logging import get_logger

log = get_logger("results")


class Outcome:
    """Values stored in the result map."""

    OK = "ok"
    FAIL = "fail"
    # Only produced by the skip list, never by the scheduler.
    SKIPPED = "skipped"

    ALL = (OK, FAIL, SKIPPED)


@dataclass
class Tally:
    """Counts of each outcome in a result map."""

    ok: int = 0
    fail: int = 0
    skipped: int = 0

    @property
    def done(self) -> int:
        return self.ok + self.fail + self.skipped


def tally(results: Mapping[str, str]) -> Tally:
    """Count outcomes in *results*.

    Iterates over a snapshot of the values so it can run while workers are
    still adding entries.
    """
    counts = Tally()
    for outcome in list(results.values()):
        if outcome == Outcome.OK:
            counts.ok += 1
        elif outcome == Outcome.FAIL:
            counts.fail += 1
        elif outcome == Outcome.SKIPPED:
            counts.skipped += 1
    return counts


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def save_results(path: Path, version: str, results: Mapping[str, str]) -> None:
    """Write a result map to *path* as JSON, sorted by package name."""
    data: dict[str, Any] = {
        "version": version,
        "results": dict(sorted(results.items())),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    log.debug("Saved %d results to %s", len(results), path)


def load_results(path: Path) -> tuple[str, dict[str, str]]:
    """Read a results file written by :func:`save_results`.

    Returns:
        ``(version, results)``. Entries with an unknown outcome are dropped.

    Raises:
        PkgEvalError: If the file is missing or malformed.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise PkgEvalError(f"Results file not found: {path}") from None
    except json.JSONDecodeError as exc:
        raise PkgEvalError(f"Invalid results file {path}: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("results"), dict):
        raise PkgEvalError(f"Invalid results file {path}: missing 'results' mapping")

    results: dict[str, str] = {}
    for name, outcome in data["results"].items():
        if outcome not in Outcome.ALL:
            log.warning("Ignoring unknown outcome %r for %s", outcome, name)
            continue
        results[name] = outcome
    return str(data.get("version", "")), results


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def format_summary(
    results: Mapping[str, str],
    version: str,
    *,
    total_duration: float | None = None,
    show_failures: bool = True,
) -> str:
    """Format a run summary: header, failed package list, and counts."""
    counts = tally(results)
    total = len(results)
    lines = [f"Runtime version: {version}"]
    if total_duration is not None:
        lines.append(f"Duration: {format_duration(total_duration)}")
    lines.append("")

    failed = sorted(name for name, outcome in results.items() if outcome == Outcome.FAIL)
    if show_failures and failed:
        lines.append(format_section_header("Failures"))
        for name in failed:
            lines.append(f"  {format_outcome_icon(Outcome.FAIL)}  {name}")
        lines.append("")

    lines.extend(
        [
            f"Packages: {total}",
            f"  Success: {counts.ok:5d} ({format_percentage(counts.ok, total)})",
            f"  Failed:  {counts.fail:5d} ({format_percentage(counts.fail, total)})",
            f"  Skipped: {counts.skipped:5d} ({format_percentage(counts.skipped, total)})",
        ]
    )
    return "\n".join(lines)
