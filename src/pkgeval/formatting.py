"""Shared text formatting helpers for pkgeval.

Durations, percentages, section headers and outcome labels used by the
progress display and the run summary.
"""

from __future__ import annotations


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable duration.

    Examples: ``'8s'``, ``'1m 23s'``, ``'1h 12m 34s'``. Always whole seconds
    (truncated, not rounded).
    """
    total = int(seconds)
    if total >= 3600:
        h = total // 3600
        m = (total % 3600) // 60
        s = total % 60
        return f"{h}h {m:2d}m {s:2d}s"
    if total >= 60:
        m = total // 60
        s = total % 60
        return f"{m}m {s:2d}s"
    return f"{total}s"


def format_outcome_icon(outcome: str) -> str:
    """Return a visual indicator for a job outcome."""
    icons: dict[str, str] = {
        "ok": "✓ OK",
        "fail": "✗ FAIL",
        "skipped": "⊘ SKIP",
    }
    return icons.get(outcome, outcome.upper())


def format_section_header(title: str, width: int = 80) -> str:
    """Format a section header: ``'─── Title ──...'``."""
    prefix = "─── "
    suffix_len = width - len(prefix) - len(title) - 1
    suffix = " " + "─" * max(0, suffix_len)
    return prefix + title + suffix


def truncate(text: str, max_len: int, suffix: str = "...") -> str:
    """Truncate text to *max_len*, adding *suffix* if truncated."""
    if len(text) <= max_len:
        return text
    if max_len <= len(suffix):
        return suffix[:max_len]
    return text[: max_len - len(suffix)] + suffix


def format_percentage(count: int, total: int) -> str:
    """Format as percentage: ``'44.2%'``. Returns ``'-'`` if *total* is 0."""
    if total == 0:
        return "-"
    return f"{count / total * 100:.1f}%"
