"""Skip and ok lists.

Some packages hang or are known to be irrelevant; others are assumed to
pass without being run. Both lists live in a YAML file so they can be
edited without touching code. A default file ships with the package.
The standard libraries bundled with a runtime are assumed ok as well.
"""

from __future__ import annotations

from collections.abc import MutableMapping, Sequence
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path

import yaml

from pkgeval.errors import PkgEvalError
from pkgeval.logging import get_logger
from pkgeval.registry import JobDescriptor
from pkgeval.results import Outcome

log = get_logger("lists")


@dataclass
class PackageLists:
    """Names to skip and names to assume ok."""

    skip: list[str] = field(default_factory=list)
    ok: list[str] = field(default_factory=list)


def _parse_lists(text: str, source: str) -> PackageLists:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PkgEvalError(f"Invalid lists file {source}: {exc}") from exc
    if data is None:
        return PackageLists()
    if not isinstance(data, dict):
        raise PkgEvalError(f"Invalid lists file {source}: expected a mapping")
    skip = data.get("skip") or []
    ok = data.get("ok") or []
    if not isinstance(skip, list) or not isinstance(ok, list):
        raise PkgEvalError(f"Invalid lists file {source}: 'skip' and 'ok' must be lists")
    return PackageLists(skip=[str(n) for n in skip], ok=[str(n) for n in ok])


def load_lists(path: Path | None = None) -> PackageLists:
    """Load skip/ok lists from *path*, or the bundled defaults when ``None``."""
    if path is None:
        text = resources.files("pkgeval").joinpath("data/lists.yaml").read_text(encoding="utf-8")
        return _parse_lists(text, "<bundled lists.yaml>")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PkgEvalError(f"Could not read lists file {path}: {exc}") from exc
    return _parse_lists(text, str(path))


def runtime_stdlibs(runtime_dir: Path) -> list[str]:
    """Names of the standard libraries shipped with the runtime at *runtime_dir*.

    They live under ``share/julia/stdlib/<version>/`` and are part of the
    runtime itself, so there is nothing to install or test.
    """
    root = runtime_dir / "share" / "julia" / "stdlib"
    if not root.is_dir():
        log.debug("No stdlib directory in %s", runtime_dir)
        return []
    names: list[str] = []
    for version_dir in sorted(root.iterdir()):
        if version_dir.is_dir():
            names.extend(p.name for p in sorted(version_dir.iterdir()) if p.is_dir())
    return names


def apply_lists(
    jobs: Sequence[JobDescriptor],
    lists: PackageLists,
    results: MutableMapping[str, str],
) -> list[JobDescriptor]:
    """Pre-fill *results* for listed packages and return the jobs left to run."""
    skip = set(lists.skip)
    ok = set(lists.ok)
    remaining: list[JobDescriptor] = []
    for job in jobs:
        if job.name in skip:
            log.debug("Skipping %s (skip list)", job.name)
            results[job.name] = Outcome.SKIPPED
        elif job.name in ok:
            log.debug("Assuming %s is ok (ok list)", job.name)
            results[job.name] = Outcome.OK
        else:
            remaining.append(job)
    return remaining
