"""Command-line interface for pkgeval.

Provides the ``pkgeval`` group with ``obtain``, ``registry-update``,
``list``, ``run`` and ``summary`` subcommands.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

import click

from pkgeval import __version__
from pkgeval.config import DEFAULT_REGISTRY_URL, Settings
from pkgeval.errors import PkgEvalError
from pkgeval.logging import setup_logging


def _parse_packages(packages_csv: str | None, names: tuple[str, ...] = ()) -> list[str] | None:
    """Merge ``--packages a,b`` and positional names; None means no filter."""
    selected = list(names)
    if packages_csv:
        selected.extend(p.strip() for p in packages_csv.split(",") if p.strip())
    return selected or None


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--deps-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("deps"),
    show_default=True,
    help="Directory holding downloads and unpacked runtimes.",
)
@click.option(
    "--versions-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Version manifest (default: DEPS_DIR/Versions.toml).",
)
@click.option(
    "--depot",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path.home() / ".julia",
    show_default=True,
    help="Depot containing registries/General.",
)
@click.option("--registry-url", default=DEFAULT_REGISTRY_URL, show_default=True)
@click.option(
    "--logs-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("logs"),
    show_default=True,
)
@click.option("--sandbox-command", default="bwrap", show_default=True)
@click.pass_context
def main(
    ctx: click.Context,
    deps_dir: Path,
    versions_file: Path | None,
    depot: Path,
    registry_url: str,
    logs_dir: Path,
    sandbox_command: str,
) -> None:
    """pkgeval: run every registered package's tests against a runtime version."""
    ctx.obj = Settings(
        deps_dir=deps_dir,
        versions_file=versions_file,
        depot=depot,
        registry_url=registry_url,
        logs_dir=logs_dir,
        sandbox_command=sandbox_command,
    )


@main.command()
@click.argument("version")
@click.option("-v", "--verbose", is_flag=True, help="Show detailed output.")
@click.pass_obj
def obtain(settings: Settings, version: str, verbose: bool) -> None:
    """Download, verify and unpack runtime VERSION, then print its directory."""
    from pkgeval.versions import obtain_runtime

    setup_logging(verbose=verbose)
    try:
        path = obtain_runtime(version, settings)
    except PkgEvalError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(str(path))


@main.command("registry-update")
@click.option("-v", "--verbose", is_flag=True, help="Show detailed output.")
@click.pass_obj
def registry_update(settings: Settings, verbose: bool) -> None:
    """Clone the package registry, or update an existing checkout."""
    from pkgeval.registry import update_registry

    setup_logging(verbose=verbose)
    try:
        path = update_registry(settings)
    except PkgEvalError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Registry ready at {path}")


@main.command("list")
@click.argument("packages", nargs=-1)
@click.pass_obj
def list_cmd(settings: Settings, packages: tuple[str, ...]) -> None:
    """Print the packages in the registry, optionally only PACKAGES."""
    from pkgeval.registry import list_jobs

    setup_logging()
    selected = _parse_packages(None, packages)
    try:
        jobs = list_jobs(settings.registry_dir(), selected)
    except PkgEvalError as exc:
        raise click.ClickException(str(exc)) from exc
    for job in jobs:
        click.echo(f"{job.name}\t{job.uuid}")
    if selected:
        # Whatever list_jobs did not consume was not found.
        sys.exit(1)


@main.command("run")
@click.argument("version")
@click.option("--packages", "packages_csv", type=str, default=None, help="Comma-separated names.")
@click.option("--workers", type=int, default=1, show_default=True)
@click.option(
    "--timeout",
    type=int,
    default=45 * 60,
    show_default=True,
    help="Per-package time limit in seconds.",
)
@click.option("--depwarn-error", is_flag=True, help="Fail packages that emit deprecation warnings.")
@click.option(
    "--lists-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file with skip/ok lists (default: bundled lists).",
)
@click.option("--no-lists", is_flag=True, help="Ignore skip/ok lists.")
@click.option(
    "--results-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Where to write results JSON (default: results-VERSION.json).",
)
@click.option("--no-progress", is_flag=True, help="Log progress instead of redrawing it.")
@click.option("--update-registry", is_flag=True, help="Update the registry before running.")
@click.option("-v", "--verbose", is_flag=True)
@click.option("-q", "--quiet", is_flag=True, help="Only show warnings and errors.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("pkgeval-run.log"),
    show_default=True,
)
@click.pass_obj
def run_cmd(
    settings: Settings,
    version: str,
    packages_csv: str | None,
    workers: int,
    timeout: int,
    depwarn_error: bool,
    lists_file: Path | None,
    no_lists: bool,
    results_file: Path | None,
    no_progress: bool,
    update_registry: bool,
    verbose: bool,
    quiet: bool,
    log_file: Path,
) -> None:
    """Test registry packages against runtime VERSION."""
    from pkgeval.lists import apply_lists, load_lists
    from pkgeval.progress import LogSink, ProgressSink, TerminalSink
    from pkgeval.registry import list_jobs
    from pkgeval.registry import update_registry as do_update_registry
    from pkgeval.results import format_summary, save_results
    from pkgeval.scheduler import run_all

    setup_logging(verbose=verbose, quiet=quiet, log_file=log_file)

    if workers < 1:
        raise click.UsageError("--workers must be at least 1")
    if timeout < 1:
        raise click.UsageError("--timeout must be at least 1")

    results: dict[str, str] = {}
    try:
        if update_registry:
            do_update_registry(settings)
        jobs = list_jobs(settings.registry_dir(), _parse_packages(packages_csv))
        if not no_lists:
            jobs = apply_lists(jobs, load_lists(lists_file), results)
    except PkgEvalError as exc:
        raise click.ClickException(str(exc)) from exc

    if not jobs and not results:
        click.echo("No packages to test.")
        return

    sink: ProgressSink
    if no_progress or quiet or not sys.stdout.isatty():
        sink = LogSink()
    else:
        sink = TerminalSink()

    if results_file is None:
        results_file = Path(f"results-{version}.json")

    click.echo(f"Testing {len(jobs)} package(s) against {version} with {workers} worker(s)")
    start = time.monotonic()
    try:
        run_all(
            jobs,
            workers,
            version,
            settings=settings,
            timeout=timeout,
            results=results,
            depwarn_as_error=depwarn_error,
            sink=sink,
            assume_stdlib_ok=not no_lists,
        )
    except PkgEvalError as exc:
        save_results(results_file, version, results)
        raise click.ClickException(str(exc)) from exc
    except BaseException:
        # Keep whatever finished before the failure or interrupt.
        save_results(results_file, version, results)
        raise

    save_results(results_file, version, results)
    click.echo("")
    click.echo(
        format_summary(
            results, version, total_duration=time.monotonic() - start, show_failures=not quiet
        )
    )
    click.echo(f"Results written to {results_file}")


@main.command()
@click.argument("results_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-q", "--quiet", is_flag=True, help="Only show counts.")
def summary(results_file: Path, quiet: bool) -> None:
    """Print a summary of a saved RESULTS_FILE."""
    from pkgeval.results import format_summary, load_results

    setup_logging(quiet=True)
    try:
        version, results = load_results(results_file)
    except PkgEvalError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(format_summary(results, version, show_failures=not quiet))
