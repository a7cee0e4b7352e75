"""Package registry access.

The registry is a git checkout whose ``Registry.toml`` maps each package
UUID to its name and the relative path of its metadata directory. This
module keeps the checkout current and turns it into the list of jobs the
scheduler works through.
"""

from __future__ import annotations

import subprocess
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import UUID

from pkgeval.config import Settings
from pkgeval.errors import RegistryError
from pkgeval.logging import get_logger

log = get_logger("registry")


@dataclass(frozen=True)
class JobDescriptor:
    """A single package to test."""

    name: str
    uuid: UUID
    path: Path


# ---------------------------------------------------------------------------
# Checkout management
# ---------------------------------------------------------------------------


def clone_registry(url: str, dest: Path) -> None:
    """Shallow-clone the registry repository into *dest*.

    Raises:
        subprocess.CalledProcessError: If the clone fails.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    log.debug("Running: git clone --depth=1 %s %s", url, dest)
    proc = subprocess.run(
        ["git", "clone", "--depth=1", url, str(dest)],
        capture_output=True,
        text=True,
        timeout=600,
        check=True,
    )
    if proc.stderr:
        log.debug("git clone stderr: %s", proc.stderr.strip())


def pull_registry(dest: Path) -> None:
    """Fast-forward an existing registry checkout.

    Raises:
        subprocess.CalledProcessError: If the pull fails.
    """
    log.debug("Running: git pull --ff-only (in %s)", dest)
    proc = subprocess.run(
        ["git", "pull", "--ff-only"],
        capture_output=True,
        text=True,
        cwd=str(dest),
        timeout=600,
        check=True,
    )
    if proc.stdout.strip():
        log.debug("git pull: %s", proc.stdout.strip())


def update_registry(settings: Settings) -> Path:
    """Clone the registry if it is absent, otherwise update it.

    Returns:
        The registry directory.

    Raises:
        RegistryError: If git fails.
    """
    dest = settings.registry_dir()
    try:
        if (dest / ".git").exists():
            log.info("Updating registry at %s", dest)
            pull_registry(dest)
        else:
            log.info("Cloning registry from %s to %s", settings.registry_url, dest)
            clone_registry(settings.registry_url, dest)
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise RegistryError(f"git failed for registry at {dest}: {stderr}") from exc
    except (subprocess.TimeoutExpired, OSError) as exc:
        raise RegistryError(f"Could not update registry at {dest}: {exc}") from exc
    return dest


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def read_registry(registry_dir: Path) -> dict[str, Any]:
    """Parse ``Registry.toml`` from *registry_dir*.

    Raises:
        RegistryError: If the file is missing or is not valid TOML.
    """
    registry_file = registry_dir / "Registry.toml"
    try:
        return tomllib.loads(registry_file.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise RegistryError(
            f"Registry not found at {registry_dir}; run `pkgeval registry-update` first"
        ) from None
    except tomllib.TOMLDecodeError as exc:
        raise RegistryError(f"Invalid registry file {registry_file}: {exc}") from exc


def list_jobs(registry_dir: Path, packages: list[str] | None = None) -> list[JobDescriptor]:
    """Read the registry into job descriptors.

    Args:
        registry_dir: The registry checkout.
        packages: If given, only these package names are returned. Names
            are removed from the list as they are found, so whatever is
            left afterwards was not in the registry.

    Returns:
        Jobs in registry order.
    """
    data = read_registry(registry_dir)
    jobs: list[JobDescriptor] = []
    for raw_uuid, pkg_data in data.get("packages", {}).items():
        name = pkg_data["name"]
        if packages is not None:
            if name not in packages:
                continue
            packages.remove(name)
        path = (registry_dir / pkg_data["path"]).resolve()
        jobs.append(JobDescriptor(name=name, uuid=UUID(raw_uuid), path=path))

    if packages:
        missing = "\n".join(f"  - {name}" for name in packages)
        log.warning("Did not find the following packages in the registry:\n%s", missing)
    log.debug("Read %d job(s) from %s", len(jobs), registry_dir)
    return jobs
