"""Runtime artifact cache.

Resolves a requested runtime version to an unpacked installation
directory. The ``Versions.toml`` manifest lists, for each known version,
either a download URL or a local archive, plus the archive's SHA-256.
Archives are downloaded once into ``<deps>/downloads`` and verified
before they are unpacked into ``<deps>/<runtime>-<version>``.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import tarfile
import tomllib
from dataclasses import dataclass
from pathlib import Path

import requests

from pkgeval import __version__
from pkgeval.config import Settings
from pkgeval.errors import ArtifactError, ChecksumError
from pkgeval.logging import get_logger

log = get_logger("versions")

_USER_AGENT = f"pkgeval/{__version__}"
_CHUNK_SIZE = 1 << 16


@dataclass(frozen=True)
class VersionSpec:
    """One entry of the version manifest."""

    version: str
    sha: str
    url: str | None = None
    file: str | None = None


def normalize_version(version: str) -> str:
    """Strip whitespace and a leading ``v`` so ``"v1.0.3"`` matches ``"1.0.3"``."""
    version = version.strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    return version


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def read_versions(manifest: Path) -> dict[str, VersionSpec]:
    """Parse the version manifest.

    Raises:
        ArtifactError: If the manifest is missing, unparsable, or an entry
            has neither ``url`` nor ``file``, or no ``sha``.
    """
    try:
        data = tomllib.loads(manifest.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ArtifactError(f"Version manifest not found: {manifest}") from None
    except tomllib.TOMLDecodeError as exc:
        raise ArtifactError(f"Invalid version manifest {manifest}: {exc}") from exc

    specs: dict[str, VersionSpec] = {}
    for raw_version, entry in data.items():
        if not isinstance(entry, dict):
            log.debug("Ignoring non-table manifest key %r", raw_version)
            continue
        version = normalize_version(raw_version)
        if "sha" not in entry:
            raise ArtifactError(f"Manifest entry {version} has no sha")
        if "url" not in entry and "file" not in entry:
            raise ArtifactError(f"Manifest entry {version} has neither url nor file")
        specs[version] = VersionSpec(
            version=version,
            sha=str(entry["sha"]).lower(),
            url=entry.get("url"),
            file=entry.get("file"),
        )
    return specs


def find_version(version: str, settings: Settings) -> VersionSpec:
    """Look up *version* in the manifest.

    Raises:
        ArtifactError: If the version is not listed.
    """
    specs = read_versions(settings.manifest_path())
    spec = specs.get(normalize_version(version))
    if spec is None:
        raise ArtifactError(f"Requested version not found: {version}")
    return spec


# ---------------------------------------------------------------------------
# Download / verify / unpack
# ---------------------------------------------------------------------------


def file_sha256(path: Path) -> str:
    """Return the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify(path: Path, sha: str) -> None:
    """Check that *path* hashes to *sha*.

    Raises:
        ArtifactError: If the file does not exist.
        ChecksumError: On mismatch.
    """
    if not path.is_file():
        raise ArtifactError(f"Artifact not found: {path}")
    actual = file_sha256(path)
    if actual != sha.lower():
        raise ChecksumError(path, sha, actual)
    log.debug("Verified %s (sha256 %s)", path, actual)


def download(url: str, dest: Path, *, timeout: float = 60.0) -> None:
    """Stream *url* into *dest*, replacing it only once the transfer completes.

    Raises:
        ArtifactError: On connection errors, timeouts or a non-200 status.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    log.info("Downloading %s", url)
    try:
        with requests.get(
            url, stream=True, timeout=timeout, headers={"User-Agent": _USER_AGENT}
        ) as resp:
            if resp.status_code != 200:
                raise ArtifactError(f"Download of {url} failed with HTTP {resp.status_code}")
            with open(partial, "wb") as f:
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    f.write(chunk)
    except requests.ConnectionError as exc:
        partial.unlink(missing_ok=True)
        raise ArtifactError(f"Connection error downloading {url}: {exc}") from exc
    except requests.Timeout as exc:
        partial.unlink(missing_ok=True)
        raise ArtifactError(f"Timeout downloading {url}") from exc
    except requests.RequestException as exc:
        partial.unlink(missing_ok=True)
        raise ArtifactError(f"Request error downloading {url}: {exc}") from exc
    except ArtifactError:
        partial.unlink(missing_ok=True)
        raise
    os.replace(partial, dest)


def unpack(archive: Path, dest: Path, *, force: bool = False) -> None:
    """Unpack a tarball into *dest*.

    With *force*, an existing *dest* is removed first, so a partial earlier
    unpack never survives.
    """
    if force and dest.exists():
        log.debug("Removing previous unpack at %s", dest)
        shutil.rmtree(dest)
    dest.mkdir(parents=True, exist_ok=True)
    log.info("Unpacking %s into %s", archive, dest)
    try:
        with tarfile.open(archive) as tar:
            tar.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as exc:
        shutil.rmtree(dest, ignore_errors=True)
        raise ArtifactError(f"Could not unpack {archive}: {exc}") from exc


def download_verify_unpack(
    url: str,
    sha: str,
    dest: Path,
    *,
    tarball_path: Path,
    force: bool = False,
    timeout: float = 60.0,
) -> None:
    """Make sure *tarball_path* holds the verified archive, then unpack it.

    An archive already in the cache with the right checksum is reused
    without touching the network. A cached archive with the wrong checksum
    is an error, not a reason to download again.
    """
    if not tarball_path.exists():
        download(url, tarball_path, timeout=timeout)
    else:
        log.debug("Using cached archive %s", tarball_path)
    verify(tarball_path, sha)
    unpack(tarball_path, dest, force=force)


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def obtain_runtime(version: str, settings: Settings) -> Path:
    """Make *version* available on disk and return its installation directory.

    Safe to call repeatedly: downloads happen only the first time.

    Raises:
        ArtifactError: If the version is unknown, the download fails or the
            archive cannot be unpacked.
        ChecksumError: If the archive does not match the manifest.
    """
    spec = find_version(version, settings)
    dest = settings.runtime_path(spec.version)
    if spec.url:
        file = spec.file or f"{settings.runtime_name}-{spec.version}.tar.gz"
        if Path(file).is_absolute():
            raise ArtifactError(f"Manifest file for {spec.version} must be relative: {file}")
        download_verify_unpack(
            spec.url,
            spec.sha,
            dest,
            tarball_path=settings.downloads_dir(file),
            force=True,
            timeout=settings.download_timeout,
        )
    elif spec.file:
        archive = Path(spec.file)
        if not archive.is_absolute():
            archive = settings.downloads_dir(spec.file)
        verify(archive, spec.sha)
        if dest.is_dir():
            log.debug("Runtime %s already unpacked at %s", spec.version, dest)
        else:
            unpack(archive, dest)
    else:
        raise ArtifactError(f"Manifest entry for {spec.version} has neither url nor file")
    return installed_runtime_dir(spec.version, settings)


def installed_runtime_dir(version: str, settings: Settings) -> Path:
    """Return the directory that actually contains the runtime.

    Archives from release builders wrap everything in a single top-level
    directory; archives built locally do not. Both layouts are accepted.
    """
    path = settings.runtime_path(normalize_version(version))
    if not path.is_dir():
        raise ArtifactError(f"Runtime {version} is not installed at {path}")
    contents = list(path.iterdir())
    if len(contents) == 1 and contents[0].is_dir():
        path = contents[0]
    return path
