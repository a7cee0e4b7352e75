"""Run settings for pkgeval.

All filesystem locations used by the artifact cache, the job source and
the sandbox runner are derived from a single :class:`Settings` object so
that tests and the CLI can relocate everything at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_REGISTRY_URL = "https://github.com/JuliaRegistries/General.git"


@dataclass
class Settings:
    """Locations and tunables shared by every pkgeval component."""

    deps_dir: Path = field(default_factory=lambda: Path("deps"))
    versions_file: Path | None = None  # defaults to <deps_dir>/Versions.toml
    depot: Path = field(default_factory=lambda: Path.home() / ".julia")
    registry_url: str = DEFAULT_REGISTRY_URL
    logs_dir: Path = field(default_factory=lambda: Path("logs"))
    runtime_name: str = "julia"
    sandbox_command: str = "bwrap"
    download_timeout: float = 60.0
    poll_interval: float = 0.5  # seconds between cancellation checks in a sandbox run

    def manifest_path(self) -> Path:
        """Return the path of the version manifest."""
        if self.versions_file is not None:
            return self.versions_file
        return self.deps_dir / "Versions.toml"

    def downloads_dir(self, name: str = "") -> Path:
        """Return the download cache directory, or a file inside it."""
        base = self.deps_dir / "downloads"
        return base / name if name else base

    def runtime_path(self, version: str) -> Path:
        """Return the directory a runtime version is unpacked into."""
        return self.deps_dir / f"{self.runtime_name}-{version}"

    def log_path(self, version: str) -> Path:
        """Return the per-version directory that holds job logs."""
        return self.logs_dir / f"logs-{version}"

    def registry_dir(self) -> Path:
        """Return the location of the package registry checkout."""
        return self.depot / "registries" / "General"
