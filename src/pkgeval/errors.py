"""Exception types raised by pkgeval."""

from __future__ import annotations


class PkgEvalError(Exception):
    """Base class for fatal pkgeval errors."""


class ArtifactError(PkgEvalError):
    """A runtime artifact could not be found, downloaded or unpacked."""


class ChecksumError(ArtifactError):
    """A downloaded or cached artifact does not match its recorded checksum."""

    def __init__(self, path: object, expected: str, actual: str) -> None:
        super().__init__(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class RegistryError(PkgEvalError):
    """The package registry is missing or unreadable."""


class SandboxError(PkgEvalError):
    """The sandbox could not be started for a one-time setup step."""


class JobCancelled(Exception):
    """Raised inside a worker when its job was cancelled by a shutdown request.

    This is control flow, not a failure: workers exit quietly when they see it.
    """
