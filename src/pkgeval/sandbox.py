"""Sandboxed test execution.

Each package is tested by a fresh runtime process inside a bubblewrap
(``bwrap``) sandbox. The runtime installation and the registry checkout
are bind-mounted read-only at fixed locations, the package is installed
into a throwaway depot on a tmpfs, and its tests are run. Output goes to
a per-version log file.

Runs are cancellable: the wait loop polls a :class:`~pkgeval.cancel.CancelToken`
and kills the whole sandbox process group when it fires.
"""

from __future__ import annotations

import json
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import IO

from pkgeval.cancel import TIMEOUT, CancelToken
from pkgeval.config import Settings
from pkgeval.errors import RegistryError, SandboxError
from pkgeval.logging import get_logger

log = get_logger("sandbox")

RUNTIME_MOUNT = "/maps/julia"
REGISTRY_MOUNT = "/maps/registries/General"
DEPOT_MOUNT = "/depot"

_TEST_SCRIPT = """\
using Pkg
mkpath("{depot}/registries")
symlink("{registry}", "{depot}/registries/General")
Pkg.UPDATED_REGISTRY_THIS_SESSION[] = true
Pkg.add({name})
Pkg.test({name})
"""


def build_test_script(name: str) -> str:
    """Return the runtime script that installs and tests package *name*."""
    return _TEST_SCRIPT.format(depot=DEPOT_MOUNT, registry=REGISTRY_MOUNT, name=json.dumps(name))


def sandbox_command(runtime_dir: Path, settings: Settings, args: list[str]) -> list[str]:
    """Build the full ``bwrap`` command line running the runtime with *args*."""
    cmd = [
        settings.sandbox_command,
        "--die-with-parent",
        "--unshare-pid",
        "--unshare-ipc",
        "--unshare-uts",
        "--ro-bind", "/usr", "/usr",
        "--symlink", "usr/lib", "/lib",
        "--symlink", "usr/lib64", "/lib64",
        "--symlink", "usr/bin", "/bin",
        "--ro-bind-try", "/etc/resolv.conf", "/etc/resolv.conf",
        "--ro-bind-try", "/etc/ssl", "/etc/ssl",
        "--ro-bind-try", "/etc/ca-certificates", "/etc/ca-certificates",
        "--dev", "/dev",
        "--proc", "/proc",
        "--tmpfs", "/tmp",
        "--tmpfs", DEPOT_MOUNT,
        "--ro-bind", str(runtime_dir.resolve()), RUNTIME_MOUNT,
        "--ro-bind", str(settings.registry_dir().resolve()), REGISTRY_MOUNT,
        "--setenv", "JULIA_DEPOT_PATH", DEPOT_MOUNT,
        "--setenv", "HOME", "/tmp",
        "--chdir", "/tmp",
        f"{RUNTIME_MOUNT}/bin/julia",
        "--color=yes",
    ]  # fmt: skip
    return cmd + args


def _kill_group(proc: subprocess.Popen[bytes]) -> None:
    """Kill the sandbox and everything it spawned, ignoring teardown errors."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        try:
            proc.kill()
        except OSError:
            pass
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        log.warning("Sandbox process %d did not exit after SIGKILL", proc.pid)


def run_sandboxed(
    args: list[str],
    runtime_dir: Path,
    settings: Settings,
    *,
    output: IO[bytes],
    cancel: CancelToken | None = None,
) -> int | None:
    """Run the runtime in the sandbox, streaming output to *output*.

    Returns:
        The exit code, or ``None`` if the run was cancelled and killed.

    Raises:
        OSError: If the sandbox command cannot be started.
    """
    cmd = sandbox_command(runtime_dir, settings, args)
    log.debug("Sandbox command: %s", " ".join(cmd))
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=output,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )
    try:
        while True:
            try:
                return proc.wait(timeout=settings.poll_interval)
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_cancelled():
                log.debug("Killing sandbox process %d (%s)", proc.pid, cancel.reason)
                _kill_group(proc)
                return None
    except BaseException:
        _kill_group(proc)
        raise


def run_sandboxed_test(
    name: str,
    runtime_dir: Path,
    *,
    version: str,
    settings: Settings,
    depwarn_as_error: bool = False,
    cancel: CancelToken | None = None,
) -> bool:
    """Install and test package *name* in a sandbox.

    The log is written to ``<logs>/logs-<version>/<name>.log``. A cancelled
    run ends with a marker line naming the reason (for example ``timeout``),
    which is the only place a timeout is distinguishable from a failure.

    Returns:
        True only if the tests passed.
    """
    log_dir = settings.log_path(version)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{name}.log"

    args = ["--depwarn=error"] if depwarn_as_error else []
    args += ["-e", build_test_script(name)]

    start = time.monotonic()
    with open(log_file, "wb") as f:
        try:
            exit_code = run_sandboxed(args, runtime_dir, settings, output=f, cancel=cancel)
        except OSError as exc:
            f.write(f"\n*** failed to start sandbox: {exc}\n".encode())
            log.error("Could not start sandbox for %s: %s", name, exc)
            return False
        duration = time.monotonic() - start
        if exit_code is None:
            reason = cancel.reason if cancel is not None else None
            if reason == TIMEOUT:
                f.write(f"\n*** timed out after {duration:.0f}s, sandbox killed\n".encode())
            else:
                f.write(f"\n*** cancelled ({reason}), sandbox killed\n".encode())
            return False

    log.debug("Sandbox for %s exited %d in %.2fs", name, exit_code, duration)
    return exit_code == 0


def warm_up(runtime_dir: Path, settings: Settings) -> None:
    """Start the sandbox once to surface setup problems before parallel work.

    Raises:
        RegistryError: If the registry checkout is missing.
        SandboxError: If the sandbox cannot start or the runtime fails.
    """
    registry = settings.registry_dir()
    if not registry.is_dir():
        raise RegistryError(
            f"Registry not found at {registry}; run `pkgeval registry-update` first"
        )
    cmd = sandbox_command(runtime_dir, settings, ["-e", "1"])
    log.debug("Warm-up command: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=300)
    except FileNotFoundError:
        raise SandboxError(f"Sandbox command not found: {settings.sandbox_command}") from None
    except subprocess.TimeoutExpired:
        raise SandboxError("Sandbox warm-up timed out") from None
    except OSError as exc:
        raise SandboxError(f"Could not start sandbox: {exc}") from exc
    if proc.returncode != 0:
        raise SandboxError(
            f"Sandbox warm-up failed (exit {proc.returncode}): {proc.stderr.strip()[-500:]}"
        )
    log.debug("Sandbox warm-up succeeded")
