"""Sandboxed command execution.

This module handles:
- Creating, resetting and removing sandbox roots
- Composing fakechroot/fakeroot command lines around a chroot root
- Passing the build tree through at its fixed in-sandbox path
- Running commands with merged stdout/stderr capture
- Appending every command's output to the build log
- Privileged system package installation
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path

from rstack_build.errors import BootstrapError, PrivilegedExecError
from rstack_build.types import ExecResult

logger = logging.getLogger(__name__)

UNPRIVILEGED_PREFIX = ("fakechroot",)
PRIVILEGED_PREFIX = ("fakechroot", "fakeroot")

# Host paths that stay visible inside the chroot, in addition to app_dir
PASSTHROUGH_PATHS = ("/proc", "/sys", "/dev", "/tmp")

SANDBOX_SETUP_ERROR = "sandbox_setup_error"

SANDBOX_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def create_sandbox(root: Path) -> Path:
    """Ensure a sandbox root directory exists.

    Args:
        root: Sandbox root directory.

    Returns:
        The root directory.

    Raises:
        PrivilegedExecError: If root exists and is not a directory, or
            cannot be created.
    """
    if root.exists() and not root.is_dir():
        raise PrivilegedExecError(
            f"Sandbox root is not a directory: {root}", code=SANDBOX_SETUP_ERROR
        )
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PrivilegedExecError(
            f"Cannot create sandbox root {root}: {e}", code=SANDBOX_SETUP_ERROR
        ) from e
    return root


def destroy_sandbox(root: Path) -> None:
    """Remove a sandbox root and everything in it.

    Raises:
        PrivilegedExecError: If the tree cannot be removed.
    """
    if not root.exists():
        return
    try:
        shutil.rmtree(root)
    except OSError as e:
        raise PrivilegedExecError(
            f"Cannot remove sandbox root {root}: {e}", code=SANDBOX_SETUP_ERROR
        ) from e
    logger.debug("Removed sandbox root %s", root)


def reset_sandbox(root: Path) -> Path:
    """Start from an empty sandbox root, discarding any previous build's tree."""
    destroy_sandbox(root)
    return create_sandbox(root)


def _decode_partial(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


class Sandbox:
    """An isolated filesystem root with two execution modes.

    Unprivileged commands run as the build user under fakechroot.
    Privileged commands additionally run under fakeroot so package
    managers can act as root inside the chroot. In both modes ``app_dir``
    is passed through, so the build tree is visible at the same path
    inside and outside the sandbox.

    Args:
        root: Sandbox root filesystem.
        app_dir: Fixed in-sandbox path of the build tree.
        log_path: Build log that receives every command's output.
        env: Extra environment for every command.
        timeout: Per-command timeout in seconds (None = no timeout).
        stream_output: Echo output lines to the debug log.
    """

    def __init__(
        self,
        root: Path,
        app_dir: Path,
        log_path: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: int | None = None,
        stream_output: bool = False,
        unprivileged_prefix: Sequence[str] = UNPRIVILEGED_PREFIX,
        privileged_prefix: Sequence[str] = PRIVILEGED_PREFIX,
    ) -> None:
        self.root = root
        self.app_dir = app_dir
        self.log_path = log_path
        self.env = dict(env or {})
        self.timeout = timeout
        self.stream_output = stream_output
        self.unprivileged_prefix = tuple(unprivileged_prefix)
        self.privileged_prefix = tuple(privileged_prefix)

    def compose_command(
        self,
        command: str,
        argv: Sequence[str] = (),
        privileged: bool = False,
        cwd: Path | None = None,
    ) -> list[str]:
        """Compose the host-side command line for a sandboxed command.

        Args:
            command: Executable path inside the sandbox.
            argv: Arguments to the executable.
            privileged: Use the privileged prefix.
            cwd: Working directory inside the sandbox (default: app_dir).

        Returns:
            Command as list of strings suitable for subprocess.
        """
        prefix = self.privileged_prefix if privileged else self.unprivileged_prefix
        workdir = cwd or self.app_dir
        inner = shlex.join(["cd", str(workdir)]) + " && exec " + shlex.join(
            [command, *argv]
        )
        return [*prefix, "chroot", str(self.root), "/bin/sh", "-c", inner]

    def environment(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        """Build the process environment for a sandboxed command."""
        passthrough = [str(self.app_dir), *PASSTHROUGH_PATHS]
        env = {
            "PATH": SANDBOX_PATH,
            "HOME": str(self.app_dir),
            "LANG": "C.UTF-8",
            "FAKECHROOT_EXCLUDE_PATH": ":".join(passthrough),
        }
        env.update(self.env)
        if extra:
            env.update(extra)
        return env

    def run(
        self,
        command: str,
        argv: Sequence[str] = (),
        privileged: bool = False,
        fatal: bool = True,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecResult:
        """Run a command inside the sandbox.

        Args:
            command: Executable path inside the sandbox.
            argv: Arguments to the executable.
            privileged: Run with elevated rights (package manager operations).
            fatal: Raise on non-zero exit.
            cwd: Working directory inside the sandbox (default: app_dir).
            env: Additional environment variables.

        Returns:
            ExecResult with exit code and combined output.

        Raises:
            PrivilegedExecError: Privileged command failed and fatal is set.
            BootstrapError: Unprivileged command failed and fatal is set.
        """
        cmd = self.compose_command(command, argv, privileged=privileged, cwd=cwd)
        cmd_str = shlex.join(cmd)
        mode = "privileged" if privileged else "unprivileged"
        logger.info("Running (%s): %s", mode, shlex.join([command, *argv]))
        logger.debug("Host command: %s", cmd_str)

        error_cls = PrivilegedExecError if privileged else BootstrapError
        started_at = datetime.now(timezone.utc)

        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                env=self.environment(env),
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            output = _decode_partial(e.output)
            self._append_log(cmd_str, started_at, output, exit_code=-1)
            raise error_cls(
                f"Command timed out after {self.timeout} seconds: {command}",
                exit_code=-1,
                output=output,
                code="command_timeout",
            ) from e
        except OSError as e:
            raise error_cls(
                f"Failed to execute {command}: {e}",
                code="execution_error",
            ) from e

        output = result.stdout or ""
        if self.stream_output:
            for line in output.splitlines():
                logger.debug("[sandbox] %s", line)
        self._append_log(cmd_str, started_at, output, exit_code=result.returncode)

        exec_result = ExecResult(
            exit_code=result.returncode,
            output=output,
            command=cmd_str,
            privileged=privileged,
        )

        if not exec_result.success:
            logger.error(
                "%s command failed with exit code %d: %s",
                mode.capitalize(),
                result.returncode,
                command,
            )
            if fatal:
                raise error_cls(
                    f"{command} exited with code {result.returncode}",
                    exit_code=result.returncode,
                    output=output,
                )

        return exec_result

    def install_system_packages(self, packages: Sequence[str]) -> list[ExecResult]:
        """Install OS packages into the sandbox with the package manager.

        Args:
            packages: Package names.

        Returns:
            Results of the update and install commands (empty if no packages).

        Raises:
            PrivilegedExecError: If apt-get fails.
        """
        if not packages:
            return []
        logger.info("Installing system packages: %s", " ".join(packages))
        apt_env = {"DEBIAN_FRONTEND": "noninteractive"}
        update = self.run(
            "/usr/bin/apt-get", ["update", "-q"], privileged=True, env=apt_env
        )
        install = self.run(
            "/usr/bin/apt-get",
            ["install", "-q", "-y", "--no-install-recommends", *packages],
            privileged=True,
            env=apt_env,
        )
        return [update, install]

    def _append_log(
        self,
        cmd_str: str,
        started_at: datetime,
        output: str,
        exit_code: int,
    ) -> None:
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        finished_at = datetime.now(timezone.utc)
        duration = (finished_at - started_at).total_seconds()
        with self.log_path.open("a", encoding="utf-8") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n")
            log_file.write(output)
            if output and not output.endswith("\n"):
                log_file.write("\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            log_file.write(f"# Duration: {duration:.1f}s\n\n")


__all__ = [
    "PASSTHROUGH_PATHS",
    "PRIVILEGED_PREFIX",
    "UNPRIVILEGED_PREFIX",
    "Sandbox",
    "create_sandbox",
    "destroy_sandbox",
    "reset_sandbox",
]
