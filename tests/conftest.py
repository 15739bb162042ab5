"""Shared test fixtures."""

from pathlib import Path

import pytest

from rstack_build.errors import BootstrapError
from rstack_build.types import ExecResult


class FakeSandbox:
    """Records sandbox invocations and replies from a handler."""

    def __init__(self, root: Path, app_dir: Path, handler=None) -> None:
        self.root = root
        self.app_dir = app_dir
        self.env: dict[str, str] = {}
        self.calls: list[tuple[str, tuple[str, ...], bool]] = []
        self.handler = handler

    def run(self, command, argv=(), privileged=False, fatal=True, cwd=None, env=None):
        self.calls.append((command, tuple(argv), privileged))
        if self.handler is not None:
            result = self.handler(command, tuple(argv))
            if result is not None:
                if fatal and not result.success:
                    raise BootstrapError(
                        f"{command} failed",
                        exit_code=result.exit_code,
                        output=result.output,
                    )
                return result
        return ExecResult(exit_code=0, output="", command=command)

    def install_system_packages(self, packages):
        if not packages:
            return []
        self.calls.append(("apt-get", tuple(packages), True))
        return [ExecResult(0, "", "apt-get", privileged=True)]


@pytest.fixture
def fake_sandbox_factory():
    """Build FakeSandbox instances."""
    return FakeSandbox
