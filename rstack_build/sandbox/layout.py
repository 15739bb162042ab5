"""Build tree layout helpers.

This module handles:
- Reading system package declarations (Aptfile)
- Writing the startup environment script sourced at dyno boot
- Writing compatibility wrappers for the sandbox's elevation tools
"""

from __future__ import annotations

import logging
from pathlib import Path

from rstack_build.errors import BootstrapError

logger = logging.getLogger(__name__)

APTFILE = "Aptfile"
DEPRECATED_APTFILE = ".rstack/Aptfile"

RUNTIME_SUBDIR = "R"
SITE_LIBRARY = "R/site-library"
STARTUP_SCRIPT = ".profile.d/rstack.sh"

# Tools that scripts may invoke at runtime, when the sandbox is gone
WRAPPED_TOOLS = ("fakechroot", "fakeroot")

WRAPPER_TEMPLATE = """#!/bin/sh
# {tool} is only available while building; run the command directly.
exec "$@"
"""

EXECUTABLE_MODE = 0o755

LAYOUT_ERROR = "layout_error"


def read_system_packages(build_dir: Path) -> tuple[list[str], bool]:
    """Read the system packages declared for a build.

    ``Aptfile`` takes precedence. The deprecated location is still honored.

    Args:
        build_dir: Build tree root.

    Returns:
        Tuple of (package names, whether the deprecated location was used).
    """
    aptfile = build_dir / APTFILE
    deprecated = False
    if not aptfile.is_file():
        aptfile = build_dir / DEPRECATED_APTFILE
        if not aptfile.is_file():
            return [], False
        deprecated = True

    packages: list[str] = []
    for line in aptfile.read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            packages.extend(line.split())
    return packages, deprecated


def render_startup_script(app_dir: Path, runtime_version: str) -> str:
    """Render the startup environment script.

    Args:
        app_dir: Path of the application at runtime.
        runtime_version: Installed R version.

    Returns:
        Shell script text.
    """
    runtime = app_dir / RUNTIME_SUBDIR
    lines = [
        "# Generated by rstack-build; do not edit.",
        f'export RSTACK_RUNTIME_VERSION="{runtime_version}"',
        f'export R_HOME="{runtime}/lib/R"',
        f'export R_LIBS_SITE="{app_dir / SITE_LIBRARY}"',
        f'export PATH="{runtime}/bin:{app_dir}/bin:$PATH"',
        f'export LD_LIBRARY_PATH="{runtime}/lib/R/lib:${{LD_LIBRARY_PATH:-}}"',
        "",
    ]
    return "\n".join(lines)


def write_startup_script(build_dir: Path, app_dir: Path, runtime_version: str) -> Path:
    """Write the startup environment script into the build tree.

    Raises:
        BootstrapError: If the script cannot be written.
    """
    script = build_dir / STARTUP_SCRIPT
    try:
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(
            render_startup_script(app_dir, runtime_version), encoding="utf-8"
        )
    except OSError as e:
        raise BootstrapError(
            f"Cannot write startup script {script}: {e}", code=LAYOUT_ERROR
        ) from e
    logger.debug("Wrote startup script %s", script)
    return script


def write_compat_wrappers(build_dir: Path) -> list[Path]:
    """Write pass-through wrappers for the sandbox's elevation tools.

    Args:
        build_dir: Build tree root.

    Returns:
        Paths of the written wrappers.

    Raises:
        BootstrapError: If a wrapper cannot be written.
    """
    bin_dir = build_dir / "bin"

    written: list[Path] = []
    try:
        bin_dir.mkdir(parents=True, exist_ok=True)
        for tool in WRAPPED_TOOLS:
            wrapper = bin_dir / tool
            wrapper.write_text(WRAPPER_TEMPLATE.format(tool=tool), encoding="utf-8")
            wrapper.chmod(EXECUTABLE_MODE)
            written.append(wrapper)
    except OSError as e:
        raise BootstrapError(
            f"Cannot write compatibility wrappers in {bin_dir}: {e}",
            code=LAYOUT_ERROR,
        ) from e
    logger.debug("Wrote %d compatibility wrappers to %s", len(written), bin_dir)
    return written


__all__ = [
    "APTFILE",
    "DEPRECATED_APTFILE",
    "SITE_LIBRARY",
    "STARTUP_SCRIPT",
    "WRAPPED_TOOLS",
    "read_system_packages",
    "render_startup_script",
    "write_compat_wrappers",
    "write_startup_script",
]
