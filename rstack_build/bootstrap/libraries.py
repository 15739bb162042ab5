"""Shared-library discovery for compiled packages.

Packages built inside the sandbox link against system libraries that were
installed into the sandbox root, and those libraries do not exist on the
runtime image. This module resolves each compiled object's dependencies with
``ldd`` inside the sandbox and copies whatever the runtime image lacks into
the runtime's library search path.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from rstack_build.errors import BootstrapError

if TYPE_CHECKING:
    from rstack_build.sandbox.runner import Sandbox

logger = logging.getLogger(__name__)

DEFAULT_LIBRARY_PATTERN = "**/*.so"

# Library directories of the runtime base image
DEFAULT_BASE_LIB_DIRS = (
    Path("/lib"),
    Path("/lib/x86_64-linux-gnu"),
    Path("/usr/lib"),
    Path("/usr/lib/x86_64-linux-gnu"),
)

LDD = "/usr/bin/ldd"

# "libfoo.so.1 => /usr/lib/libfoo.so.1 (0x00007f...)" or "libfoo.so.1 => not found"
_LDD_LINE = re.compile(r"^\s*(?P<name>\S+)\s+=>\s+(?P<target>.+?)\s*(\(0x[0-9a-f]+\))?$")


@dataclass(frozen=True)
class LibraryDependency:
    """A dynamic dependency reported by ldd.

    Attributes:
        name: Soname as requested by the object.
        path: Resolved in-sandbox path, or None if not found.
    """

    name: str
    path: Path | None


def parse_ldd_output(output: str) -> list[LibraryDependency]:
    """Parse ldd output into dependencies.

    Lines without ``=>`` (the vdso and the dynamic loader) are ignored.

    Args:
        output: ldd stdout.

    Returns:
        Dependencies in output order.
    """
    deps: list[LibraryDependency] = []
    for line in output.splitlines():
        match = _LDD_LINE.match(line)
        if not match:
            continue
        target = match.group("target").strip()
        if target == "not found":
            deps.append(LibraryDependency(match.group("name"), None))
        elif target.startswith("/"):
            deps.append(LibraryDependency(match.group("name"), Path(target)))
    return deps


def _host_path(sandbox: Sandbox, path: Path) -> Path:
    if path.is_relative_to(sandbox.app_dir):
        return path
    return sandbox.root / path.relative_to("/")


def _in_base_image(name: str, base_lib_dirs: Sequence[Path]) -> bool:
    return any((d / name).exists() for d in base_lib_dirs)


def discover_shared_libraries(
    sandbox: Sandbox,
    scan_dir: Path,
    lib_dir: Path,
    base_lib_dirs: Sequence[Path] = DEFAULT_BASE_LIB_DIRS,
    pattern: str = DEFAULT_LIBRARY_PATTERN,
) -> list[str]:
    """Copy missing native dependencies of compiled objects into lib_dir.

    Re-running with every dependency already satisfied copies nothing.

    Args:
        sandbox: Sandbox to resolve dependencies in.
        scan_dir: Directory to search for compiled objects.
        lib_dir: Library search path directory to copy into.
        base_lib_dirs: Library directories of the runtime base image.
        pattern: Glob for compiled objects, relative to scan_dir.

    Returns:
        Sonames copied into lib_dir.

    Raises:
        BootstrapError: If a library cannot be copied.
    """
    if not scan_dir.is_dir():
        logger.debug("Skipping library discovery; %s does not exist", scan_dir)
        return []

    objects = sorted(p for p in scan_dir.glob(pattern) if p.is_file())
    logger.info("Scanning %d compiled objects under %s", len(objects), scan_dir)

    copied: list[str] = []
    for obj in objects:
        result = sandbox.run(LDD, [str(obj)], fatal=False)
        if not result.success:
            logger.debug("ldd failed for %s; skipping", obj)
            continue

        for dep in parse_ldd_output(result.output):
            if dep.path is None:
                logger.warning("Unresolved dependency %s of %s", dep.name, obj.name)
                continue
            if dep.path.is_relative_to(sandbox.app_dir):
                continue
            if _in_base_image(dep.name, base_lib_dirs):
                continue
            dest = lib_dir / dep.name
            if dest.exists():
                continue

            source = _host_path(sandbox, dep.path)
            try:
                lib_dir.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
            except OSError as e:
                raise BootstrapError(
                    f"Failed to copy {dep.name} from {source}: {e}",
                    code="library_copy_error",
                ) from e
            logger.debug("Copied %s -> %s", source, dest)
            copied.append(dep.name)

    if copied:
        logger.info("Copied %d shared libraries into %s", len(copied), lib_dir)
    return copied


__all__ = [
    "DEFAULT_BASE_LIB_DIRS",
    "DEFAULT_LIBRARY_PATTERN",
    "LibraryDependency",
    "discover_shared_libraries",
    "parse_ldd_output",
]
