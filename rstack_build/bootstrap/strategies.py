"""Dependency bootstrap strategies.

Each strategy is triggered by a marker file in the build tree. All detected
strategies run, in a fixed priority order, and each successful run is
followed by a shared-library discovery pass over the packages it installed.
The first failure stops the sequence.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from rstack_build.bootstrap.libraries import (
    DEFAULT_BASE_LIB_DIRS,
    DEFAULT_LIBRARY_PATTERN,
    discover_shared_libraries,
)
from rstack_build.types import ExecResult, StrategyKind

if TYPE_CHECKING:
    from rstack_build.sandbox.runner import Sandbox

logger = logging.getLogger(__name__)

RSCRIPT = "/usr/bin/Rscript"

# Runtime library search path, relative to the build tree
RUNTIME_LIB_DIR = "R/lib/R/lib"


@dataclass(frozen=True)
class BootstrapStrategy:
    """A marker-triggered dependency bootstrap procedure.

    Attributes:
        kind: Strategy kind.
        marker: Marker file path relative to the build tree.
        command: Executable inside the sandbox.
        argv: Arguments to the executable.
        scan_root: Package directory (relative) scanned for shared libraries.
    """

    kind: StrategyKind
    marker: str
    command: str
    argv: tuple[str, ...] = ()
    scan_root: str = ""

    def applies(self, build_dir: Path) -> bool:
        return (build_dir / self.marker).is_file()


DEFAULT_STRATEGIES: tuple[BootstrapStrategy, ...] = (
    BootstrapStrategy(
        kind=StrategyKind.PLAIN_INIT,
        marker="init.R",
        command=RSCRIPT,
        argv=("init.R",),
        scan_root="R/site-library",
    ),
    BootstrapStrategy(
        kind=StrategyKind.PACKRAT,
        marker="packrat/init.R",
        command=RSCRIPT,
        argv=("packrat/init.R", "--bootstrap-packrat"),
        scan_root="packrat/lib",
    ),
    BootstrapStrategy(
        kind=StrategyKind.RENV,
        marker="renv.lock",
        command=RSCRIPT,
        argv=("-e", "renv::restore(prompt = FALSE)"),
        scan_root="renv/library",
    ),
)


@dataclass
class StrategyOutcome:
    """Result of running one bootstrap strategy."""

    strategy: BootstrapStrategy
    result: ExecResult
    libraries: list[str] = field(default_factory=list)


class DependencyBootstrapper:
    """Runs every applicable bootstrap strategy inside a sandbox.

    Args:
        sandbox: Sandbox to run strategies in.
        strategies: Strategies in priority order.
        env: Environment passed to every strategy command.
        base_lib_dirs: Library directories of the runtime base image.
        library_pattern: Glob for compiled objects within a scan root.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        strategies: Sequence[BootstrapStrategy] = DEFAULT_STRATEGIES,
        env: Mapping[str, str] | None = None,
        base_lib_dirs: Sequence[Path] = DEFAULT_BASE_LIB_DIRS,
        library_pattern: str = DEFAULT_LIBRARY_PATTERN,
    ) -> None:
        self.sandbox = sandbox
        self.strategies = tuple(strategies)
        self.env = dict(env or {})
        self.base_lib_dirs = tuple(base_lib_dirs)
        self.library_pattern = library_pattern

    def detect(self, build_dir: Path) -> list[BootstrapStrategy]:
        """Return the strategies whose marker exists, in priority order."""
        detected = []
        for strategy in self.strategies:
            if strategy.applies(build_dir):
                detected.append(strategy)
            else:
                logger.debug(
                    "Skipping %s: %s not present", strategy.kind.value, strategy.marker
                )
        return detected

    def run(self, build_dir: Path) -> list[StrategyOutcome]:
        """Run all detected strategies.

        Args:
            build_dir: Build tree as seen in the sandbox (the app directory).

        Returns:
            One outcome per strategy that ran.

        Raises:
            BootstrapError: If a strategy or its library pass fails; later
                strategies are not started.
        """
        outcomes: list[StrategyOutcome] = []
        for strategy in self.detect(build_dir):
            logger.info("Running %s bootstrap (%s)", strategy.kind.value, strategy.marker)
            result = self.sandbox.run(
                strategy.command,
                strategy.argv,
                privileged=False,
                fatal=True,
                cwd=build_dir,
                env=self.env,
            )
            libraries = discover_shared_libraries(
                self.sandbox,
                scan_dir=build_dir / strategy.scan_root,
                lib_dir=build_dir / RUNTIME_LIB_DIR,
                base_lib_dirs=self.base_lib_dirs,
                pattern=self.library_pattern,
            )
            outcomes.append(StrategyOutcome(strategy, result, libraries))
        if not outcomes:
            logger.info("No bootstrap markers found; nothing to install")
        return outcomes


__all__ = [
    "DEFAULT_STRATEGIES",
    "RUNTIME_LIB_DIR",
    "BootstrapStrategy",
    "DependencyBootstrapper",
    "StrategyOutcome",
]
