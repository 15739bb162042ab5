"""Dependency bootstrap module.

This module handles:
- Detecting marker-triggered bootstrap strategies
- Running them in the sandbox in priority order
- Copying missing shared libraries of compiled packages
"""

from rstack_build.bootstrap.strategies import (
    DEFAULT_STRATEGIES,
    BootstrapStrategy,
    DependencyBootstrapper,
)

__all__ = ["DEFAULT_STRATEGIES", "BootstrapStrategy", "DependencyBootstrapper"]
