"""Build pipeline orchestration.

This module provides the high-level build API:
- run_build(): Main entry point - one sequential, fail-fast build
- Cache key derivation and per-family cache restore
- Artifact fetch and extraction for whatever the caches did not provide
- A fresh sandbox root per build, removed when the build ends
- Stage-in, system packages, dependency bootstrap, stage-out
- Startup script and wrappers written into the build output
- Cache persistence and ephemeral artifact cleanup

Caches are only written after every bootstrap step has succeeded, so a
failed build leaves the previous layers untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from rstack_build import __version__
from rstack_build.artifacts.extract import extract_archive
from rstack_build.artifacts.store import (
    RUNTIME_BUILD_ROOTFS,
    RUNTIME_DEPLOY,
    ArtifactRef,
    ArtifactStore,
)
from rstack_build.bootstrap.strategies import DependencyBootstrapper
from rstack_build.cache.keys import derive_cache_key, fingerprint_config
from rstack_build.cache.output import (
    ENVIRONMENT,
    PACKRAT,
    RENV,
    SITE_LIBRARY,
    OutputCache,
)
from rstack_build.config import BuildConfig
from rstack_build.errors import PipelineError
from rstack_build.sandbox.layout import (
    DEPRECATED_APTFILE,
    SITE_LIBRARY as SITE_LIBRARY_DIR,
    read_system_packages,
    write_compat_wrappers,
    write_startup_script,
)
from rstack_build.sandbox.runner import (
    Sandbox,
    create_sandbox,
    destroy_sandbox,
    reset_sandbox,
)
from rstack_build.sync import DirectorySynchronizer

logger = logging.getLogger(__name__)

# Families restored into and persisted from the build tree
PACKAGE_FAMILIES = (SITE_LIBRARY, PACKRAT, RENV)

LAYERS_DIRNAME = "layers"
ARTIFACTS_DIRNAME = "artifacts"


@dataclass
class BuildSummary:
    """Outcome of a successful build.

    Attributes:
        cache_key: Key scoping every layer of this build.
        restored: Cache family name -> whether it was restored.
        fetched: Names of artifacts fetched or reused from the artifact cache.
        strategies: Bootstrap strategies that ran, in order.
        persisted: Cache families written at the end of the build.
        synced: Whether stage-in/stage-out was used.
        warnings: Non-fatal warnings raised during the build.
    """

    cache_key: str
    restored: dict[str, bool] = field(default_factory=dict)
    fetched: list[str] = field(default_factory=list)
    strategies: list[str] = field(default_factory=list)
    persisted: list[str] = field(default_factory=list)
    synced: bool = False
    warnings: list[str] = field(default_factory=list)


def compute_build_key(config: BuildConfig) -> str:
    """Derive the cache key for a build configuration."""
    fingerprint = fingerprint_config(
        runtime_version=config.runtime_version,
        package_mirror=config.package_mirror,
        pin_file=config.pin_file,
        tool_version=__version__,
    )
    return derive_cache_key(config.release_version, config.stack, fingerprint)


def layers_dir(config: BuildConfig) -> Path:
    return config.cache_dir / LAYERS_DIRNAME


def artifacts_dir(config: BuildConfig) -> Path:
    return config.cache_dir / ARTIFACTS_DIRNAME


def create_build_sandbox(config: BuildConfig) -> Sandbox:
    """Create the sandbox for a build configuration."""
    site_library = config.app_dir / SITE_LIBRARY_DIR
    return Sandbox(
        root=create_sandbox(config.sandbox_dir),
        app_dir=config.app_dir,
        log_path=config.log_path,
        env={
            "CRAN_MIRROR": config.package_mirror,
            "R_LIBS_SITE": str(site_library),
            "R_LIBS_USER": str(site_library),
        },
        timeout=config.command_timeout,
        stream_output=config.debug,
    )


def _fetch_and_extract(
    store: ArtifactStore,
    ref: ArtifactRef,
    target_dir: Path,
    summary: BuildSummary,
) -> None:
    archive = store.fetch_artifact(ref)
    extract_archive(archive, target_dir)
    summary.fetched.append(ref.name)


def run_build(
    config: BuildConfig,
    client: httpx.Client | None = None,
    sandbox: Sandbox | None = None,
) -> BuildSummary:
    """Run one build.

    Args:
        config: Immutable build configuration.
        client: Optional HTTPX client (one is created if not provided).
        sandbox: Optional pre-built sandbox.

    Returns:
        BuildSummary describing what was restored, run and persisted.

    Raises:
        PipelineError: On any fatal failure; the remaining steps are skipped.
    """
    if client is None:
        with httpx.Client(follow_redirects=True) as owned_client:
            return run_build(config, client=owned_client, sandbox=sandbox)

    key = compute_build_key(config)
    summary = BuildSummary(cache_key=key)
    logger.info("Building for stack %s with cache key %s", config.stack.value, key)

    cache = OutputCache(layers_dir(config))
    store = ArtifactStore(
        base_url=config.base_url,
        cache_dir=artifacts_dir(config),
        client=client,
        retries=config.fetch_retries,
        backoff=config.fetch_backoff,
        timeout=config.download_timeout,
    )
    build_dir = config.build_dir
    try:
        build_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PipelineError(
            f"Cannot create build directory {build_dir}: {e}", code="build_dir_error"
        ) from e

    # The environment is rebuilt from this key's layer or rootfs only
    reset_sandbox(config.sandbox_dir)
    synchronizer = DirectorySynchronizer(build_dir, config.app_dir)
    try:
        _build(config, key, cache, store, synchronizer, sandbox, summary)
    finally:
        try:
            synchronizer.discard()
        finally:
            if config.keep_artifacts:
                logger.info(
                    "Keeping sandbox root %s (test mode)", config.sandbox_dir
                )
            else:
                destroy_sandbox(config.sandbox_dir)

    logger.info("Build complete for %s", build_dir)
    return summary


def _build(
    config: BuildConfig,
    key: str,
    cache: OutputCache,
    store: ArtifactStore,
    synchronizer: DirectorySynchronizer,
    sandbox: Sandbox | None,
    summary: BuildSummary,
) -> None:
    build_dir = config.build_dir

    # Restore each family independently; a miss in one says nothing about the rest
    summary.restored[ENVIRONMENT.name] = cache.restore_family(
        ENVIRONMENT, key, config.sandbox_dir
    )
    for family in PACKAGE_FAMILIES:
        summary.restored[family.name] = cache.restore_family(family, key, build_dir)

    ephemeral: list[ArtifactRef] = []
    if not summary.restored[ENVIRONMENT.name]:
        rootfs = ArtifactRef(RUNTIME_BUILD_ROOTFS, key, config.stack)
        _fetch_and_extract(store, rootfs, config.sandbox_dir, summary)
        ephemeral.append(rootfs)

    runtime_refs = [ArtifactRef(RUNTIME_DEPLOY, key, config.stack)]
    if config.addon_runtime:
        runtime_refs.append(ArtifactRef(config.addon_runtime, key, config.stack))
    for ref in runtime_refs:
        _fetch_and_extract(store, ref, build_dir, summary)
        ephemeral.append(ref)

    summary.synced = synchronizer.active
    if synchronizer.active:
        logger.info("Staging %s into %s", build_dir, config.app_dir)
    synchronizer.stage_in()

    if sandbox is None:
        sandbox = create_build_sandbox(config)

    packages, deprecated = read_system_packages(config.app_dir)
    if deprecated:
        message = (
            f"System packages declared in {DEPRECATED_APTFILE}; "
            "move them to Aptfile"
        )
        logger.warning(message)
        summary.warnings.append(message)
    sandbox.install_system_packages(packages)

    bootstrapper = DependencyBootstrapper(sandbox)
    outcomes = bootstrapper.run(config.app_dir)
    summary.strategies = [o.strategy.kind.value for o in outcomes]

    synchronizer.stage_out()

    # Generated files go straight into the build output, never into app_dir
    write_startup_script(build_dir, config.app_dir, config.runtime_version)
    write_compat_wrappers(build_dir)

    if cache.persist_family(ENVIRONMENT, key, config.sandbox_dir) is not None:
        summary.persisted.append(ENVIRONMENT.name)
    for family in PACKAGE_FAMILIES:
        if cache.persist_family(family, key, build_dir) is not None:
            summary.persisted.append(family.name)

    if config.keep_artifacts:
        logger.info("Keeping %d ephemeral artifacts (test mode)", len(ephemeral))
    else:
        for ref in ephemeral:
            store.discard(ref)


__all__ = [
    "ARTIFACTS_DIRNAME",
    "LAYERS_DIRNAME",
    "PACKAGE_FAMILIES",
    "BuildSummary",
    "artifacts_dir",
    "compute_build_key",
    "create_build_sandbox",
    "layers_dir",
    "run_build",
]
