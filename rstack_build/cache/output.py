"""Output cache layers.

This module handles:
- Exclude manifests for each cache family
- Persisting selected subtrees as gzip tar archives keyed by cache key
- Restoring archives in place at the start of the next build
- Pruning layers left behind by previous keys

Layout: ``{cache_dir}/{cache_key}/{family}.tar.gz``. Presence of the file is
a cache hit, absence a miss. Each family is independent.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
import tarfile
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from rstack_build.artifacts.extract import extract_archive
from rstack_build.errors import CacheError, ExtractionError

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"


@dataclass(frozen=True)
class ExcludeManifest:
    """Ordered glob patterns excluded when archiving a cache family.

    Patterns match archive member paths (relative, POSIX separators).
    A pattern that matches a directory excludes everything beneath it.
    """

    name: str
    patterns: tuple[str, ...] = ()

    def excludes(self, member_path: str) -> bool:
        path = member_path.removeprefix("./")
        return any(fnmatch.fnmatchcase(path, pattern) for pattern in self.patterns)


@dataclass(frozen=True)
class CacheFamily:
    """A cache family: archive name, cached paths and exclusions.

    Attributes:
        name: Archive name.
        paths: Paths relative to the family's base directory.
        manifest: Exclusions applied at archive creation.
    """

    name: str
    paths: tuple[str, ...]
    manifest: ExcludeManifest


ENVIRONMENT = CacheFamily(
    name="environment",
    paths=(".",),
    manifest=ExcludeManifest(
        "environment",
        (
            "proc/*",
            "sys/*",
            "dev/*",
            "tmp/*",
            "app/*",
            "var/cache/apt/archives/*.deb",
            "var/lib/apt/lists/*",
        ),
    ),
)

SITE_LIBRARY = CacheFamily(
    name="site-library",
    paths=("R/site-library",),
    manifest=ExcludeManifest("site-library", ("*/00LOCK*", "*.o")),
)

PACKRAT = CacheFamily(
    name="packrat",
    paths=("packrat/lib", "packrat/src"),
    manifest=ExcludeManifest("packrat", ("*/00LOCK*", "*.o")),
)

RENV = CacheFamily(
    name="renv",
    paths=("renv/library",),
    manifest=ExcludeManifest("renv", ("*/00LOCK*", "*.o")),
)

CACHE_FAMILIES: tuple[CacheFamily, ...] = (ENVIRONMENT, SITE_LIBRARY, PACKRAT, RENV)


class OutputCache:
    """Content-keyed archive store for build output layers.

    Args:
        cache_dir: Root directory for cache layers.
    """

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    def archive_path(self, name: str, key: str) -> Path:
        return self.cache_dir / key / f"{name}{ARCHIVE_SUFFIX}"

    def persist(
        self,
        name: str,
        key: str,
        base_dir: Path,
        paths: Sequence[str],
        manifest: ExcludeManifest | None = None,
    ) -> Path | None:
        """Archive paths under base_dir as a cache layer.

        Args:
            name: Cache family name.
            key: Cache key.
            base_dir: Directory the paths are relative to.
            paths: Relative paths to archive; missing ones are skipped.
            manifest: Exclusions applied to archive members.

        Returns:
            Archive path, or None if none of the paths exist.

        Raises:
            CacheError: If the archive cannot be written.
        """
        existing = [p for p in paths if (base_dir / p).exists()]
        if not existing:
            logger.debug("Nothing to persist for %s", name)
            return None

        archive = self.archive_path(name, key)

        def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
            if manifest is not None and manifest.excludes(info.name):
                return None
            return info

        try:
            archive.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=archive.parent, prefix=f".{name}.", suffix=".tmp"
            )
            os.close(fd)
        except OSError as e:
            raise CacheError(
                f"Cannot create {name} cache archive in {archive.parent}: {e}",
                code="persist_error",
            ) from e

        tmp_path = Path(tmp_name)
        try:
            with tarfile.open(tmp_path, "w:gz") as tar:
                for rel in existing:
                    tar.add(base_dir / rel, arcname=rel, filter=_filter)
            tmp_path.replace(archive)
        except (tarfile.TarError, OSError) as e:
            tmp_path.unlink(missing_ok=True)
            raise CacheError(
                f"Failed to persist {name} cache to {archive}: {e}",
                code="persist_error",
            ) from e
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.info(
            "Persisted %s cache (%d bytes) to %s", name, archive.stat().st_size, archive
        )
        return archive

    def restore(self, name: str, key: str, base_dir: Path) -> bool:
        """Extract a cache layer in place.

        A corrupt archive is discarded and treated as a miss.

        Args:
            name: Cache family name.
            key: Cache key.
            base_dir: Directory to extract into.

        Returns:
            True on a hit, False on a miss.
        """
        archive = self.archive_path(name, key)
        if not archive.is_file():
            logger.info("Cache miss: %s (%s)", name, key)
            return False

        try:
            extract_archive(archive, base_dir)
        except ExtractionError as e:
            logger.warning("Discarding unreadable %s cache: %s", name, e)
            archive.unlink(missing_ok=True)
            return False

        logger.info("Cache hit: %s (%s)", name, key)
        return True

    def persist_family(self, family: CacheFamily, key: str, base_dir: Path) -> Path | None:
        return self.persist(family.name, key, base_dir, family.paths, family.manifest)

    def restore_family(self, family: CacheFamily, key: str, base_dir: Path) -> bool:
        return self.restore(family.name, key, base_dir)

    def list_keys(self) -> list[str]:
        """Return the cache keys that have at least one layer."""
        if not self.cache_dir.is_dir():
            return []
        return sorted(
            d.name
            for d in self.cache_dir.iterdir()
            if d.is_dir() and any(d.glob(f"*{ARCHIVE_SUFFIX}"))
        )

    def prune(self, keep_key: str | None = None) -> list[Path]:
        """Remove layers for every key except keep_key.

        Returns:
            Removed key directories.

        Raises:
            CacheError: If a key directory cannot be removed.
        """
        removed: list[Path] = []
        for key in self.list_keys():
            if key == keep_key:
                continue
            key_dir = self.cache_dir / key
            logger.info("Pruning cache layers for %s", key)
            try:
                shutil.rmtree(key_dir)
            except OSError as e:
                raise CacheError(
                    f"Failed to prune {key_dir}: {e}", code="prune_error"
                ) from e
            removed.append(key_dir)
        return removed


__all__ = [
    "CACHE_FAMILIES",
    "ENVIRONMENT",
    "PACKRAT",
    "RENV",
    "SITE_LIBRARY",
    "CacheFamily",
    "ExcludeManifest",
    "OutputCache",
]
