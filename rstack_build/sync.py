"""Stage-in/stage-out synchronization between build and app directories.

The sandbox only sees the build tree at the fixed app directory. When the
build output path is elsewhere, the tree is staged into the app directory
before bootstrapping and copied back afterwards. The app directory also
holds platform-managed entries; their top-level names are snapshotted before
staging and are never created, modified or removed by either copy.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from rstack_build.errors import SyncError

logger = logging.getLogger(__name__)

SyncExclusionSet = frozenset[str]


def snapshot_exclusions(path: Path) -> SyncExclusionSet:
    """List the top-level entry names currently at path.

    Args:
        path: Directory to snapshot (missing means empty).

    Returns:
        Frozen set of entry names.
    """
    if not path.is_dir():
        return frozenset()
    return frozenset(entry.name for entry in path.iterdir())


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _copy_entry(source: Path, dest: Path) -> None:
    """Copy one entry, recursing into directories, preserving attributes."""
    if source.is_symlink():
        if dest.is_symlink() or dest.exists():
            _remove(dest)
        dest.symlink_to(source.readlink())
        return

    if source.is_dir():
        if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
            _remove(dest)
        dest.mkdir(exist_ok=True)
        for child in source.iterdir():
            _copy_entry(child, dest / child.name)
        shutil.copystat(source, dest)
        return

    if dest.is_symlink() or dest.is_dir():
        _remove(dest)
    shutil.copy2(source, dest)


def _copy_top_level(
    source: Path,
    dest: Path,
    exclusions: SyncExclusionSet,
    direction: str,
) -> list[str]:
    if not source.is_dir():
        raise SyncError(
            f"Cannot stage {direction}: {source} is not a directory",
            code="source_not_found",
        )

    copied: list[str] = []
    try:
        dest.mkdir(parents=True, exist_ok=True)
        for entry in sorted(source.iterdir()):
            if entry.name in exclusions:
                if direction == "in":
                    logger.warning(
                        "Not staging %s: name is reserved in %s", entry.name, dest
                    )
                continue
            _copy_entry(entry, dest / entry.name)
            copied.append(entry.name)
    except OSError as e:
        raise SyncError(
            f"Failed to stage {direction} {source} -> {dest}: {e}",
            code=f"stage_{direction}_error",
        ) from e

    logger.info("Staged %s %d entries: %s -> %s", direction, len(copied), source, dest)
    return copied


def stage_in(
    source: Path,
    dest: Path,
    exclusions: SyncExclusionSet = frozenset(),
) -> list[str]:
    """Copy the build tree into the app directory.

    Pre-existing entries at dest are never deleted, and top-level names in
    exclusions are not overwritten.

    Args:
        source: Build output directory.
        dest: App directory visible in the sandbox.
        exclusions: Reserved top-level names at dest.

    Returns:
        Top-level names that were copied.

    Raises:
        SyncError: If copying fails.
    """
    return _copy_top_level(source, dest, exclusions, "in")


def stage_out(source: Path, dest: Path, exclusions: SyncExclusionSet) -> list[str]:
    """Copy the app directory back to the build output path.

    Top-level entries named in exclusions are skipped. Files at dest that
    are absent from source are left alone.

    Args:
        source: App directory.
        dest: Build output directory.
        exclusions: Snapshot taken before stage-in.

    Returns:
        Top-level names that were copied.

    Raises:
        SyncError: If copying fails.
    """
    return _copy_top_level(source, dest, exclusions, "out")


def clear_staged(path: Path, exclusions: SyncExclusionSet) -> list[str]:
    """Remove every top-level entry at path whose name is not reserved.

    Args:
        path: App directory.
        exclusions: Snapshot taken before stage-in.

    Returns:
        Top-level names that were removed.

    Raises:
        SyncError: If an entry cannot be removed.
    """
    if not path.is_dir():
        return []
    removed: list[str] = []
    try:
        for entry in sorted(path.iterdir()):
            if entry.name in exclusions:
                continue
            _remove(entry)
            removed.append(entry.name)
    except OSError as e:
        raise SyncError(
            f"Failed to clear staged entries from {path}: {e}",
            code="clear_error",
        ) from e
    return removed


class DirectorySynchronizer:
    """Stage-in/stage-out protocol for one build.

    Inactive (every call is a no-op) when build_dir and app_dir are the
    same directory. Once the build tree has been copied back, or the build
    is abandoned, every staged entry is removed from app_dir so only the
    reserved entries remain.
    """

    def __init__(self, build_dir: Path, app_dir: Path) -> None:
        self.build_dir = build_dir
        self.app_dir = app_dir
        self._exclusions: SyncExclusionSet | None = None

    @property
    def active(self) -> bool:
        return self.build_dir.resolve() != self.app_dir.resolve()

    def stage_in(self) -> list[str]:
        if not self.active:
            return []
        self._exclusions = snapshot_exclusions(self.app_dir)
        logger.debug("Reserved app entries: %s", sorted(self._exclusions))
        return stage_in(self.build_dir, self.app_dir, self._exclusions)

    def stage_out(self) -> list[str]:
        if not self.active:
            return []
        if self._exclusions is None:
            raise SyncError("stage_out called before stage_in", code="sync_order")
        copied = stage_out(self.app_dir, self.build_dir, self._exclusions)
        self.discard()
        return copied

    def discard(self) -> list[str]:
        """Remove staged entries from app_dir and drop the exclusion snapshot.

        A no-op when nothing is staged.

        Returns:
            Top-level names that were removed.

        Raises:
            SyncError: If an entry cannot be removed.
        """
        if not self.active or self._exclusions is None:
            return []
        exclusions, self._exclusions = self._exclusions, None
        removed = clear_staged(self.app_dir, exclusions)
        logger.debug("Cleared %d staged entries from %s", len(removed), self.app_dir)
        return removed


__all__ = [
    "DirectorySynchronizer",
    "SyncExclusionSet",
    "clear_staged",
    "snapshot_exclusions",
    "stage_in",
    "stage_out",
]
