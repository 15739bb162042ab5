"""Archive extraction for fetched and cached artifacts.

Extraction is idempotent: files already present at the same path are
overwritten, nothing else in the target directory is touched, and the
archive itself is left for the caller to dispose of.
"""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path

from rstack_build.errors import ExtractionError

logger = logging.getLogger(__name__)

# Suffix -> tarfile read mode
ARCHIVE_MODES = {
    ".tar.gz": "r:gz",
    ".tgz": "r:gz",
    ".tar.xz": "r:xz",
    ".tar.bz2": "r:bz2",
    ".tar": "r:",
}


def archive_mode(archive_path: Path) -> str:
    """Return the tarfile mode for an archive path.

    Raises:
        ExtractionError: If the suffix is not a supported archive format.
    """
    name = archive_path.name.lower()
    for suffix, mode in ARCHIVE_MODES.items():
        if name.endswith(suffix):
            return mode
    raise ExtractionError(
        f"Unsupported archive format: {archive_path.name}",
        code="unsupported_format",
    )


def _check_members(archive_path: Path, members: list[tarfile.TarInfo]) -> None:
    for member in members:
        member_path = Path(member.name)
        if member_path.is_absolute() or ".." in member_path.parts:
            raise ExtractionError(
                f"Refusing to extract {member.name} from {archive_path.name}: "
                "path traversal detected",
                code="path_traversal",
            )


def extract_archive(archive_path: Path, target_dir: Path) -> Path:
    """Unpack an artifact archive into a target directory.

    Args:
        archive_path: Path to the archive file.
        target_dir: Destination directory (created if missing).

    Returns:
        The target directory.

    Raises:
        ExtractionError: If the archive is missing, corrupt or unsupported.
    """
    mode = archive_mode(archive_path)
    logger.info("Extracting %s to %s", archive_path.name, target_dir)

    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, mode) as tar:
            members = tar.getmembers()
            _check_members(archive_path, members)
            # Rootfs images carry absolute symlinks, which the "data" filter rejects
            tar.extractall(target_dir, members=members, filter="tar")
    except tarfile.TarError as e:
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}",
            code="tar_error",
        ) from e
    except (EOFError, OSError) as e:
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e

    logger.debug("Extracted %d members into %s", len(members), target_dir)
    return target_dir


__all__ = ["ARCHIVE_MODES", "archive_mode", "extract_archive"]
