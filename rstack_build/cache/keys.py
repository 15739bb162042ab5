"""Cache key derivation.

This module handles:
- Fingerprinting the pipeline's own versioned configuration
- Composing the versioned cache key from release, stack and fingerprint

A cache key scopes every artifact and cache layer. Archives are looked up by
exact key only, so changing any component invalidates all prior layers.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rstack_build.types import Stack

DEFAULT_RELEASE_VERSION = "latest"

# Length of the hex fingerprint embedded in cache keys
FINGERPRINT_LENGTH = 12

# Chunk size for hashing pin files (bytes)
HASH_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class CacheKeyInputs:
    """Inputs that determine a cache key.

    Attributes:
        release_version: Release token (e.g. 'latest' or 'v142').
        stack: Stack identifier.
        fingerprint: Fingerprint of the pipeline configuration.
    """

    release_version: str
    stack: str
    fingerprint: str

    @property
    def key(self) -> str:
        return derive_cache_key(self.release_version, self.stack, self.fingerprint)


def derive_cache_key(
    release_version: str | None,
    stack: Stack | str,
    fingerprint: str,
) -> str:
    """Compose a cache key.

    Args:
        release_version: Release token; None or empty means 'latest'.
        stack: Stack identifier.
        fingerprint: Configuration fingerprint.

    Returns:
        Key of the form ``{release_version}-{stack}-{fingerprint}``.
    """
    version = release_version or DEFAULT_RELEASE_VERSION
    stack_id = stack.value if isinstance(stack, Stack) else str(stack)
    return f"{version}-{stack_id}-{fingerprint}"


def fingerprint_file(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Fingerprint a version-pinning file by content.

    Args:
        path: File to hash.
        chunk_size: Size of chunks to read.

    Returns:
        Truncated SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()[:FINGERPRINT_LENGTH]


def fingerprint_inputs(inputs: dict[str, Any]) -> str:
    """Fingerprint a mapping of configuration values.

    The mapping is serialized to canonical JSON (sorted keys, no extra
    whitespace) before hashing, so key order does not matter.

    Args:
        inputs: JSON-serializable configuration values.

    Returns:
        Truncated SHA-256 hex digest.
    """
    canonical_json = json.dumps(inputs, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()[
        :FINGERPRINT_LENGTH
    ]


def fingerprint_config(
    runtime_version: str,
    package_mirror: str,
    pin_file: Path | None = None,
    tool_version: str | None = None,
) -> str:
    """Fingerprint the pipeline configuration that affects cached output.

    A pin file, when given, is authoritative. Otherwise the fingerprint is
    taken over the runtime version, package mirror and tool version.

    Args:
        runtime_version: R version to install.
        package_mirror: CRAN mirror URL.
        pin_file: Optional version-pinning file.
        tool_version: Version of this tool.

    Returns:
        Configuration fingerprint.
    """
    if pin_file is not None:
        return fingerprint_file(pin_file)
    return fingerprint_inputs(
        {
            "runtime_version": runtime_version,
            "package_mirror": package_mirror,
            "tool_version": tool_version,
        }
    )


__all__ = [
    "DEFAULT_RELEASE_VERSION",
    "FINGERPRINT_LENGTH",
    "CacheKeyInputs",
    "derive_cache_key",
    "fingerprint_config",
    "fingerprint_file",
    "fingerprint_inputs",
]
