"""Artifact retrieval module.

This module handles:
- Resolving named artifacts to remote URLs
- Downloading artifacts into the local artifact cache
- Extracting artifact archives
"""

from rstack_build.artifacts.extract import extract_archive
from rstack_build.artifacts.store import ArtifactRef, ArtifactStore

__all__ = ["ArtifactRef", "ArtifactStore", "extract_archive"]
