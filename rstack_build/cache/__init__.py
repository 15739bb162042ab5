"""Cache layer module.

This module handles:
- Cache key derivation
- Persisting and restoring cache families
"""

from rstack_build.cache.keys import derive_cache_key
from rstack_build.cache.output import CACHE_FAMILIES, ExcludeManifest, OutputCache

__all__ = ["CACHE_FAMILIES", "ExcludeManifest", "OutputCache", "derive_cache_key"]
