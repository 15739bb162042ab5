"""rstack-build - Layered, cache-aware R build environments.

This package provisions a disposable sandbox for the R runtime, bootstraps
package dependencies inside it, and persists reusable layers of the result
as content-keyed cache archives.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
