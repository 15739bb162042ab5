"""Error taxonomy for the build pipeline.

Every failure the pipeline can surface derives from PipelineError and carries
a stable ``code`` for structured handling. All of them are fatal: the CLI
maps any PipelineError to exit code 1.
"""

from __future__ import annotations

# Error code constants
UNSUPPORTED_PLATFORM = "unsupported_platform"
FETCH_ERROR = "fetch_error"
EXTRACTION_ERROR = "extraction_error"
PRIVILEGED_EXEC_FAILED = "privileged_exec_failed"
BOOTSTRAP_FAILED = "bootstrap_failed"
SYNC_ERROR = "sync_error"
CACHE_ERROR = "cache_error"


class PipelineError(Exception):
    """Base error for all pipeline failures."""

    def __init__(self, message: str, code: str = "pipeline_error") -> None:
        super().__init__(message)
        self.code = code


class UnsupportedPlatformError(PipelineError):
    """Raised when the stack is not in the supported set."""

    def __init__(self, stack: str, code: str = UNSUPPORTED_PLATFORM) -> None:
        super().__init__(f"Unsupported stack: {stack!r}", code=code)
        self.stack = stack


class FetchError(PipelineError):
    """Raised when an artifact cannot be retrieved."""

    def __init__(self, message: str, code: str = FETCH_ERROR) -> None:
        super().__init__(message, code=code)


class ExtractionError(PipelineError):
    """Raised when an archive is corrupt, unreadable or unsupported."""

    def __init__(self, message: str, code: str = EXTRACTION_ERROR) -> None:
        super().__init__(message, code=code)


class SandboxExecError(PipelineError):
    """A command run inside the sandbox exited non-zero.

    Attributes:
        exit_code: Exit status of the command.
        output: Combined stdout/stderr, kept for diagnostics.
    """

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        output: str = "",
        code: str = "sandbox_exec_failed",
    ) -> None:
        super().__init__(message, code=code)
        self.exit_code = exit_code
        self.output = output


class PrivilegedExecError(SandboxExecError):
    """Raised when a privileged (system package) command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        output: str = "",
        code: str = PRIVILEGED_EXEC_FAILED,
    ) -> None:
        super().__init__(message, exit_code=exit_code, output=output, code=code)


class BootstrapError(SandboxExecError):
    """Raised when an unprivileged bootstrap command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        output: str = "",
        code: str = BOOTSTRAP_FAILED,
    ) -> None:
        super().__init__(message, exit_code=exit_code, output=output, code=code)


class SyncError(PipelineError):
    """Raised when stage-in or stage-out copying fails."""

    def __init__(self, message: str, code: str = SYNC_ERROR) -> None:
        super().__init__(message, code=code)


class CacheError(PipelineError):
    """Raised when a cache layer cannot be written or removed."""

    def __init__(self, message: str, code: str = CACHE_ERROR) -> None:
        super().__init__(message, code=code)


__all__ = [
    "BOOTSTRAP_FAILED",
    "CACHE_ERROR",
    "EXTRACTION_ERROR",
    "FETCH_ERROR",
    "PRIVILEGED_EXEC_FAILED",
    "SYNC_ERROR",
    "UNSUPPORTED_PLATFORM",
    "BootstrapError",
    "CacheError",
    "ExtractionError",
    "FetchError",
    "PipelineError",
    "PrivilegedExecError",
    "SandboxExecError",
    "SyncError",
    "UnsupportedPlatformError",
]
