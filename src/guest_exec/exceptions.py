"""Exception hierarchy for guest-exec.

All exceptions inherit from GuestExecError.

Hierarchy:
    GuestExecError (base)
    ├── PermanentError (won't succeed on retry)
    │   ├── BuildError              ← installer / formatter / publication failed
    │   ├── DependencyError         ← missing binary, KVM required but absent
    │   ├── PayloadError            ← payload executable or folder unusable
    │   ├── UnmountFailure          ← still mounted after unmount request
    │   └── InvalidStateTransition  ← illegal MountState transition
    ├── TransientError (may succeed on retry)
    │   └── MountFailure            ← daemon died before mount was confirmed
    ├── EmulatorError               ← emulator process could not be launched
    └── RunInterrupted              ← SIGINT/SIGTERM stopped the run
"""

from __future__ import annotations

from typing import Any


class GuestExecError(Exception):
    """Base exception for all guest-exec errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(GuestExecError):
    """Base for errors that may succeed on retry (e.g. a flaky FUSE daemon)."""


class PermanentError(GuestExecError):
    """Base for errors that require operator action before a retry can work."""


# =============================================================================
# Image building
# =============================================================================


class BuildError(PermanentError):
    """Building a cached artifact failed.

    Raised when the installer, the filesystem formatter, or the final
    publication step fails. The cached artifact is never left visible
    under its final name when this is raised.

    Attributes:
        stderr: Captured standard error of the failing tool (if any)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, stderr: str = ""):
        super().__init__(message, context)
        self.stderr = stderr


class DependencyError(PermanentError):
    """Required host capability missing.

    Raised eagerly, before any image work, when a required binary is not
    on PATH or hardware virtualization is required but unavailable.
    """


class PayloadError(PermanentError):
    """Payload executable or folder does not exist or cannot be read."""


# =============================================================================
# Mounting
# =============================================================================


class MountFailure(TransientError):
    """Mount was not confirmed.

    Raised when the mounting daemon exits before the mount table shows the
    directory, or when the mount is not confirmed within the configured bound.
    """


class UnmountFailure(PermanentError):
    """Directory is still mounted after an unmount request.

    Fatal: the directory must not be treated as free by a later mount.
    """


class InvalidStateTransition(PermanentError):
    """A MountState transition outside the allowed table was attempted."""


# =============================================================================
# Emulator
# =============================================================================


class EmulatorError(GuestExecError):
    """Emulator process could not be started (binary missing, exec failure)."""


# =============================================================================
# Interruption
# =============================================================================


class RunInterrupted(GuestExecError):
    """The run was stopped by SIGINT or SIGTERM after teardown completed.

    Attributes:
        signum: Signal number that interrupted the run
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, signum: int = 0):
        super().__init__(message, context)
        self.signum = signum
