from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SyncResult


class DeployError(Exception):
    """Base exception for every fatal deployment failure."""


class StageError(DeployError):
    """An external step (pull, install, build) failed."""

    def __init__(self, stage: str, returncode: int | None = None, detail: str = "") -> None:
        self.stage = stage
        self.returncode = returncode
        message = f"{stage} failed"
        if returncode is not None:
            message += f" with exit code {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ComparisonError(DeployError):
    """A tree could not be read while comparing."""


class RemoteConnectionError(DeployError):
    """The remote store refused or failed the connection."""


class TransferError(DeployError):
    """A single remote call failed."""

    def __init__(
        self,
        operation: str,
        path: str,
        cause: BaseException | None = None,
        *,
        transient: bool = False,
        missing: bool = False,
    ) -> None:
        self.operation = operation
        self.path = path
        self.cause = cause
        self.transient = transient
        self.missing = missing
        message = f"{operation} {path}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class SyncFailedError(DeployError):
    """The orchestrator stopped on a failed operation."""

    def __init__(self, result: SyncResult) -> None:
        self.result = result
        op = result.failed_operation
        where = op.describe() if op is not None else "unknown operation"
        super().__init__(
            f"sync stopped after {result.completed}/{result.total} operations "
            f"at {where}: {result.error}"
        )


class SnapshotError(DeployError):
    """The mirror could not be replaced; it no longer matches the remote."""


class MirrorLockedError(DeployError):
    """Another run holds the mirror lock."""


class ConfigError(DeployError):
    """The deployment configuration is incomplete or invalid."""
