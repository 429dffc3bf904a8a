from __future__ import annotations

import errno
import logging
import socket
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from .errors import ConfigError, TransferError
from .text_utils import is_nested_under

if TYPE_CHECKING:
    from .config import DeploySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRNOS = {
    errno.ETIMEDOUT,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.EPIPE,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ECONNREFUSED,
}


def join_remote(root: str, relpath: str) -> str:
    base = root.rstrip("/")
    rel = relpath.strip("/")
    if not rel:
        return base or "/"
    return f"{base}/{rel}"


def remote_parents(remote_path: str) -> list[str]:
    """Every ancestor of `remote_path`, shallowest first, excluding `/`."""
    parts = [p for p in remote_path.split("/") if p]
    prefix = "/" if remote_path.startswith("/") else ""
    return [prefix + "/".join(parts[:idx]) for idx in range(1, len(parts))]


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, (socket.timeout, TimeoutError, ConnectionResetError, BrokenPipeError)):
        return True
    if isinstance(exc, EOFError):
        return True
    if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS:
        return True
    return False


class RemoteConnection(ABC):
    """An open session against the remote store.

    All paths are absolute forward-slash remote paths. Every failure is
    reported as a TransferError; nothing is retried here.
    """

    concurrent_safe: bool = False

    def __init__(self, root: str) -> None:
        self.root = root

    def remote_path(self, relpath: str) -> str:
        return join_remote(self.root, relpath)

    def dirs_below_root(self, path: str) -> list[str]:
        """`path` and its ancestors strictly below the root, shallowest first.

        Directories above the root are never touched.
        """
        base = self.root.rstrip("/")
        return [p for p in remote_parents(path) if is_nested_under(p, base)] + [path]

    def ensure_dir(self, path: str) -> None:
        self._call("ensure_dir", path, self._ensure_dir, path)

    def upload_from(self, local_path: Path, remote_path: str) -> None:
        self._call("upload", remote_path, self._upload_from, Path(local_path), remote_path)

    def remove(self, remote_path: str) -> None:
        self._call("remove", remote_path, self._remove, remote_path)

    def remove_dir(self, remote_path: str, recursive: bool = True) -> None:
        self._call("remove_dir", remote_path, self._remove_dir, remote_path, recursive)

    def close(self) -> None:
        return None

    def __enter__(self) -> RemoteConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def is_transient(self, exc: BaseException) -> bool:
        return is_transient_error(exc)

    def is_missing(self, exc: BaseException) -> bool:
        return isinstance(exc, FileNotFoundError)

    def _call(self, operation: str, path: str, fn: Callable[..., T], *args: object) -> T:
        try:
            return fn(*args)
        except TransferError:
            raise
        except Exception as exc:
            transient = self.is_transient(exc)
            logger.debug(
                "%s %s failed (%s): %s",
                operation,
                path,
                "transient" if transient else "permanent",
                exc,
            )
            raise TransferError(
                operation,
                path,
                exc,
                transient=transient,
                missing=self.is_missing(exc),
            ) from exc

    @abstractmethod
    def _ensure_dir(self, path: str) -> None: ...

    @abstractmethod
    def _upload_from(self, local_path: Path, remote_path: str) -> None: ...

    @abstractmethod
    def _remove(self, remote_path: str) -> None: ...

    @abstractmethod
    def _remove_dir(self, remote_path: str, recursive: bool) -> None: ...


class RemoteStore(ABC):
    """Factory for connections to one remote tree rooted at `root`."""

    def __init__(self, root: str = "/", timeout: float = 30.0) -> None:
        self.root = root
        self.timeout = timeout

    @abstractmethod
    def connect(self) -> RemoteConnection:
        """Open a connection or raise RemoteConnectionError."""

    def describe(self) -> str:
        return f"{type(self).__name__}({self.root})"


def open_store(settings: DeploySettings) -> RemoteStore:
    protocol = settings.remote_protocol
    if protocol == "sftp":
        from .store_sftp import SFTPStore

        return SFTPStore(
            host=settings.require_host(),
            port=settings.resolved_port,
            user=settings.remote_user,
            password=settings.remote_password,
            root=settings.remote_root,
            timeout=settings.remote_timeout,
        )
    if protocol == "ftp":
        from .store_ftp import FTPStore

        return FTPStore(
            host=settings.require_host(),
            port=settings.resolved_port,
            user=settings.remote_user,
            password=settings.remote_password,
            secure=settings.remote_secure,
            root=settings.remote_root,
            timeout=settings.remote_timeout,
        )
    if protocol == "local":
        from .store_local import LocalStore

        return LocalStore(Path(settings.remote_root))
    raise ConfigError(f"unsupported remote protocol: {protocol}")
