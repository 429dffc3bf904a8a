from __future__ import annotations

import logging
import posixpath
import stat
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import paramiko

from .config import DEFAULT_SFTP_PORT
from .errors import RemoteConnectionError
from .remote_store import RemoteConnection, RemoteStore, is_transient_error
from .text_utils import is_nested_under

logger = logging.getLogger(__name__)


def _close_quietly(resource: Any) -> None:
    try:
        resource.close()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Ignoring error while closing %r: %s", resource, exc)


def _resolve_root(sftp: paramiko.SFTPClient, root: str) -> str:
    if root.startswith("/"):
        return posixpath.normpath(root)
    home = sftp.normalize(".")
    relative = root[1:].lstrip("/") if root.startswith("~") else root
    return posixpath.normpath(posixpath.join(home, relative))


class SFTPConnection(RemoteConnection):
    """One SSH transport shared by every worker.

    Each thread gets its own SFTP channel on that transport, so uploads can
    overlap without sharing a channel between threads.
    """

    concurrent_safe = True

    def __init__(self, client: paramiko.SSHClient, root: str, timeout: float) -> None:
        super().__init__(root)
        self.client = client
        self.timeout = timeout
        self._local = threading.local()
        self._lock = threading.Lock()
        self._channels: list[paramiko.SFTPClient] = []
        self._known_dirs: set[str] = {"/", root.rstrip("/") or "/"}

    @classmethod
    def open(cls, client: paramiko.SSHClient, root: str, timeout: float) -> SFTPConnection:
        conn = cls(client, root, timeout)
        conn.root = _resolve_root(conn._sftp(), root)
        conn._known_dirs.add(conn.root)
        return conn

    def _sftp(self) -> paramiko.SFTPClient:
        sftp = getattr(self._local, "sftp", None)
        if sftp is None:
            sftp = self.client.open_sftp()
            channel = sftp.get_channel()
            if channel is not None:
                channel.settimeout(self.timeout)
            with self._lock:
                self._channels.append(sftp)
            self._local.sftp = sftp
        return sftp

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, paramiko.AuthenticationException):
            return False
        if isinstance(exc, paramiko.SSHException):
            return True
        return is_transient_error(exc)

    def _ensure_dir(self, path: str) -> None:
        sftp = self._sftp()
        for segment in self.dirs_below_root(path):
            with self._lock:
                if segment in self._known_dirs:
                    continue
            try:
                st = sftp.stat(segment)
            except FileNotFoundError:
                try:
                    sftp.mkdir(segment)
                except OSError:
                    # Another worker may have created it in the meantime.
                    st = sftp.stat(segment)
                    if not stat.S_ISDIR(st.st_mode or 0):
                        raise
            else:
                if not stat.S_ISDIR(st.st_mode or 0):
                    raise NotADirectoryError(f"remote path is not a directory: {segment}")
            with self._lock:
                self._known_dirs.add(segment)

    def _upload_from(self, local_path: Path, remote_path: str) -> None:
        self._sftp().put(str(local_path), remote_path, confirm=False)

    def _remove(self, remote_path: str) -> None:
        self._sftp().remove(remote_path)

    def _remove_dir(self, remote_path: str, recursive: bool) -> None:
        sftp = self._sftp()
        if recursive:
            for attr in sftp.listdir_attr(remote_path):
                child = f"{remote_path.rstrip('/')}/{attr.filename}"
                if stat.S_ISDIR(attr.st_mode or 0):
                    self._remove_dir(child, True)
                else:
                    sftp.remove(child)
        sftp.rmdir(remote_path)
        with self._lock:
            self._known_dirs = {
                known
                for known in self._known_dirs
                if known != remote_path and not is_nested_under(known, remote_path)
            }

    def close(self) -> None:
        with self._lock:
            channels, self._channels = self._channels, []
        for sftp in channels:
            _close_quietly(sftp)
        _close_quietly(self.client)


class SFTPStore(RemoteStore):
    def __init__(
        self,
        *,
        host: str,
        user: str | None = None,
        password: str | None = None,
        port: int = DEFAULT_SFTP_PORT,
        root: str = "/",
        timeout: float = 30.0,
        client_factory: Callable[[], Any] = paramiko.SSHClient,
        auto_add_policy_factory: Callable[[], Any] = paramiko.AutoAddPolicy,
    ) -> None:
        super().__init__(root=root, timeout=timeout)
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.client_factory = client_factory
        self.auto_add_policy_factory = auto_add_policy_factory

    def describe(self) -> str:
        user = f"{self.user}@" if self.user else ""
        return f"sftp://{user}{self.host}:{self.port}{self.root}"

    def connect(self) -> SFTPConnection:
        client = self.client_factory()
        try:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(self.auto_add_policy_factory())
            client.connect(
                hostname=self.host,
                username=self.user,
                password=self.password,
                port=self.port,
                look_for_keys=self.password is None,
                allow_agent=True,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
            )
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                raise paramiko.SSHException("SSH transport is not active after connect")
            conn = SFTPConnection.open(client, self.root, self.timeout)
        except (paramiko.SSHException, OSError) as exc:
            _close_quietly(client)
            raise RemoteConnectionError(f"Cannot connect to {self.describe()}: {exc}") from exc
        logger.info("Connected to %s (root %s)", self.describe(), conn.root)
        return conn
