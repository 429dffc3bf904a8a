from __future__ import annotations

import ftplib
import logging
import posixpath
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .config import DEFAULT_FTP_PORT
from .errors import RemoteConnectionError
from .remote_store import RemoteConnection, RemoteStore, is_transient_error
from .text_utils import is_nested_under

logger = logging.getLogger(__name__)


def _basename(name: str) -> str:
    return name.rstrip("/").rsplit("/", 1)[-1]


class FTPConnection(RemoteConnection):
    """A single FTP control channel; commands must not interleave."""

    concurrent_safe = False

    def __init__(self, ftp: ftplib.FTP, root: str) -> None:
        super().__init__(root)
        self.ftp = ftp
        self._known_dirs: set[str] = {"/", root.rstrip("/") or "/"}

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, ftplib.error_temp):
            return True
        if isinstance(exc, (ftplib.error_perm, ftplib.error_proto, ftplib.error_reply)):
            return False
        return is_transient_error(exc)

    def _is_dir(self, path: str) -> bool:
        current = self.ftp.pwd()
        try:
            self.ftp.cwd(path)
        except ftplib.error_perm:
            return False
        self.ftp.cwd(current)
        return True

    def _ensure_dir(self, path: str) -> None:
        for segment in self.dirs_below_root(path):
            if segment in self._known_dirs:
                continue
            try:
                self.ftp.mkd(segment)
            except ftplib.error_perm:
                if not self._is_dir(segment):
                    raise
            self._known_dirs.add(segment)

    def _upload_from(self, local_path: Path, remote_path: str) -> None:
        with local_path.open("rb") as handle:
            self.ftp.storbinary(f"STOR {remote_path}", handle)

    def _exists(self, path: str) -> bool:
        parent = posixpath.dirname(path.rstrip("/")) or "/"
        try:
            names = self.ftp.nlst(parent)
        except ftplib.error_perm:
            return False
        return _basename(path) in {_basename(name) for name in names}

    def _remove(self, remote_path: str) -> None:
        try:
            self.ftp.delete(remote_path)
        except ftplib.error_perm as exc:
            if not self._exists(remote_path):
                raise FileNotFoundError(f"remote path not found: {remote_path}") from exc
            raise

    def _list_children(self, path: str) -> list[tuple[str, bool]]:
        try:
            return [
                (name, facts.get("type") == "dir")
                for name, facts in self.ftp.mlsd(path, facts=["type"])
                if facts.get("type") not in {"cdir", "pdir"} and name not in {".", ".."}
            ]
        except ftplib.error_perm:
            children = []
            for name in self.ftp.nlst(path):
                base = _basename(name)
                if base in {".", ".."}:
                    continue
                child = posixpath.join(path, base)
                children.append((base, self._is_dir(child)))
            return children

    def _remove_dir(self, remote_path: str, recursive: bool) -> None:
        if not self._is_dir(remote_path):
            if not self._exists(remote_path):
                raise FileNotFoundError(f"remote path not found: {remote_path}")
            raise NotADirectoryError(f"remote path is not a directory: {remote_path}")
        if recursive:
            for name, is_dir in self._list_children(remote_path):
                child = f"{remote_path.rstrip('/')}/{name}"
                if is_dir:
                    self._remove_dir(child, True)
                else:
                    self.ftp.delete(child)
        self.ftp.rmd(remote_path)
        self._known_dirs = {
            known
            for known in self._known_dirs
            if known != remote_path and not is_nested_under(known, remote_path)
        }

    def close(self) -> None:
        try:
            self.ftp.quit()
        except (ftplib.Error, OSError, EOFError) as exc:
            logger.debug("FTP quit failed, closing socket: %s", exc)
            self.ftp.close()


class FTPStore(RemoteStore):
    def __init__(
        self,
        *,
        host: str,
        user: str | None = None,
        password: str | None = None,
        port: int = DEFAULT_FTP_PORT,
        secure: bool = False,
        root: str = "/",
        timeout: float = 30.0,
        ftp_factory: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(root=root, timeout=timeout)
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.secure = secure
        self.ftp_factory = ftp_factory or (ftplib.FTP_TLS if secure else ftplib.FTP)

    def describe(self) -> str:
        scheme = "ftps" if self.secure else "ftp"
        user = f"{self.user}@" if self.user else ""
        return f"{scheme}://{user}{self.host}:{self.port}{self.root}"

    def connect(self) -> FTPConnection:
        ftp = self.ftp_factory(timeout=self.timeout)
        try:
            ftp.connect(self.host, self.port, timeout=self.timeout)
            ftp.login(self.user or "anonymous", self.password or "")
            if self.secure:
                ftp.prot_p()
            root = self.root
            if not root.startswith("/"):
                root = posixpath.normpath(posixpath.join(ftp.pwd(), root))
        except ftplib.all_errors as exc:
            ftp.close()
            raise RemoteConnectionError(f"Cannot connect to {self.describe()}: {exc}") from exc
        logger.info("Connected to %s", self.describe())
        return FTPConnection(ftp, root)
