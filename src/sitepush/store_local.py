from __future__ import annotations

import shutil
from pathlib import Path

from .errors import RemoteConnectionError
from .remote_store import RemoteConnection, RemoteStore


class LocalConnection(RemoteConnection):
    concurrent_safe = True

    def _ensure_dir(self, path: str) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def _upload_from(self, local_path: Path, remote_path: str) -> None:
        target = Path(remote_path)
        if target.is_dir() and not target.is_symlink():
            raise IsADirectoryError(f"destination is a directory: {remote_path}")
        shutil.copyfile(local_path, target)

    def _remove(self, remote_path: str) -> None:
        Path(remote_path).unlink()

    def _remove_dir(self, remote_path: str, recursive: bool) -> None:
        path = Path(remote_path)
        if recursive:
            shutil.rmtree(path)
        else:
            path.rmdir()


class LocalStore(RemoteStore):
    """Publishes into a directory on local storage, e.g. a mounted web root."""

    def __init__(self, root: Path, timeout: float = 30.0) -> None:
        resolved = Path(root).expanduser().absolute()
        super().__init__(root=resolved.as_posix(), timeout=timeout)
        self.root_path = resolved

    def connect(self) -> LocalConnection:
        try:
            self.root_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RemoteConnectionError(
                f"Cannot open local target {self.root_path}: {exc}"
            ) from exc
        return LocalConnection(self.root)
