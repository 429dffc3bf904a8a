from __future__ import annotations

import errno
import ftplib
import posixpath
import stat
import threading
from dataclasses import dataclass
from pathlib import Path

import pytest

from sitepush.models import DiffEntry, EntryState, FileRecord, NodeType
from sitepush.remote_store import RemoteConnection, RemoteStore, remote_parents


def mk_file(
    relpath: str,
    *,
    node_type: NodeType = NodeType.FILE,
    size: int = 0,
    path: Path | None = None,
) -> FileRecord:
    return FileRecord(relpath=relpath, node_type=node_type, size=size, path=path)


def mk_dir(relpath: str) -> FileRecord:
    return FileRecord(relpath=relpath, node_type=NodeType.DIR, size=0)


def mk_entry(
    relpath: str,
    *,
    state: EntryState,
    kind: NodeType = NodeType.FILE,
    mirror_kind: NodeType | None = None,
    local_path: Path | None = None,
) -> DiffEntry:
    if local_path is None and kind == NodeType.FILE and state != EntryState.MIRROR_ONLY:
        local_path = Path("/build") / relpath
    if mirror_kind is None and state in {EntryState.MIRROR_ONLY, EntryState.DIFFERING}:
        mirror_kind = kind
    return DiffEntry(
        relpath=relpath,
        kind=kind,
        state=state,
        local_path=local_path,
        mirror_kind=mirror_kind,
    )


def write_tree(root: Path, layout: dict[str, str | None]) -> Path:
    """Create files (str content) and directories (None) below `root`."""
    root.mkdir(parents=True, exist_ok=True)
    for relpath, content in layout.items():
        target = root / relpath
        if content is None:
            target.mkdir(parents=True, exist_ok=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
    return root


def read_tree(root: Path) -> dict[str, str | None]:
    result: dict[str, str | None] = {}
    for path in sorted(root.rglob("*")):
        relpath = path.relative_to(root).as_posix()
        result[relpath] = None if path.is_dir() else path.read_text(encoding="utf-8")
    return result


class MemoryConnection(RemoteConnection):
    def __init__(self, store: MemoryStore) -> None:
        super().__init__(store.root)
        self.store = store
        self.concurrent_safe = store.concurrent_safe

    def _check(self, method: str, path: str) -> None:
        store = self.store
        with store.lock:
            store.calls.append((method, path))
            store.active += 1
            store.max_active = max(store.max_active, store.active)
            failure = store.failures.get((method, path))
            if isinstance(failure, list):
                failure = failure.pop(0) if failure else None
        try:
            if store.on_call is not None:
                store.on_call(method, path)
            if failure is not None:
                raise failure
        finally:
            with store.lock:
                store.active -= 1

    def _ensure_dir(self, path: str) -> None:
        self._check("ensure_dir", path)
        with self.store.lock:
            for segment in [*remote_parents(path), path]:
                if segment in self.store.files:
                    raise NotADirectoryError(errno.ENOTDIR, "not a directory", segment)
                self.store.dirs.add(segment)

    def _upload_from(self, local_path: Path, remote_path: str) -> None:
        self._check("upload", remote_path)
        data = local_path.read_bytes()
        with self.store.lock:
            parent = posixpath.dirname(remote_path) or "/"
            if parent not in self.store.dirs:
                raise FileNotFoundError(errno.ENOENT, "no such directory", parent)
            if remote_path in self.store.dirs:
                raise IsADirectoryError(errno.EISDIR, "is a directory", remote_path)
            self.store.files[remote_path] = data

    def _remove(self, remote_path: str) -> None:
        self._check("remove", remote_path)
        with self.store.lock:
            if remote_path not in self.store.files:
                raise FileNotFoundError(errno.ENOENT, "no such file", remote_path)
            del self.store.files[remote_path]

    def _remove_dir(self, remote_path: str, recursive: bool) -> None:
        self._check("remove_dir", remote_path)
        prefix = f"{remote_path}/"
        with self.store.lock:
            if remote_path not in self.store.dirs:
                raise FileNotFoundError(errno.ENOENT, "no such directory", remote_path)
            nested_files = [p for p in self.store.files if p.startswith(prefix)]
            nested_dirs = [p for p in self.store.dirs if p.startswith(prefix)]
            if (nested_files or nested_dirs) and not recursive:
                raise OSError(errno.ENOTEMPTY, "directory not empty", remote_path)
            for path in nested_files:
                del self.store.files[path]
            for path in nested_dirs:
                self.store.dirs.discard(path)
            self.store.dirs.discard(remote_path)

    def close(self) -> None:
        self.store.closed += 1


class MemoryStore(RemoteStore):
    """In-memory remote tree recording every call, with injectable failures.

    `failures` maps (method, remote_path) to an exception, or to a list of
    exceptions raised one per call (None entries let the call through).
    """

    def __init__(self, root: str = "/site", *, concurrent_safe: bool = False) -> None:
        super().__init__(root=root)
        self.concurrent_safe = concurrent_safe
        self.dirs: set[str] = {"/", root}
        self.files: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], object] = {}
        self.connect_error: Exception | None = None
        self.on_call = None
        self.connections = 0
        self.closed = 0
        self.active = 0
        self.max_active = 0
        self.lock = threading.Lock()

    def connect(self) -> MemoryConnection:
        if self.connect_error is not None:
            raise self.connect_error
        self.connections += 1
        return MemoryConnection(self)

    def seed(self, relpaths: dict[str, bytes | None]) -> None:
        for relpath, content in relpaths.items():
            remote = f"{self.root}/{relpath}"
            if content is None:
                self.dirs.add(remote)
            else:
                self.files[remote] = content

    def tree(self) -> dict[str, bytes | None]:
        prefix = f"{self.root}/"
        view: dict[str, bytes | None] = {
            d[len(prefix):]: None for d in self.dirs if d.startswith(prefix)
        }
        view.update({f[len(prefix):]: data for f, data in self.files.items() if f.startswith(prefix)})
        return view


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


# paramiko fakes


@dataclass
class RemoteStat:
    st_mode: int
    filename: str = ""


class FakeChannel:
    def __init__(self) -> None:
        self.timeout: float | None = None

    def settimeout(self, value: float) -> None:
        self.timeout = value


class FakeSFTPClient:
    def __init__(self, shared: FakeSFTPState) -> None:
        self.state = shared
        self.channel = FakeChannel()
        self.closed = False

    def _check_failure(self, method: str, path: str) -> None:
        err = self.state.failures.get((method, path))
        if err is not None:
            raise err

    def get_channel(self) -> FakeChannel:
        return self.channel

    def normalize(self, path: str) -> str:
        self.state.calls.append(("normalize", path))
        if path == ".":
            return self.state.home
        return posixpath.normpath(posixpath.join(self.state.home, path))

    def stat(self, path: str) -> RemoteStat:
        self._check_failure("stat", path)
        self.state.calls.append(("stat", path))
        if path in self.state.dirs:
            return RemoteStat(st_mode=stat.S_IFDIR | 0o755)
        if path in self.state.files:
            return RemoteStat(st_mode=stat.S_IFREG | 0o644)
        raise FileNotFoundError(errno.ENOENT, "No such file", path)

    def mkdir(self, path: str) -> None:
        self._check_failure("mkdir", path)
        self.state.calls.append(("mkdir", path))
        self.state.dirs.add(path)

    def put(self, local_path: str, remote_path: str, *, confirm: bool = True) -> None:
        self._check_failure("put", remote_path)
        self.state.calls.append(("put", local_path, remote_path, confirm))
        self.state.files[remote_path] = Path(local_path).read_bytes()

    def remove(self, path: str) -> None:
        self._check_failure("remove", path)
        self.state.calls.append(("remove", path))
        if path not in self.state.files:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        del self.state.files[path]

    def rmdir(self, path: str) -> None:
        self._check_failure("rmdir", path)
        self.state.calls.append(("rmdir", path))
        if path not in self.state.dirs:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        self.state.dirs.discard(path)

    def listdir_attr(self, path: str) -> list[RemoteStat]:
        self.state.calls.append(("listdir_attr", path))
        if path not in self.state.dirs:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        prefix = f"{path.rstrip('/')}/"
        entries = []
        for d in sorted(self.state.dirs):
            if d.startswith(prefix) and "/" not in d[len(prefix):]:
                entries.append(RemoteStat(st_mode=stat.S_IFDIR | 0o755, filename=d[len(prefix):]))
        for f in sorted(self.state.files):
            if f.startswith(prefix) and "/" not in f[len(prefix):]:
                entries.append(RemoteStat(st_mode=stat.S_IFREG | 0o644, filename=f[len(prefix):]))
        return entries

    def close(self) -> None:
        self.closed = True


class FakeSFTPState:
    def __init__(self, home: str = "/home/deploy") -> None:
        self.home = home
        self.dirs: set[str] = {"/", home}
        self.files: dict[str, bytes] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple] = []
        self.opened: list[FakeSFTPClient] = []


class FakeTransport:
    def __init__(self, active: bool = True) -> None:
        self.active = active

    def is_active(self) -> bool:
        return self.active


class FakeSSHClient:
    def __init__(self, state: FakeSFTPState, *, connect_error: Exception | None = None) -> None:
        self.state = state
        self.connect_error = connect_error
        self.connect_calls: list[dict[str, object]] = []
        self.policy: object | None = None
        self.closed = False

    def load_system_host_keys(self) -> None:
        return None

    def set_missing_host_key_policy(self, policy: object) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connect_calls.append(kwargs)
        if self.connect_error is not None:
            raise self.connect_error

    def get_transport(self) -> FakeTransport:
        return FakeTransport(active=not self.closed)

    def open_sftp(self) -> FakeSFTPClient:
        sftp = FakeSFTPClient(self.state)
        self.state.opened.append(sftp)
        return sftp

    def close(self) -> None:
        self.closed = True


class DummyAutoAddPolicy:
    pass


# ftplib fake


class FakeFTP:
    instances: list[FakeFTP] = []

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout
        self.cwd_path = "/"
        self.home = "/"
        self.dirs: set[str] = {"/"}
        self.files: dict[str, bytes] = {}
        self.calls: list[tuple] = []
        self.login_error: Exception | None = None
        self.failures: dict[tuple[str, str], Exception] = {}
        self.mlsd_supported = True
        self.secured = False
        self.quit_called = False
        self.closed = False
        FakeFTP.instances.append(self)

    def _check(self, method: str, path: str) -> None:
        self.calls.append((method, path))
        err = self.failures.get((method, path))
        if err is not None:
            raise err

    def connect(self, host: str, port: int, timeout: float | None = None) -> str:
        self.calls.append(("connect", host, port, timeout))
        return "220 ready"

    def login(self, user: str, passwd: str) -> str:
        self.calls.append(("login", user, passwd))
        if self.login_error is not None:
            raise self.login_error
        return "230 logged in"

    def prot_p(self) -> str:
        self.secured = True
        return "200 protection set"

    def pwd(self) -> str:
        return self.cwd_path

    def cwd(self, path: str) -> str:
        target = posixpath.normpath(posixpath.join(self.cwd_path, path))
        if target not in self.dirs:
            raise ftplib.error_perm(f"550 {path}: No such directory")
        self.cwd_path = target
        return "250 ok"

    def mkd(self, path: str) -> str:
        self._check("mkd", path)
        parent = posixpath.dirname(path) or "/"
        if path in self.dirs or path in self.files or parent not in self.dirs:
            raise ftplib.error_perm(f"550 {path}: cannot create")
        self.dirs.add(path)
        return path

    def storbinary(self, cmd: str, fp) -> str:
        path = cmd.split(" ", 1)[1]
        self._check("stor", path)
        parent = posixpath.dirname(path) or "/"
        if parent not in self.dirs:
            raise ftplib.error_perm(f"553 {path}: cannot store")
        self.files[path] = fp.read()
        return "226 done"

    def delete(self, path: str) -> str:
        self._check("delete", path)
        if path not in self.files:
            raise ftplib.error_perm(f"550 {path}: No such file")
        del self.files[path]
        return "250 deleted"

    def rmd(self, path: str) -> str:
        self._check("rmd", path)
        prefix = f"{path}/"
        if path not in self.dirs or any(p.startswith(prefix) for p in (*self.dirs, *self.files)):
            raise ftplib.error_perm(f"550 {path}: cannot remove")
        self.dirs.discard(path)
        return "250 removed"

    def _children(self, path: str) -> list[tuple[str, bool]]:
        prefix = f"{path.rstrip('/')}/"
        children = [(d[len(prefix):], True) for d in self.dirs if d.startswith(prefix) and "/" not in d[len(prefix):]]
        children += [(f[len(prefix):], False) for f in self.files if f.startswith(prefix) and "/" not in f[len(prefix):]]
        return sorted(children)

    def mlsd(self, path: str = "", facts=()):
        self.calls.append(("mlsd", path))
        if not self.mlsd_supported:
            raise ftplib.error_perm("500 MLSD not understood")
        if path not in self.dirs:
            raise ftplib.error_perm(f"550 {path}: No such directory")
        yield ".", {"type": "cdir"}
        for name, is_dir in self._children(path):
            yield name, {"type": "dir" if is_dir else "file"}

    def nlst(self, path: str = "") -> list[str]:
        self.calls.append(("nlst", path))
        if path not in self.dirs:
            raise ftplib.error_perm(f"550 {path}: No such directory")
        return [f"{path.rstrip('/')}/{name}" for name, _is_dir in self._children(path)]

    def quit(self) -> str:
        self.quit_called = True
        return "221 bye"

    def close(self) -> None:
        self.closed = True
