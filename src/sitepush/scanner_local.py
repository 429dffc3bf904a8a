from __future__ import annotations

import logging
import os
import stat
import time
from collections.abc import Callable
from pathlib import Path, PurePosixPath

from .errors import ComparisonError
from .models import FileRecord, NodeType
from .text_utils import normalize_text

logger = logging.getLogger(__name__)


def _node_type(st_mode: int) -> NodeType | None:
    if stat.S_ISDIR(st_mode):
        return NodeType.DIR
    if stat.S_ISREG(st_mode):
        return NodeType.FILE
    return None


class LocalScanner:
    """Enumerates every file and directory below `root`.

    Symlinks are resolved to what they point at, since a deployed site only
    ever carries plain files. Sockets, fifos and devices are skipped.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().absolute()

    def scan(
        self,
        progress_cb: Callable[[PurePosixPath, int, int], None] | None = None,
    ) -> dict[str, FileRecord]:
        try:
            root_stat = self.root.stat()
        except OSError as exc:
            raise ComparisonError(f"Cannot read tree root {self.root}: {exc}") from exc
        if not stat.S_ISDIR(root_stat.st_mode):
            raise ComparisonError(f"Tree root is not a directory: {self.root}")
        if not os.access(self.root, os.R_OK | os.X_OK):
            raise ComparisonError(f"Tree root is not readable: {self.root}")

        records: dict[str, FileRecord] = {}
        # (dev, ino) of every directory from the root down to each walked directory
        ancestors: dict[Path, frozenset[tuple[int, int]]] = {
            self.root: frozenset({(root_stat.st_dev, root_stat.st_ino)})
        }
        dirs_scanned = 0
        files_seen = 0
        last_progress = 0.0

        def _on_error(exc: OSError) -> None:
            raise ComparisonError(
                f"Cannot read {exc.filename or self.root}: {exc.strerror or exc}"
            ) from exc

        for current_dir, dirs, files in os.walk(
            self.root, topdown=True, onerror=_on_error, followlinks=True
        ):
            current_path = Path(current_dir)
            rel_dir = PurePosixPath(".")
            if current_path != self.root:
                rel_dir = PurePosixPath(current_path.relative_to(self.root).as_posix())
            dirs_scanned += 1

            now = time.monotonic()
            if progress_cb is not None and (now - last_progress) >= 0.2:
                progress_cb(rel_dir, dirs_scanned, files_seen)
                last_progress = now

            chain = ancestors.pop(current_path)
            kept_dirs: list[str] = []
            for name in sorted(dirs):
                st = self._stat(current_path / name)
                key = (st.st_dev, st.st_ino)
                if key in chain:
                    logger.warning("Skipping symlink loop at %s", current_path / name)
                    continue
                ancestors[current_path / name] = chain | {key}
                relpath = self._relpath(rel_dir, name)
                records[relpath] = FileRecord(
                    relpath=relpath,
                    node_type=NodeType.DIR,
                    size=0,
                    path=current_path / name,
                )
                kept_dirs.append(name)
            dirs[:] = kept_dirs

            for name in files:
                st = self._stat(current_path / name)
                node_type = _node_type(st.st_mode)
                if node_type is None:
                    logger.debug("Skipping special file %s", current_path / name)
                    continue
                files_seen += 1
                relpath = self._relpath(rel_dir, name)
                records[relpath] = FileRecord(
                    relpath=relpath,
                    node_type=node_type,
                    size=st.st_size if node_type == NodeType.FILE else 0,
                    path=current_path / name,
                )

        if progress_cb is not None:
            progress_cb(PurePosixPath("."), dirs_scanned, files_seen)

        return records

    def _stat(self, path: Path) -> os.stat_result:
        try:
            return path.stat()
        except OSError as exc:
            raise ComparisonError(f"Cannot read {path}: {exc.strerror or exc}") from exc

    @staticmethod
    def _relpath(rel_dir: PurePosixPath, name: str) -> str:
        child = PurePosixPath(name) if rel_dir == PurePosixPath(".") else rel_dir / name
        return normalize_text(child.as_posix())
