from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .errors import ComparisonError, MirrorLockedError, SnapshotError
from .models import DiffSet, FileRecord, NodeType, path_depth
from .scanner_local import LocalScanner

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class MirrorManager:
    """Owns the local snapshot of what was last deployed."""

    def __init__(self, mirror_dir: Path) -> None:
        self.mirror_dir = Path(mirror_dir).expanduser().absolute()

    @property
    def lock_path(self) -> Path:
        return self.mirror_dir.with_name(f"{self.mirror_dir.name}.lock")

    @property
    def staging_dir(self) -> Path:
        return self.mirror_dir.with_name(f"{self.mirror_dir.name}.staging")

    @property
    def retired_dir(self) -> Path:
        return self.mirror_dir.with_name(f"{self.mirror_dir.name}.old")

    def ensure(self) -> Path:
        try:
            self.mirror_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SnapshotError(f"Cannot create mirror {self.mirror_dir}: {exc}") from exc
        return self.mirror_dir

    @contextmanager
    def lock(self) -> Iterator[Path]:
        """Hold the mirror exclusively for the duration of a run."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = self._acquire()
        try:
            os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        finally:
            os.close(fd)
        try:
            yield self.mirror_dir
        finally:
            self.lock_path.unlink(missing_ok=True)

    def _acquire(self) -> int:
        try:
            return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            pass

        holder = self._lock_holder()
        if holder is not None and _pid_alive(holder):
            raise MirrorLockedError(
                f"Mirror {self.mirror_dir} is locked by running process {holder} "
                f"({self.lock_path})"
            )
        logger.warning("Reclaiming stale mirror lock %s (pid %s)", self.lock_path, holder)
        self.lock_path.unlink(missing_ok=True)
        try:
            return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            raise MirrorLockedError(f"Mirror {self.mirror_dir} is locked ({self.lock_path})") from exc

    def _lock_holder(self) -> int | None:
        try:
            text = self.lock_path.read_text(encoding="ascii").strip()
        except OSError:
            return None
        try:
            return int(text)
        except ValueError:
            return None

    def commit(self, build_dir: Path, diff_set: DiffSet | None = None) -> bool:
        """Replace the mirror with a full copy of `build_dir`.

        Returns False without touching anything when `diff_set` says the
        trees already match. Only what the scanner reports is copied, so
        the mirror holds exactly the tree that was compared and pushed.
        The copy is staged next to the mirror and swapped in, so an
        interrupted copy never leaves a half-written mirror in place.
        """
        if diff_set is not None and diff_set.same:
            logger.info("Mirror already matches the build; nothing to commit")
            return False

        source = Path(build_dir)
        try:
            records = LocalScanner(source).scan()
        except ComparisonError as exc:
            raise SnapshotError(
                f"Failed to update mirror {self.mirror_dir} from {source}; "
                f"the mirror no longer matches the remote site: {exc}"
            ) from exc

        try:
            for leftover in (self.staging_dir, self.retired_dir):
                if leftover.exists():
                    shutil.rmtree(leftover)
            self._stage(records)
            if self.mirror_dir.exists():
                self.mirror_dir.rename(self.retired_dir)
            self.staging_dir.rename(self.mirror_dir)
            if self.retired_dir.exists():
                shutil.rmtree(self.retired_dir)
        except (OSError, shutil.Error) as exc:
            raise SnapshotError(
                f"Failed to update mirror {self.mirror_dir} from {source}; "
                f"the mirror no longer matches the remote site: {exc}"
            ) from exc

        logger.info("Mirror %s updated from %s", self.mirror_dir, source)
        return True

    def _stage(self, records: dict[str, FileRecord]) -> None:
        self.staging_dir.mkdir(parents=True)
        for relpath in sorted(records, key=lambda rel: (path_depth(rel), rel)):
            record = records[relpath]
            target = self.staging_dir / relpath
            if record.node_type == NodeType.DIR:
                target.mkdir()
            else:
                assert record.path is not None
                shutil.copyfile(record.path, target)
