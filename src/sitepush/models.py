from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath


class NodeType(str, Enum):
    FILE = "file"
    DIR = "dir"


class EntryState(str, Enum):
    EQUAL = "equal"
    LOCAL_ONLY = "local_only"
    MIRROR_ONLY = "mirror_only"
    DIFFERING = "differing"


class OperationKind(str, Enum):
    MAKE_DIR = "make_dir"
    UPLOAD = "upload"
    DELETE = "delete"
    REMOVE_DIR = "remove_dir"

    @property
    def destructive(self) -> bool:
        return self in {OperationKind.DELETE, OperationKind.REMOVE_DIR}


def path_depth(relpath: str) -> int:
    return len(PurePosixPath(relpath).parts)


@dataclass(frozen=True)
class CompareStrategy:
    """Which equality checks decide EQUAL vs DIFFERING.

    Size is always compared. Timestamps are never compared: checkouts and
    rebuilds rewrite mtimes without touching content.
    """

    compare_content: bool = False
    chunk_size: int = 64 * 1024

    @property
    def compare_size(self) -> bool:
        return True


@dataclass(frozen=True)
class FileRecord:
    relpath: str
    node_type: NodeType
    size: int
    path: Path | None = None


@dataclass(frozen=True)
class DiffEntry:
    relpath: str
    kind: NodeType
    state: EntryState
    local_path: Path | None = None
    local_name: str | None = None
    mirror_path: Path | None = None
    mirror_name: str | None = None
    mirror_kind: NodeType | None = None
    local_size: int | None = None
    mirror_size: int | None = None

    @property
    def depth(self) -> int:
        return path_depth(self.relpath)

    @property
    def type_changed(self) -> bool:
        return self.mirror_kind is not None and self.mirror_kind != self.kind


@dataclass(frozen=True)
class DiffSet:
    entries: tuple[DiffEntry, ...] = ()
    equal: int = 0
    distinct: int = 0
    local_only_count: int = 0
    mirror_only_count: int = 0

    @classmethod
    def from_entries(cls, entries: list[DiffEntry]) -> DiffSet:
        ordered = sorted(entries, key=lambda e: (e.depth, e.relpath))
        counts = {state: 0 for state in EntryState}
        for entry in ordered:
            counts[entry.state] += 1
        return cls(
            entries=tuple(ordered),
            equal=counts[EntryState.EQUAL],
            distinct=counts[EntryState.DIFFERING],
            local_only_count=counts[EntryState.LOCAL_ONLY],
            mirror_only_count=counts[EntryState.MIRROR_ONLY],
        )

    @property
    def same(self) -> bool:
        return all(entry.state == EntryState.EQUAL for entry in self.entries)

    @property
    def differences(self) -> int:
        return self.distinct + self.local_only_count + self.mirror_only_count

    def changed(self) -> Iterator[DiffEntry]:
        for entry in self.entries:
            if entry.state != EntryState.EQUAL:
                yield entry

    def by_path(self) -> dict[str, DiffEntry]:
        return {entry.relpath: entry for entry in self.entries}


@dataclass(frozen=True)
class Operation:
    kind: OperationKind
    relpath: str
    local_path: Path | None = None

    @property
    def depth(self) -> int:
        return path_depth(self.relpath)

    def describe(self) -> str:
        if self.kind == OperationKind.UPLOAD:
            return f"UPLOAD {self.local_path} TO {self.relpath}"
        return f"{self.kind.name} {self.relpath}"


@dataclass(frozen=True)
class SyncProgress:
    completed: int
    total: int


@dataclass(frozen=True)
class SyncResult:
    total: int
    completed: int
    failed_operation: Operation | None = None
    error: Exception | None = None
    completed_operations: tuple[Operation, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.error is None and self.completed == self.total
