from __future__ import annotations

import logging
from pathlib import Path

from .errors import ComparisonError
from .models import CompareStrategy, DiffEntry, DiffSet, EntryState, FileRecord, NodeType
from .scanner_local import LocalScanner

logger = logging.getLogger(__name__)


def _same_content(left: Path, right: Path, chunk_size: int) -> bool:
    try:
        with left.open("rb") as lf, right.open("rb") as rf:
            while True:
                left_chunk = lf.read(chunk_size)
                right_chunk = rf.read(chunk_size)
                if left_chunk != right_chunk:
                    return False
                if not left_chunk:
                    return True
    except OSError as exc:
        raise ComparisonError(
            f"Cannot compare {left} with {right}: {exc.strerror or exc}"
        ) from exc


def _name(record: FileRecord) -> str:
    return record.relpath.rsplit("/", 1)[-1]


def _classify_pair(
    local: FileRecord,
    mirror: FileRecord,
    strategy: CompareStrategy,
) -> EntryState:
    if local.node_type != mirror.node_type:
        return EntryState.DIFFERING
    if local.node_type == NodeType.DIR:
        return EntryState.EQUAL
    if strategy.compare_size and local.size != mirror.size:
        return EntryState.DIFFERING
    if strategy.compare_content:
        if local.path is None or mirror.path is None:
            raise ComparisonError(
                f"Content comparison needs both paths for {local.relpath}"
            )
        if not _same_content(local.path, mirror.path, strategy.chunk_size):
            return EntryState.DIFFERING
    return EntryState.EQUAL


def compare_records(
    local_records: dict[str, FileRecord],
    mirror_records: dict[str, FileRecord],
    strategy: CompareStrategy | None = None,
) -> DiffSet:
    """Pair records by relative path and classify every path exactly once."""
    resolved = strategy or CompareStrategy()
    entries: list[DiffEntry] = []

    for relpath in set(local_records) | set(mirror_records):
        local = local_records.get(relpath)
        mirror = mirror_records.get(relpath)

        if local and not mirror:
            entries.append(
                DiffEntry(
                    relpath=relpath,
                    kind=local.node_type,
                    state=EntryState.LOCAL_ONLY,
                    local_path=local.path,
                    local_name=_name(local),
                    local_size=local.size,
                )
            )
            continue

        if mirror and not local:
            entries.append(
                DiffEntry(
                    relpath=relpath,
                    kind=mirror.node_type,
                    state=EntryState.MIRROR_ONLY,
                    mirror_path=mirror.path,
                    mirror_name=_name(mirror),
                    mirror_kind=mirror.node_type,
                    mirror_size=mirror.size,
                )
            )
            continue

        assert local is not None and mirror is not None

        entries.append(
            DiffEntry(
                relpath=relpath,
                kind=local.node_type,
                state=_classify_pair(local, mirror, resolved),
                local_path=local.path,
                local_name=_name(local),
                mirror_path=mirror.path,
                mirror_name=_name(mirror),
                mirror_kind=mirror.node_type,
                local_size=local.size,
                mirror_size=mirror.size,
            )
        )

    return DiffSet.from_entries(entries)


def compare_trees(
    build_root: Path,
    mirror_root: Path,
    strategy: CompareStrategy | None = None,
) -> DiffSet:
    local_records = LocalScanner(build_root).scan()
    mirror_records = LocalScanner(mirror_root).scan()
    diff_set = compare_records(local_records, mirror_records, strategy)
    logger.info(
        "Compared %s with %s: equal=%d distinct=%d local_only=%d mirror_only=%d",
        build_root,
        mirror_root,
        diff_set.equal,
        diff_set.distinct,
        diff_set.local_only_count,
        diff_set.mirror_only_count,
    )
    return diff_set
