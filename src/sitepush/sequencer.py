from __future__ import annotations

from dataclasses import dataclass

from .models import DiffEntry, DiffSet, EntryState, NodeType, Operation, OperationKind

# MAKE_DIR sorts before UPLOAD at equal depth, DELETE before REMOVE_DIR.
_KIND_RANK = {
    OperationKind.DELETE: 0,
    OperationKind.REMOVE_DIR: 1,
    OperationKind.MAKE_DIR: 0,
    OperationKind.UPLOAD: 1,
}


@dataclass(frozen=True)
class PlanSummary:
    make_dir: int = 0
    upload: int = 0
    delete: int = 0
    remove_dir: int = 0

    @property
    def total(self) -> int:
        return self.make_dir + self.upload + self.delete + self.remove_dir


def _create(kind: NodeType, entry: DiffEntry) -> Operation:
    if kind == NodeType.DIR:
        return Operation(OperationKind.MAKE_DIR, entry.relpath)
    return Operation(OperationKind.UPLOAD, entry.relpath, local_path=entry.local_path)


def _destroy(kind: NodeType, entry: DiffEntry) -> Operation:
    if kind == NodeType.DIR:
        return Operation(OperationKind.REMOVE_DIR, entry.relpath)
    return Operation(OperationKind.DELETE, entry.relpath)


def operations_for_entry(entry: DiffEntry) -> list[Operation]:
    if entry.state == EntryState.EQUAL:
        return []
    if entry.state == EntryState.LOCAL_ONLY:
        return [_create(entry.kind, entry)]
    if entry.state == EntryState.MIRROR_ONLY:
        return [_destroy(entry.kind, entry)]

    if entry.type_changed:
        assert entry.mirror_kind is not None
        return [_destroy(entry.mirror_kind, entry), _create(entry.kind, entry)]
    if entry.kind == NodeType.DIR:
        raise ValueError(f"directory cannot differ in place: {entry.relpath}")
    return [Operation(OperationKind.UPLOAD, entry.relpath, local_path=entry.local_path)]


def sequence_operations(diff_set: DiffSet) -> list[Operation]:
    """Turn a diff into remote operations that are safe to apply in order.

    Removals come first, deepest path first, so a directory is only removed
    once everything below it is gone. Creations follow, shallowest first, so
    a directory exists before anything is placed inside it.
    """
    destructive: list[Operation] = []
    creative: list[Operation] = []
    for entry in diff_set.changed():
        for op in operations_for_entry(entry):
            (destructive if op.kind.destructive else creative).append(op)

    destructive.sort(key=lambda op: (-op.depth, _KIND_RANK[op.kind], op.relpath))
    creative.sort(key=lambda op: (op.depth, _KIND_RANK[op.kind], op.relpath))
    return destructive + creative


def summarize_operations(ops: list[Operation]) -> PlanSummary:
    counts = {kind.value: 0 for kind in OperationKind}
    for op in ops:
        counts[op.kind.value] += 1
    return PlanSummary(**counts)
