"""Apply a sequenced operation list against a remote store."""

from __future__ import annotations

import heapq
import logging
import random
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from .config import DEFAULT_RETRY_DELAY, DEFAULT_SYNC_RETRIES, DEFAULT_SYNC_WORKERS
from .errors import TransferError
from .models import Operation, OperationKind, SyncProgress, SyncResult
from .remote_store import RemoteConnection, RemoteStore
from .text_utils import parent_paths

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient transfer failures."""

    max_retries: int = DEFAULT_SYNC_RETRIES
    base_delay: float = DEFAULT_RETRY_DELAY
    max_delay: float = 30.0
    jitter: float = 0.25

    def delay(self, attempt: int) -> float:
        base = min(self.base_delay * (2**attempt), self.max_delay)
        spread = base * self.jitter * (2 * random.random() - 1)
        return max(0.0, base + spread)


NO_RETRY = RetryPolicy(max_retries=0, base_delay=0.0)


def build_dependencies(operations: Sequence[Operation]) -> list[set[int]]:
    """For every operation, the earlier operations it must wait for.

    An operation waits on every earlier operation whose path is the same,
    an ancestor, or a descendant of its own. The list is expected to come
    from the sequencer, so those earlier operations are exactly the ones
    that have to finish first.
    """
    deps: list[set[int]] = [set() for _ in operations]
    on_path: dict[str, list[int]] = {}
    below_path: dict[str, list[int]] = {}

    for idx, op in enumerate(operations):
        ancestors = parent_paths(op.relpath)
        for path in (*ancestors, op.relpath):
            deps[idx].update(on_path.get(path, ()))
        deps[idx].update(below_path.get(op.relpath, ()))

        on_path.setdefault(op.relpath, []).append(idx)
        for ancestor in ancestors:
            below_path.setdefault(ancestor, []).append(idx)

    return deps


def _execute(conn: RemoteConnection, op: Operation) -> None:
    remote = conn.remote_path(op.relpath)
    if op.kind == OperationKind.MAKE_DIR:
        conn.ensure_dir(remote)
    elif op.kind == OperationKind.UPLOAD:
        if op.local_path is None:
            raise ValueError(f"upload without a local source: {op.relpath}")
        conn.upload_from(op.local_path, remote)
    elif op.kind == OperationKind.DELETE:
        conn.remove(remote)
    elif op.kind == OperationKind.REMOVE_DIR:
        conn.remove_dir(remote, recursive=True)
    else:
        raise ValueError(f"unsupported operation kind: {op.kind}")


def run_operation(
    conn: RemoteConnection,
    op: Operation,
    retry: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    attempt = 0
    while True:
        try:
            _execute(conn, op)
            return
        except TransferError as exc:
            if exc.missing and op.kind.destructive:
                # Gone already, e.g. removed by an earlier interrupted run.
                logger.info("%s: already absent remotely", op.describe())
                return
            if not exc.transient or attempt >= retry.max_retries:
                raise
            delay = retry.delay(attempt)
            attempt += 1
            logger.warning(
                "%s failed (%s), retry %d/%d in %.1fs",
                op.describe(),
                exc.cause or exc,
                attempt,
                retry.max_retries,
                delay,
            )
            sleep(delay)


def apply_operations(
    operations: Sequence[Operation],
    store: RemoteStore,
    *,
    max_workers: int = DEFAULT_SYNC_WORKERS,
    retry: RetryPolicy | None = None,
    progress_cb: ProgressCallback | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncResult:
    """Apply `operations` over a single connection, stopping at the first failure.

    Operations are dispatched in list order as soon as everything they
    depend on has completed; up to `max_workers` run at once when the
    connection allows concurrent use. After a failure nothing new is
    dispatched and the operations already running are allowed to finish.
    Nothing is rolled back. Raises RemoteConnectionError if the store
    cannot be reached.
    """
    ops = tuple(operations)
    total = len(ops)
    if total == 0:
        return SyncResult(total=0, completed=0)

    resolved_retry = retry or RetryPolicy()
    deps = build_dependencies(ops)
    waiting = [len(d) for d in deps]
    dependents: list[list[int]] = [[] for _ in ops]
    for idx, blockers in enumerate(deps):
        for blocker in blockers:
            dependents[blocker].append(idx)
    ready = [idx for idx, count in enumerate(waiting) if count == 0]
    heapq.heapify(ready)

    completed: list[Operation] = []
    failed: tuple[Operation, Exception] | None = None

    with store.connect() as conn:
        workers = max(1, max_workers) if conn.concurrent_safe else 1
        logger.info("Applying %d operations with %d worker(s)", total, workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sitepush-sync") as pool:
            in_flight: dict[Future[None], int] = {}
            while True:
                while failed is None and ready and len(in_flight) < workers:
                    idx = heapq.heappop(ready)
                    future = pool.submit(run_operation, conn, ops[idx], resolved_retry, sleep)
                    in_flight[future] = idx
                if not in_flight:
                    break

                done, _pending = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=in_flight.__getitem__):
                    idx = in_flight.pop(future)
                    op = ops[idx]
                    exc = future.exception()
                    if exc is not None:
                        logger.error("%s failed: %s", op.describe(), exc)
                        if failed is None:
                            failed = (op, exc if isinstance(exc, Exception) else RuntimeError(exc))
                        continue
                    completed.append(op)
                    logger.debug("%s done", op.describe())
                    if progress_cb is not None:
                        progress_cb(SyncProgress(completed=len(completed), total=total))
                    for dependent in dependents[idx]:
                        waiting[dependent] -= 1
                        if waiting[dependent] == 0:
                            heapq.heappush(ready, dependent)

    if failed is not None:
        failed_op, error = failed
        return SyncResult(
            total=total,
            completed=len(completed),
            failed_operation=failed_op,
            error=error,
            completed_operations=tuple(completed),
        )
    return SyncResult(
        total=total,
        completed=len(completed),
        completed_operations=tuple(completed),
    )
