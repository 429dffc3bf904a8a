"""The deployment run: pull, install, build, compare, sync, commit.

Each stage gates the next. Any DeployError aborts the run; the Mirror is
only replaced after the whole operation batch has been applied.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .compare import compare_trees
from .config import DeploySettings
from .errors import DeployError, StageError, SyncFailedError
from .mirror import MirrorManager
from .models import CompareStrategy, DiffSet, Operation, SyncResult
from .orchestrator import ProgressCallback, RetryPolicy, apply_operations
from .remote_store import RemoteStore, open_store
from .sequencer import PlanSummary, sequence_operations, summarize_operations

logger = logging.getLogger(__name__)

CommandRunner = Callable[[str, Path, bool], int]


@dataclass(frozen=True)
class PipelineReport:
    ok: bool
    message: str
    diff_set: DiffSet | None = None
    operations: tuple[Operation, ...] = ()
    result: SyncResult | None = None
    committed: bool = False

    @property
    def summary(self) -> PlanSummary:
        return summarize_operations(list(self.operations))


Notifier = Callable[[PipelineReport], None]


def run_command(command: str, cwd: Path, mute_errors: bool = False) -> int:
    logger.debug("Running %r in %s", command, cwd)
    completed = subprocess.run(
        shlex.split(command),
        cwd=cwd,
        check=False,
        stderr=subprocess.DEVNULL if mute_errors else None,
    )
    return completed.returncode


def run_external_stages(settings: DeploySettings, runner: CommandRunner = run_command) -> None:
    stages = (
        ("Pulling changes", settings.pull_command, False),
        ("Installing dependencies", settings.install_command, True),
        ("Building website", settings.build_command, False),
    )
    for label, command, mute_errors in stages:
        logger.info("%s (%s)...", label, command)
        try:
            returncode = runner(command, settings.repo_dir, mute_errors)
        except OSError as exc:
            raise StageError(command, detail=str(exc)) from exc
        if returncode != 0:
            raise StageError(command, returncode)


def plan_deployment(settings: DeploySettings) -> tuple[DiffSet, list[Operation]]:
    """Compare the build with the Mirror and sequence the resulting operations."""
    mirror = MirrorManager(settings.mirror_dir)
    with mirror.lock():
        mirror.ensure()
        diff_set = compare_trees(
            settings.build_dir,
            mirror.mirror_dir,
            CompareStrategy(compare_content=settings.compare_content),
        )
    return diff_set, sequence_operations(diff_set)


def _deploy(
    settings: DeploySettings,
    *,
    store: RemoteStore | None,
    runner: CommandRunner,
    progress_cb: ProgressCallback | None,
    sleep: Callable[[float], None],
) -> PipelineReport:
    if settings.skip_build:
        logger.info("Skipping pull/install/build")
    else:
        run_external_stages(settings, runner)

    mirror = MirrorManager(settings.mirror_dir)
    with mirror.lock():
        mirror.ensure()
        logger.info("Comparing build with previous deployment...")
        diff_set = compare_trees(
            settings.build_dir,
            mirror.mirror_dir,
            CompareStrategy(compare_content=settings.compare_content),
        )
        if diff_set.same:
            return PipelineReport(ok=True, message="Already up to date!", diff_set=diff_set)

        operations = sequence_operations(diff_set)
        resolved_store = store or open_store(settings)
        logger.info("Pushing %d operation(s) to %s", len(operations), resolved_store.describe())
        result = apply_operations(
            operations,
            resolved_store,
            max_workers=settings.sync_workers,
            retry=RetryPolicy(max_retries=settings.sync_retries, base_delay=settings.retry_delay),
            progress_cb=progress_cb,
            sleep=sleep,
        )
        if not result.ok:
            raise SyncFailedError(result)

        committed = mirror.commit(settings.build_dir, diff_set)

    return PipelineReport(
        ok=True,
        message=f"Deployed {result.completed} operation(s)",
        diff_set=diff_set,
        operations=tuple(operations),
        result=result,
        committed=committed,
    )


def run_pipeline(
    settings: DeploySettings,
    *,
    store: RemoteStore | None = None,
    runner: CommandRunner = run_command,
    notifier: Notifier | None = None,
    progress_cb: ProgressCallback | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineReport:
    try:
        report = _deploy(
            settings,
            store=store,
            runner=runner,
            progress_cb=progress_cb,
            sleep=sleep,
        )
    except DeployError as exc:
        if notifier is not None:
            notifier(PipelineReport(ok=False, message=str(exc)))
        raise
    if notifier is not None:
        notifier(report)
    return report


def log_notifier(settings: DeploySettings) -> Notifier:
    """Report the run outcome to the notification collaborator.

    Delivery itself lives outside this tool; this records what would be sent.
    """

    def _notify(report: PipelineReport) -> None:
        status = "succeeded" if report.ok else "FAILED"
        if settings.notify_email:
            logger.info(
                "Notification for %s: deployment %s: %s",
                settings.notify_email,
                status,
                report.message,
            )
        else:
            logger.debug("Deployment %s: %s", status, report.message)

    return _notify
