"""Recovery of deployment runs interrupted by a crash.

A run that dies between snapshot and promotion leaves backup containers behind
(``{target}-backup-...``), possibly next to a half-verified container under the
target name. Because no run state is persisted, the engine's container list is
the only record of what happened. RecoveryManager reads it and resolves the
target deterministically:

- no backups: nothing to do
- target running and turning healthy within the health timeout: keep it,
  discard backups
- otherwise: remove the target container (if any) and restore the newest backup

Backups older than the newest one are always discarded. Backups kept on purpose
after a promotion are renamed to ``{target}-retained-...`` and left alone.
"""

from __future__ import annotations

import time
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from hotswap.pipeline.backup import BackupManager
from hotswap.pipeline.container import ContainerRuntime
from hotswap.pipeline.health import HealthProbe

logger = structlog.get_logger(__name__)


class RecoveryAction(str, Enum):
    """Resolution chosen for a target.

    Values:
        NOTHING_TO_RECOVER: No backup containers were found.
        KEPT_CURRENT: The target container is healthy; backups were discarded.
        RESTORED_BACKUP: The newest backup replaced the target container.
        FAILED: The target could not be resolved.
    """

    NOTHING_TO_RECOVER = "nothing_to_recover"
    KEPT_CURRENT = "kept_current"
    RESTORED_BACKUP = "restored_backup"
    FAILED = "failed"


class RecoveryReport(BaseModel):
    """Summary of a recovery pass over one target.

    Attributes:
        target: Target name.
        action: Resolution that was applied.
        restored_backup: Backup renamed back to the target, if any.
        discarded_backups: Backups removed during recovery.
        removed_instance: ID of the target container that was removed, if any.
        errors: Problems met along the way.
        duration_seconds: Total recovery duration in seconds.
    """

    target: str
    action: RecoveryAction
    restored_backup: str | None = Field(default=None)
    discarded_backups: list[str] = Field(default_factory=list)
    removed_instance: str | None = Field(default=None)
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = Field(default=0.0)

    @property
    def success(self) -> bool:
        return self.action != RecoveryAction.FAILED


class RecoveryManager:
    """Detects and resolves leftovers of interrupted deployment runs."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        prober: HealthProbe,
        backups: BackupManager | None = None,
    ) -> None:
        self.runtime = runtime
        self.prober = prober
        self.backups = backups or BackupManager(runtime)
        self._logger = logger.bind(component="RecoveryManager")

    async def recover(
        self,
        target: str,
        health_url: str | None = None,
        timeout_seconds: float | None = None,
        interval_seconds: float | None = None,
    ) -> RecoveryReport:
        """Resolve an interrupted run of target.

        Backups retained after a promotion carry a different name and are
        never considered here.

        Args:
            target: Target name.
            health_url: Health endpoint of the target. Without one, a running
                target container counts as healthy.
            timeout_seconds: How long a running target may take to answer healthy
                before it is replaced (defaults to the prober configuration).
            interval_seconds: Pause between health probes.

        Returns:
            RecoveryReport describing what was done.
        """
        start_time = time.monotonic()
        backups = await self.backups.list_backups(target)
        if not backups:
            return RecoveryReport(
                target=target,
                action=RecoveryAction.NOTHING_TO_RECOVER,
                duration_seconds=time.monotonic() - start_time,
            )

        self._logger.warning(
            "interrupted_deploy_detected",
            target=target,
            backups=[b.name for b in backups],
        )
        report = RecoveryReport(target=target, action=RecoveryAction.KEPT_CURRENT)
        current = await self.runtime.inspect(target)

        if current is not None and await self._is_healthy(
            current.is_running, health_url, timeout_seconds, interval_seconds
        ):
            stale = backups
        else:
            newest, stale = backups[0], backups[1:]
            if current is not None:
                removed = await self.runtime.remove(target)
                if not removed.success:
                    report.errors.append(f"Failed to remove {target}: {removed.error}")
                    return self._finish(report, RecoveryAction.FAILED, start_time)
                report.removed_instance = current.container_id

            restored = await self.backups.restore(newest.name, target)
            if not restored.success:
                report.errors.append(restored.error or f"Failed to restore {newest.name}")
                self._logger.critical("recovery_restore_failed", target=target, backup_name=newest.name)
                return self._finish(report, RecoveryAction.FAILED, start_time)
            report.restored_backup = newest.name
            report.action = RecoveryAction.RESTORED_BACKUP

        for backup in stale:
            discarded = await self.backups.discard(backup.name)
            if discarded.success:
                report.discarded_backups.append(backup.name)
            else:
                report.errors.append(discarded.error or f"Failed to discard {backup.name}")

        return self._finish(report, report.action, start_time)

    async def _is_healthy(
        self,
        running: bool,
        health_url: str | None,
        timeout_seconds: float | None,
        interval_seconds: float | None,
    ) -> bool:
        if not running:
            return False
        if health_url is None:
            return True
        outcome = await self.prober.probe(
            health_url,
            timeout_seconds=timeout_seconds,
            interval_seconds=interval_seconds,
            initial_delay_seconds=0.0,
        )
        return outcome.healthy

    def _finish(self, report: RecoveryReport, action: RecoveryAction, start_time: float) -> RecoveryReport:
        report.action = action
        report.duration_seconds = time.monotonic() - start_time
        self._logger.info(
            "recovery_completed",
            target=report.target,
            action=action.value,
            restored_backup=report.restored_backup,
            discarded=len(report.discarded_backups),
            errors=len(report.errors),
        )
        return report
