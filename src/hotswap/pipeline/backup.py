"""Backup snapshots of the running instance.

A snapshot preserves the current container instead of deleting it: the container
is stopped (freeing its host ports for the replacement) and renamed to a
timestamp-qualified backup name. Restoring renames it back and starts it again,
so the original filesystem and configuration come back without a re-pull.

Backup names look like ``api-backup-20261018153012-a1b2c3``. The random suffix
keeps names unique when two runs snapshot within the same second. A backup kept
after a successful promotion is renamed to ``api-retained-20261018153012-a1b2c3``
so it is never mistaken for one left behind by an interrupted run.
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from hotswap.logging import get_logger
from hotswap.pipeline.container import (
    BACKUP_INFIX,
    RETAINED_INFIX,
    ContainerInstance,
    ContainerRuntime,
    is_backup_name,
    is_retained_name,
)

_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class BackupResult(BaseModel):
    """Result of a snapshot, restore or discard operation.

    Attributes:
        success: Whether the operation completed
        action: snapshot, restore or discard
        target: Target name the backup belongs to
        backup_name: Backup container name (None when there was nothing to snapshot)
        previous_image: Image of the snapshotted container
        error: Error message if the operation failed
        duration_seconds: Time taken for the operation
    """

    success: bool = Field(description="Operation success flag")
    action: str = Field(description="Backup action")
    target: str = Field(description="Target name")
    backup_name: str | None = Field(default=None, description="Backup container name")
    previous_image: str | None = Field(default=None, description="Snapshotted image")
    error: str | None = Field(default=None, description="Error message")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Operation duration")


def make_backup_name(target: str, now: datetime | None = None) -> str:
    """Build a collision-free backup name for a target."""
    now = now or datetime.now(timezone.utc)
    return f"{target}{BACKUP_INFIX}{now.strftime(_TIMESTAMP_FORMAT)}-{secrets.token_hex(3)}"


def target_of_backup(backup_name: str) -> str:
    """Recover the target name from a backup or retained name."""
    infix = RETAINED_INFIX if is_retained_name(backup_name) else BACKUP_INFIX
    return backup_name.rsplit(infix, 1)[0]


def retained_name_for(backup_name: str) -> str:
    """Name a backup carries once it is kept after a promotion."""
    target, suffix = backup_name.rsplit(BACKUP_INFIX, 1)
    return f"{target}{RETAINED_INFIX}{suffix}"


class BackupManager:
    """Snapshot, restore and discard backups through a ContainerRuntime."""

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime
        self.logger = get_logger(__name__)

    async def snapshot(self, target: str) -> BackupResult:
        """Stop the target's container and rename it to a backup name.

        Returns a successful result with ``backup_name=None`` when no container
        named ``target`` exists (first deployment). If the rename fails, the
        original container is started again under its own name.
        """
        start_time = time.monotonic()
        existing = await self.runtime.inspect(target)
        if existing is None:
            self.logger.info("no_instance_to_backup", target=target)
            return BackupResult(success=True, action="snapshot", target=target)

        backup_name = make_backup_name(target)
        self.logger.info(
            "creating_backup",
            target=target,
            backup_name=backup_name,
            image=existing.image,
            state=existing.state.value,
        )

        stop = await self.runtime.stop(target)
        if not stop.success:
            return self._failure("snapshot", target, start_time, f"Failed to stop {target}: {stop.error}", None)

        rename = await self.runtime.rename(target, backup_name)
        if not rename.success:
            if existing.is_running:
                revert = await self.runtime.restart(target)
                if not revert.success:
                    self.logger.critical(
                        "backup_revert_failed",
                        target=target,
                        error=revert.error,
                    )
            return self._failure(
                "snapshot", target, start_time, f"Failed to rename {target}: {rename.error}", None
            )

        duration = time.monotonic() - start_time
        self.logger.info("backup_created", target=target, backup_name=backup_name)
        return BackupResult(
            success=True,
            action="snapshot",
            target=target,
            backup_name=backup_name,
            previous_image=existing.image,
            duration_seconds=duration,
        )

    async def restore(self, backup_name: str, target: str) -> BackupResult:
        """Rename a backup back to the target name and start it.

        The target name must already be free; the caller removes the failed
        replacement first.
        """
        start_time = time.monotonic()
        self.logger.warning("restoring_backup", target=target, backup_name=backup_name)

        if await self.runtime.exists(target):
            return self._failure(
                "restore", target, start_time, f"Container name {target} is still in use", backup_name
            )

        rename = await self.runtime.rename(backup_name, target)
        if not rename.success:
            return self._failure(
                "restore", target, start_time, f"Failed to rename {backup_name}: {rename.error}", backup_name
            )

        started = await self.runtime.restart(target)
        if not started.success:
            return self._failure(
                "restore", target, start_time, f"Failed to start restored {target}: {started.error}", backup_name
            )

        restored = await self.runtime.inspect(target)
        duration = time.monotonic() - start_time
        self.logger.info("backup_restored", target=target, backup_name=backup_name)
        return BackupResult(
            success=True,
            action="restore",
            target=target,
            backup_name=backup_name,
            previous_image=restored.image if restored else None,
            duration_seconds=duration,
        )

    async def discard(self, backup_name: str) -> BackupResult:
        """Stop and remove a backup container. A missing backup counts as discarded."""
        start_time = time.monotonic()
        target = target_of_backup(backup_name)

        stop = await self.runtime.stop(backup_name)
        if not stop.success:
            return self._failure("discard", target, start_time, f"Failed to stop {backup_name}: {stop.error}", backup_name)

        remove = await self.runtime.remove(backup_name)
        if not remove.success:
            return self._failure(
                "discard", target, start_time, f"Failed to remove {backup_name}: {remove.error}", backup_name
            )

        self.logger.info("backup_discarded", target=target, backup_name=backup_name)
        return BackupResult(
            success=True,
            action="discard",
            target=target,
            backup_name=backup_name,
            duration_seconds=time.monotonic() - start_time,
        )

    async def retain(self, backup_name: str) -> BackupResult:
        """Keep a backup after a promotion by renaming it to the retained scheme.

        Retained containers stay stopped and are never picked up by recovery,
        so a later run cannot mistake them for leftovers of a crash.
        """
        start_time = time.monotonic()
        target = target_of_backup(backup_name)
        retained_name = retained_name_for(backup_name)

        rename = await self.runtime.rename(backup_name, retained_name)
        if not rename.success:
            return self._failure(
                "retain", target, start_time, f"Failed to rename {backup_name}: {rename.error}", backup_name
            )

        self.logger.info("backup_retained", target=target, backup_name=retained_name)
        return BackupResult(
            success=True,
            action="retain",
            target=target,
            backup_name=retained_name,
            duration_seconds=time.monotonic() - start_time,
        )

    async def list_backups(self, target: str) -> list[ContainerInstance]:
        """List a target's backup containers, newest first."""
        instances = await self.runtime.list_instances(f"{target}{BACKUP_INFIX}")
        backups = [i for i in instances if is_backup_name(i.name, target)]
        # Names embed a sortable timestamp
        return sorted(backups, key=lambda i: i.name, reverse=True)

    async def list_retained(self, target: str) -> list[ContainerInstance]:
        """List backups kept after promotions, newest first."""
        instances = await self.runtime.list_instances(f"{target}{RETAINED_INFIX}")
        retained = [i for i in instances if is_retained_name(i.name, target)]
        return sorted(retained, key=lambda i: i.name, reverse=True)

    def _failure(
        self, action: str, target: str, start_time: float, error: str, backup_name: str | None
    ) -> BackupResult:
        self.logger.error(f"backup_{action}_failed", target=target, backup_name=backup_name, error=error)
        return BackupResult(
            success=False,
            action=action,
            target=target,
            backup_name=backup_name,
            error=error,
            duration_seconds=time.monotonic() - start_time,
        )
