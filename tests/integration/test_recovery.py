"""Integration tests for interrupted-run recovery.

Each test lays out the containers a crashed deployment could leave behind and
checks that RecoveryManager settles on exactly one instance named after the
target.
"""

from __future__ import annotations

import pytest

from hotswap.orchestrator.recovery import RecoveryAction, RecoveryManager
from hotswap.pipeline.backup import BackupManager

URL = "http://localhost:8080/health"
OLD_BACKUP = "api-backup-20261001000000-aaaaaa"
NEW_BACKUP = "api-backup-20261018000000-bbbbbb"
RETAINED = "api-retained-20261010000000-cccccc"


@pytest.fixture
def recovery(runtime, prober) -> RecoveryManager:
    return RecoveryManager(runtime, prober, BackupManager(runtime))


@pytest.mark.asyncio
async def test_nothing_to_recover(runtime, recovery) -> None:
    runtime.seed("api", "svc:v1")

    report = await recovery.recover("api", URL)

    assert report.action == RecoveryAction.NOTHING_TO_RECOVER
    assert report.success
    assert runtime.names() == {"api"}


@pytest.mark.asyncio
async def test_healthy_target_keeps_current(runtime, recovery) -> None:
    """Crash after the new instance was verified but before the backup was discarded."""
    runtime.seed("api", "svc:v2")
    runtime.seed(NEW_BACKUP, "svc:v1", running=False)

    report = await recovery.recover("api", URL)

    assert report.action == RecoveryAction.KEPT_CURRENT
    assert report.discarded_backups == [NEW_BACKUP]
    assert runtime.names() == {"api"}
    assert runtime.containers["api"].image == "svc:v2"


@pytest.mark.asyncio
async def test_unhealthy_target_restores_backup(runtime, recovery, health_responses) -> None:
    """Crash during the health check of a bad image."""
    runtime.seed("api", "svc:v2")
    backup = runtime.seed(NEW_BACKUP, "svc:v1", running=False)
    health_responses["svc:v2"] = 500

    report = await recovery.recover("api", URL)

    assert report.action == RecoveryAction.RESTORED_BACKUP
    assert report.restored_backup == NEW_BACKUP
    assert report.removed_instance is not None
    assert runtime.names() == {"api"}
    assert runtime.containers["api"].container_id == backup.container_id
    assert runtime.containers["api"].running


@pytest.mark.asyncio
async def test_missing_target_restores_backup(runtime, recovery) -> None:
    """Crash between snapshot and start."""
    runtime.seed(NEW_BACKUP, "svc:v1", running=False)

    report = await recovery.recover("api", URL)

    assert report.action == RecoveryAction.RESTORED_BACKUP
    assert report.removed_instance is None
    assert runtime.containers["api"].image == "svc:v1"


@pytest.mark.asyncio
async def test_stopped_target_restores_backup(runtime, recovery) -> None:
    runtime.seed("api", "svc:v2", running=False)
    runtime.seed(NEW_BACKUP, "svc:v1", running=False)

    report = await recovery.recover("api", URL)

    assert report.action == RecoveryAction.RESTORED_BACKUP
    assert runtime.containers["api"].image == "svc:v1"


@pytest.mark.asyncio
async def test_older_backups_discarded(runtime, recovery) -> None:
    runtime.seed(OLD_BACKUP, "svc:v0", running=False)
    runtime.seed(NEW_BACKUP, "svc:v1", running=False)

    report = await recovery.recover("api", URL)

    assert report.restored_backup == NEW_BACKUP
    assert report.discarded_backups == [OLD_BACKUP]
    assert runtime.names() == {"api"}


@pytest.mark.asyncio
async def test_without_health_url_running_counts_as_healthy(runtime, recovery, health_responses) -> None:
    runtime.seed("api", "svc:v2")
    runtime.seed(NEW_BACKUP, "svc:v1", running=False)
    health_responses["svc:v2"] = 500

    report = await recovery.recover("api", None)

    assert report.action == RecoveryAction.KEPT_CURRENT
    assert runtime.containers["api"].image == "svc:v2"


@pytest.mark.asyncio
async def test_restore_failure(runtime, recovery) -> None:
    runtime.seed(NEW_BACKUP, "svc:v1", running=False)
    runtime.fail_restart.add("api")

    report = await recovery.recover("api", URL)

    assert report.action == RecoveryAction.FAILED
    assert not report.success
    assert report.errors


@pytest.mark.asyncio
async def test_target_turning_healthy_keeps_current(runtime, recovery, health_responses) -> None:
    """A target still starting up is polled until healthy instead of being replaced."""
    runtime.seed("api", "svc:v2")
    runtime.seed(NEW_BACKUP, "svc:v1", running=False)
    health_responses["svc:v2"] = [503, "refuse", 200]

    report = await recovery.recover("api", URL, timeout_seconds=0.5, interval_seconds=0.01)

    assert report.action == RecoveryAction.KEPT_CURRENT
    assert runtime.names() == {"api"}
    assert runtime.containers["api"].image == "svc:v2"


@pytest.mark.asyncio
async def test_retained_backups_left_alone(runtime, recovery, health_responses) -> None:
    runtime.seed("api", "svc:v2")
    runtime.seed(RETAINED, "svc:v1", running=False)
    health_responses["svc:v2"] = 500

    report = await recovery.recover("api", URL)

    assert report.action == RecoveryAction.NOTHING_TO_RECOVER
    assert runtime.names() == {"api", RETAINED}
    assert runtime.containers["api"].image == "svc:v2"


@pytest.mark.asyncio
async def test_backups_of_prefixed_target_ignored(runtime, recovery) -> None:
    """Backups of a target named api-backup do not belong to api."""
    runtime.seed("api-backup-backup-20261018000000-abcdef", "db:v1", running=False)

    report = await recovery.recover("api", URL)

    assert report.action == RecoveryAction.NOTHING_TO_RECOVER
    assert "api" not in runtime.names()
