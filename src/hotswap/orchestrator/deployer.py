"""Deployment orchestrator: replace, verify, promote or roll back.

DeploymentOrchestrator drives one deployment run per call through the stages
defined in ``state_machine``:

1. Pull the new image. A failed pull aborts before anything is touched.
2. Snapshot the container currently named after the target (stop + rename to
   a backup name). A first deployment has nothing to snapshot.
3. Start the new container under the target name.
4. Poll its health endpoint until healthy, the deadline passes, or the run is
   cancelled.
5. Promote (discard or retain the backup, prune old images) or roll back
   (remove the new container, rename the backup back and start it).

The engine's container namespace is the only shared state. Every mutation goes
through the ContainerRuntime, and TargetLocks keeps runs on the same target
from interleaving.

Example usage:
    >>> orchestrator = DeploymentOrchestrator(runtime, prober, config)
    >>> options = orchestrator.default_options(ports={80: 8080})
    >>> outcome = await orchestrator.deploy("api", "ghcr.io/acme/api:v2", options)
    >>> sys.exit(outcome.exit_code)
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import timedelta

from hotswap.config import HotswapConfig
from hotswap.logging import bind_deploy_context, clear_deploy_context, get_logger
from hotswap.orchestrator.locks import TargetLocks
from hotswap.orchestrator.models import (
    DeploymentOutcome,
    DeploymentTarget,
    DeployOptions,
    FailureKind,
    OutcomeKind,
)
from hotswap.orchestrator.recovery import RecoveryManager, RecoveryReport
from hotswap.orchestrator.state_machine import DeploymentRun, DeployStage
from hotswap.pipeline.backup import BackupManager
from hotswap.pipeline.container import ContainerInstance, ContainerRuntime
from hotswap.pipeline.health import HealthOutcome, HealthProbe
from hotswap.pipeline.images import ImageGarbageCollector


class DeploymentOrchestrator:
    """Runs deployments against a single container engine.

    Attributes:
        runtime: Container engine client
        prober: Health endpoint poller
        config: Hotswap configuration (defaults for DeployOptions, lock policy)
        locks: Per-target mutual exclusion
        backups: Snapshot/restore of the running instance
        collector: Image garbage collector
        recovery: Resolver for interrupted runs
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        prober: HealthProbe,
        config: HotswapConfig | None = None,
        locks: TargetLocks | None = None,
        backups: BackupManager | None = None,
        collector: ImageGarbageCollector | None = None,
        recovery: RecoveryManager | None = None,
    ) -> None:
        self.runtime = runtime
        self.prober = prober
        self.config = config or HotswapConfig()
        self.locks = locks or TargetLocks(self.config.deploy.lock_policy)
        self.backups = backups or BackupManager(runtime)
        self.collector = collector or ImageGarbageCollector(runtime)
        self.recovery = recovery or RecoveryManager(runtime, prober, self.backups)
        self.logger = get_logger(__name__)

    def default_options(self, **overrides: object) -> DeployOptions:
        """DeployOptions from configuration, with non-None overrides applied."""
        return DeployOptions.from_config(self.config, **overrides)

    async def deploy(
        self,
        target: DeploymentTarget | str,
        image: str,
        options: DeployOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> DeploymentOutcome:
        """Deploy image to target.

        Args:
            target: Target (or target name) to deploy into
            image: Image reference to deploy
            options: Per-run settings (defaults from configuration)
            cancel: Event that aborts the run; during the health check it
                triggers an immediate rollback

        Returns:
            DeploymentOutcome; engine and health failures never raise

        Raises:
            ValueError: If the image is empty or no health URL can be derived
            DeploymentInProgressError: If the target is busy and the lock policy is reject
        """
        if isinstance(target, str):
            target = DeploymentTarget(name=target)
        image = image.strip()
        if not image:
            raise ValueError("Image reference must not be empty")
        options = options or self.default_options()
        health_url = options.resolve_health_url(target)

        async with self.locks.hold(target.name):
            run = DeploymentRun(target=target.name, image=image)
            bind_deploy_context(target.name, run.run_id)
            stop = asyncio.Event()
            if cancel is not None and cancel.is_set():
                stop.set()
            watcher = asyncio.create_task(self._watch_stop(stop, cancel, options.deadline_seconds))
            try:
                return await self._execute(run, target, options, health_url, stop)
            finally:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
                clear_deploy_context()

    async def recover(self, target: DeploymentTarget | str, options: DeployOptions | None = None) -> RecoveryReport:
        """Resolve leftovers of an interrupted run of target, holding its lock."""
        if isinstance(target, str):
            target = DeploymentTarget(name=target)
        options = options or self.default_options()
        try:
            health_url: str | None = options.resolve_health_url(target)
        except ValueError:
            health_url = None

        async with self.locks.hold(target.name):
            return await self.recovery.recover(
                target.name,
                health_url,
                timeout_seconds=options.health_timeout_seconds,
                interval_seconds=options.health_interval_seconds,
            )

    async def _watch_stop(
        self, stop: asyncio.Event, cancel: asyncio.Event | None, deadline_seconds: float | None
    ) -> None:
        """Set stop when the caller cancels or the run deadline passes."""
        waiter = cancel if cancel is not None else asyncio.Event()
        try:
            await asyncio.wait_for(waiter.wait(), timeout=deadline_seconds)
            self.logger.warning("deploy_cancel_requested")
        except asyncio.TimeoutError:
            self.logger.warning("deploy_deadline_exceeded", deadline_seconds=deadline_seconds)
        stop.set()

    async def _execute(
        self,
        run: DeploymentRun,
        target: DeploymentTarget,
        options: DeployOptions,
        health_url: str,
        stop: asyncio.Event,
    ) -> DeploymentOutcome:
        start_time = time.monotonic()
        self.logger.info(
            "deploy_started",
            image=run.image,
            environment=target.environment,
            health_url=health_url,
        )

        try:
            if self.config.deploy.recover_on_start:
                report = await self.recovery.recover(
                    target.name,
                    health_url,
                    timeout_seconds=options.health_timeout_seconds,
                    interval_seconds=options.health_interval_seconds,
                )
                if not report.success:
                    run.advance(DeployStage.FAILED_FATAL)
                    return await self._finish(
                        run,
                        OutcomeKind.FAILED_FATAL,
                        f"Could not resolve interrupted deployment: {'; '.join(report.errors)}",
                        start_time,
                        failure=FailureKind.RESTORE_FAILURE,
                    )

            run.advance(DeployStage.PULLING)
            pulled = await self.runtime.pull(run.image)
            if not pulled.success:
                run.advance(DeployStage.FAILED_FATAL)
                return await self._finish(
                    run,
                    OutcomeKind.FAILED_FATAL,
                    f"Failed to pull {run.image}: {pulled.error}",
                    start_time,
                    failure=FailureKind.PULL_FAILURE,
                )

            if stop.is_set():
                run.advance(DeployStage.FAILED_FATAL)
                return await self._finish(
                    run,
                    OutcomeKind.FAILED_FATAL,
                    "Deployment cancelled before any container was changed",
                    start_time,
                    failure=FailureKind.CANCELLED,
                )

            if await self.runtime.inspect(target.name) is not None:
                run.advance(DeployStage.BACKING_UP)
                snapshot = await self.backups.snapshot(target.name)
                if not snapshot.success:
                    run.advance(DeployStage.FAILED_FATAL)
                    return await self._finish(
                        run,
                        OutcomeKind.FAILED_FATAL,
                        f"Failed to back up {target.name}: {snapshot.error}",
                        start_time,
                        failure=FailureKind.SNAPSHOT_FAILURE,
                    )
                run.backup_name = snapshot.backup_name
                run.previous_image = snapshot.previous_image

            run.advance(DeployStage.STARTING)
            started = await self.runtime.start(
                target.name,
                run.image,
                ports=options.effective_ports(target),
                env=options.env,
                labels=self._labels(run, target, options),
            )
            if not started.success:
                cause = f"Failed to start {target.name} from {run.image}: {started.error}"
                if run.backup_name is None:
                    # The engine may have created the container before failing to start it
                    await self.runtime.remove(target.name)
                    run.advance(DeployStage.FAILED_FATAL)
                    return await self._finish(
                        run, OutcomeKind.FAILED_FATAL, cause, start_time, failure=FailureKind.START_FAILURE
                    )
                run.advance(DeployStage.ROLLING_BACK)
                return await self._roll_back(run, FailureKind.START_FAILURE, cause, start_time)

            run.advance(DeployStage.HEALTH_CHECKING)
            health = await self.prober.probe(
                health_url,
                timeout_seconds=options.health_timeout_seconds,
                interval_seconds=options.health_interval_seconds,
                cancel=stop,
                request_timeout_seconds=options.request_timeout_seconds,
                initial_delay_seconds=options.initial_delay_seconds,
            )

            if health.healthy:
                run.advance(DeployStage.PROMOTING)
                return await self._promote(run, options, health, start_time)

            run.advance(DeployStage.ROLLING_BACK)
            if health.cancelled:
                return await self._roll_back(
                    run,
                    FailureKind.CANCELLED,
                    "Deployment cancelled during health check",
                    start_time,
                    health=health,
                )
            return await self._roll_back(
                run,
                FailureKind.HEALTH_CHECK_FAILURE,
                f"Health check failed: {health.describe()}",
                start_time,
                health=health,
            )
        except Exception as e:
            return await self._abort(run, e, start_time)

    async def _promote(
        self,
        run: DeploymentRun,
        options: DeployOptions,
        health: HealthOutcome,
        start_time: float,
    ) -> DeploymentOutcome:
        warnings: list[str] = []

        if run.backup_name is not None and options.keep_backup_on_success:
            retained = await self.backups.retain(run.backup_name)
            if retained.success:
                run.backup_name = retained.backup_name
            else:
                warnings.append(f"Backup {run.backup_name} could not be retained: {retained.error}")
        elif run.backup_name is not None:
            discarded = await self.backups.discard(run.backup_name)
            if not discarded.success:
                warnings.append(f"Backup {run.backup_name} was not removed: {discarded.error}")

        pruned: list[str] = []
        if options.prune_images:
            report = await self.collector.prune(
                timedelta(hours=options.gc_age_threshold_hours),
                options.gc_keep_count,
                protected=[run.image],
            )
            if not report.success:
                warnings.append(f"{FailureKind.PRUNE_FAILURE.value}: {report.error}")
            elif report.errors:
                warnings.append(
                    f"{FailureKind.PRUNE_FAILURE.value}: {len(report.errors)} image(s) could not be removed"
                )
            pruned = report.removed

        run.advance(DeployStage.PROMOTED)
        return await self._finish(
            run,
            OutcomeKind.PROMOTED,
            f"{run.image} is healthy and serving as {run.target}",
            start_time,
            health=health,
            pruned=pruned,
            warnings=warnings,
        )

    async def _roll_back(
        self,
        run: DeploymentRun,
        failure: FailureKind,
        cause: str,
        start_time: float,
        health: HealthOutcome | None = None,
    ) -> DeploymentOutcome:
        self.logger.warning("rollback_started", failure=failure.value, backup_name=run.backup_name)

        await self.runtime.stop(run.target)
        removed = await self.runtime.remove(run.target)
        if not removed.success:
            self.logger.error("failed_instance_removal_failed", error=removed.error)

        if run.backup_name is None:
            run.advance(DeployStage.FAILED_FATAL)
            return await self._finish(
                run,
                OutcomeKind.FAILED_FATAL,
                f"{cause}; no previous instance to restore",
                start_time,
                failure=failure,
                health=health,
            )

        restored = await self.backups.restore(run.backup_name, run.target)
        if not restored.success:
            self.logger.critical(
                "rollback_failed",
                backup_name=run.backup_name,
                error=restored.error,
            )
            run.advance(DeployStage.FAILED_FATAL)
            return await self._finish(
                run,
                OutcomeKind.FAILED_FATAL,
                f"{cause}; rollback failed: {restored.error}",
                start_time,
                failure=FailureKind.RESTORE_FAILURE,
                health=health,
            )

        run.advance(DeployStage.ROLLED_BACK)
        self.logger.warning("rollback_completed", restored_image=restored.previous_image)
        return await self._finish(
            run, OutcomeKind.ROLLED_BACK, cause, start_time, failure=failure, health=health
        )

    async def _abort(self, run: DeploymentRun, error: Exception, start_time: float) -> DeploymentOutcome:
        """Turn an unexpected exception into an outcome matching the stage it hit."""
        self.logger.error(
            "deploy_runtime_error",
            stage=run.stage.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        cause = f"Unexpected error during {run.stage.value}: {error}"

        if run.stage in (DeployStage.STARTING, DeployStage.HEALTH_CHECKING):
            run.advance(DeployStage.ROLLING_BACK)
            try:
                return await self._roll_back(run, FailureKind.RUNTIME_ERROR, cause, start_time)
            except Exception as e:
                error = e
                cause = f"{cause}; rollback failed: {e}"

        if run.stage == DeployStage.PROMOTING:
            run.advance(DeployStage.PROMOTED)
            return await self._finish(
                run,
                OutcomeKind.PROMOTED,
                f"{run.image} is healthy and serving as {run.target}",
                start_time,
                warnings=[f"Post-promotion cleanup failed: {error}"],
            )

        failure = FailureKind.RUNTIME_ERROR
        if run.stage == DeployStage.ROLLING_BACK:
            failure = FailureKind.RESTORE_FAILURE
            self.logger.critical("rollback_failed", backup_name=run.backup_name, error=str(error))
        if not run.is_terminal:
            run.advance(DeployStage.FAILED_FATAL)
        return await self._finish(run, OutcomeKind.FAILED_FATAL, cause, start_time, failure=failure)

    def _labels(self, run: DeploymentRun, target: DeploymentTarget, options: DeployOptions) -> dict[str, str]:
        prefix = self.config.docker.label_prefix
        return {
            **options.labels,
            f"{prefix}.target": target.name,
            f"{prefix}.image": run.image,
            f"{prefix}.environment": target.environment,
            f"{prefix}.run-id": run.run_id,
        }

    async def _current_instance(self, name: str) -> ContainerInstance | None:
        try:
            return await self.runtime.inspect(name)
        except Exception as e:
            self.logger.warning("final_inspect_failed", error=str(e), error_type=type(e).__name__)
            return None

    async def _finish(
        self,
        run: DeploymentRun,
        kind: OutcomeKind,
        cause: str,
        start_time: float,
        failure: FailureKind | None = None,
        health: HealthOutcome | None = None,
        pruned: list[str] | None = None,
        warnings: list[str] | None = None,
    ) -> DeploymentOutcome:
        outcome = DeploymentOutcome(
            kind=kind,
            run_id=run.run_id,
            target=run.target,
            image=run.image,
            stage_reached=run.stage_reached,
            cause=cause,
            failure=failure,
            instance=await self._current_instance(run.target),
            backup_name=run.backup_name,
            previous_image=run.previous_image,
            health=health,
            pruned_images=pruned or [],
            warnings=warnings or [],
            duration_seconds=time.monotonic() - start_time,
        )

        log = {
            "critical": self.logger.critical,
            "error": self.logger.error,
            "warning": self.logger.warning,
        }.get(outcome.severity, self.logger.info)
        log(
            "deploy_finished",
            outcome=kind.value,
            stage_reached=outcome.stage_reached.value,
            failure=failure.value if failure else None,
            cause=cause,
            warnings=outcome.warnings,
            duration_seconds=round(outcome.duration_seconds, 2),
        )
        return outcome
