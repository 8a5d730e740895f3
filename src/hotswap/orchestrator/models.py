"""Inputs and outputs of a deployment run."""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hotswap.config import HotswapConfig
from hotswap.orchestrator.state_machine import DeployStage
from hotswap.pipeline.container import BACKUP_INFIX, RETAINED_INFIX, ContainerInstance
from hotswap.pipeline.health import HealthOutcome

_TARGET_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


class OutcomeKind(str, Enum):
    """Terminal result of a deployment run.

    Attributes:
        PROMOTED: New instance is healthy and serving
        ROLLED_BACK: New instance failed; previous instance restored
        FAILED_FATAL: Deployment failed and no known-good instance is confirmed running
            (or the run aborted before touching anything)
    """

    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    FAILED_FATAL = "failed_fatal"


class FailureKind(str, Enum):
    """Why a run did not promote.

    Attributes:
        PULL_FAILURE: Image could not be pulled (registry, network, auth)
        SNAPSHOT_FAILURE: Running instance could not be moved to a backup
        START_FAILURE: Engine refused to run the new container
        HEALTH_CHECK_FAILURE: New instance never became healthy before the deadline
        CANCELLED: Caller cancelled the run or its deadline expired
        RESTORE_FAILURE: Rollback failed; nothing known-good is running
        RUNTIME_ERROR: Unexpected engine error
        PRUNE_FAILURE: Image garbage collection failed (never changes the outcome)
    """

    PULL_FAILURE = "pull_failure"
    SNAPSHOT_FAILURE = "snapshot_failure"
    START_FAILURE = "start_failure"
    HEALTH_CHECK_FAILURE = "health_check_failure"
    CANCELLED = "cancelled"
    RESTORE_FAILURE = "restore_failure"
    RUNTIME_ERROR = "runtime_error"
    PRUNE_FAILURE = "prune_failure"


class DeploymentTarget(BaseModel):
    """The named slot a service instance is deployed into.

    Attributes:
        name: Container name of the active instance
        port: Container port the service listens on
        environment: Environment label (production, staging, ...)
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Target name")
    port: int | None = Field(default=None, ge=1, le=65535, description="Service port")
    environment: str = Field(default="production", description="Environment label")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Target names must be valid container names and not look like backups or retained backups."""
        if not _TARGET_NAME_PATTERN.match(v):
            raise ValueError(f"Invalid target name: {v!r}")
        for infix in (BACKUP_INFIX, RETAINED_INFIX):
            if infix in v:
                raise ValueError(f"Target name must not contain {infix!r}: {v!r}")
        return v


class DeployOptions(BaseModel):
    """Per-run deployment settings.

    Attributes:
        health_timeout_seconds: Deadline for the new instance to become healthy
        health_interval_seconds: Pause between probes
        request_timeout_seconds: Timeout of one probe request
        initial_delay_seconds: Grace period before the first probe
        health_path: HTTP path of the health endpoint
        health_host: Host used to reach the published port
        health_url: Full health URL, overriding path/host/port
        ports: Container port -> host port
        env: Environment variables injected into the new container
        labels: Extra labels for the new container
        keep_backup_on_success: Keep the stopped backup after promotion
        prune_images: Run image garbage collection after promotion
        gc_age_threshold_hours: Minimum age of prunable images
        gc_keep_count: Most recent images always kept
        deadline_seconds: Upper bound on the whole run
    """

    health_timeout_seconds: float = Field(default=60.0, gt=0.0)
    health_interval_seconds: float = Field(default=2.0, gt=0.0)
    request_timeout_seconds: float = Field(default=5.0, gt=0.0)
    initial_delay_seconds: float = Field(default=0.0, ge=0.0)
    health_path: str = Field(default="/health")
    health_host: str = Field(default="localhost")
    health_url: str | None = Field(default=None)
    ports: dict[int, int | None] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    keep_backup_on_success: bool = Field(default=False)
    prune_images: bool = Field(default=True)
    gc_age_threshold_hours: float = Field(default=168.0, ge=0.0)
    gc_keep_count: int = Field(default=5, ge=0)
    deadline_seconds: float | None = Field(default=None, gt=0.0)

    @field_validator("health_path")
    @classmethod
    def validate_health_path(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"

    @classmethod
    def from_config(cls, config: HotswapConfig, **overrides: object) -> DeployOptions:
        """Build options from configuration defaults, then apply overrides."""
        values: dict[str, object] = {
            "health_timeout_seconds": config.health.timeout_seconds,
            "health_interval_seconds": config.health.interval_seconds,
            "request_timeout_seconds": config.health.request_timeout_seconds,
            "initial_delay_seconds": config.health.initial_delay_seconds,
            "health_path": config.health.path,
            "health_host": config.health.host,
            "keep_backup_on_success": config.deploy.keep_backup_on_success,
            "prune_images": config.gc.enabled,
            "gc_age_threshold_hours": config.gc.age_threshold_hours,
            "gc_keep_count": config.gc.keep_count,
            "deadline_seconds": config.deploy.deadline_seconds,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def effective_ports(self, target: DeploymentTarget) -> dict[int, int | None]:
        """Port mapping for the new container; defaults to the target port on the same host port."""
        if self.ports:
            return dict(self.ports)
        if target.port is not None:
            return {target.port: target.port}
        return {}

    def resolve_health_url(self, target: DeploymentTarget) -> str:
        """Health URL of the new instance.

        Raises:
            ValueError: If neither a URL nor a fixed host port is configured
        """
        if self.health_url:
            return self.health_url
        host_ports = [p for p in self.effective_ports(target).values() if p is not None]
        if not host_ports:
            raise ValueError(
                f"Cannot reach {target.name} for health checks: "
                "publish a fixed host port or set health_url"
            )
        return f"http://{self.health_host}:{host_ports[0]}{self.health_path}"


class DeploymentOutcome(BaseModel):
    """What a deployment run ended with.

    Attributes:
        kind: PROMOTED, ROLLED_BACK or FAILED_FATAL
        run_id: Identifier of the run
        target: Target name
        image: Image reference that was deployed
        stage_reached: Furthest stage of the forward path the run reached
        cause: Human readable explanation
        failure: Failure classification (None when promoted cleanly)
        instance: Container named after the target after the run, if any
        backup_name: Backup created by the run
        previous_image: Image the target ran before the run
        health: Health check result, if a health check ran
        pruned_images: Image IDs removed by garbage collection
        warnings: Non-fatal problems (backup cleanup, pruning)
        duration_seconds: Total run time
    """

    kind: OutcomeKind = Field(description="Outcome")
    run_id: str = Field(description="Run ID")
    target: str = Field(description="Target name")
    image: str = Field(description="Deployed image")
    stage_reached: DeployStage = Field(description="Furthest forward stage")
    cause: str = Field(description="Explanation")
    failure: FailureKind | None = Field(default=None, description="Failure kind")
    instance: ContainerInstance | None = Field(default=None, description="Final target instance")
    backup_name: str | None = Field(default=None, description="Backup container name")
    previous_image: str | None = Field(default=None, description="Image before the run")
    health: HealthOutcome | None = Field(default=None, description="Health check result")
    pruned_images: list[str] = Field(default_factory=list, description="Pruned image IDs")
    warnings: list[str] = Field(default_factory=list, description="Non-fatal problems")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Run duration")

    @property
    def exit_code(self) -> int:
        """Process exit code: 0 promoted, 1 rolled back, 2 fatal."""
        return {
            OutcomeKind.PROMOTED: 0,
            OutcomeKind.ROLLED_BACK: 1,
            OutcomeKind.FAILED_FATAL: 2,
        }[self.kind]

    @property
    def severity(self) -> str:
        """Alerting severity of the outcome."""
        if self.kind == OutcomeKind.FAILED_FATAL:
            return "critical"
        if self.kind == OutcomeKind.ROLLED_BACK:
            return "error"
        return "warning" if self.warnings else "info"
