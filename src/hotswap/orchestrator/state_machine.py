"""Deployment run state machine.

This module defines the stages of a deployment run and the transitions allowed
between them. A DeploymentRun records every transition so the final outcome can
report how far the run got.

Forward path:
    idle -> pulling -> backing_up -> starting -> health_checking -> promoting -> promoted

Failure paths:
    pulling / backing_up / starting -> failed_fatal
    starting / health_checking -> rolling_back -> rolled_back | failed_fatal

A first deployment has nothing to back up and goes straight from pulling to
starting.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class DeployStage(str, Enum):
    """Stage of a deployment run."""

    IDLE = "idle"
    PULLING = "pulling"
    BACKING_UP = "backing_up"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    PROMOTING = "promoting"
    ROLLING_BACK = "rolling_back"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    FAILED_FATAL = "failed_fatal"


class InvalidTransitionError(Exception):
    """Raised when an invalid stage transition is attempted.

    Attributes:
        current: The current stage.
        target: The attempted target stage.
        run_id: The run that failed to transition.
    """

    def __init__(self, current: DeployStage, target: DeployStage, run_id: str | None = None):
        self.current = current
        self.target = target
        self.run_id = run_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if run_id:
            msg += f" for run {run_id}"
        super().__init__(msg)


VALID_TRANSITIONS: dict[DeployStage, set[DeployStage]] = {
    DeployStage.IDLE: {DeployStage.PULLING, DeployStage.FAILED_FATAL},
    DeployStage.PULLING: {DeployStage.BACKING_UP, DeployStage.STARTING, DeployStage.FAILED_FATAL},
    DeployStage.BACKING_UP: {DeployStage.STARTING, DeployStage.FAILED_FATAL},
    DeployStage.STARTING: {
        DeployStage.HEALTH_CHECKING,
        DeployStage.ROLLING_BACK,
        DeployStage.FAILED_FATAL,
    },
    DeployStage.HEALTH_CHECKING: {DeployStage.PROMOTING, DeployStage.ROLLING_BACK},
    DeployStage.PROMOTING: {DeployStage.PROMOTED},
    DeployStage.ROLLING_BACK: {DeployStage.ROLLED_BACK, DeployStage.FAILED_FATAL},
    DeployStage.PROMOTED: set(),
    DeployStage.ROLLED_BACK: set(),
    DeployStage.FAILED_FATAL: set(),
}

TERMINAL_STAGES = frozenset(stage for stage, targets in VALID_TRANSITIONS.items() if not targets)

# Order of the forward path, used to report how far a run got
_FORWARD_ORDER = [
    DeployStage.IDLE,
    DeployStage.PULLING,
    DeployStage.BACKING_UP,
    DeployStage.STARTING,
    DeployStage.HEALTH_CHECKING,
    DeployStage.PROMOTING,
    DeployStage.PROMOTED,
]


def validate_transition(current: DeployStage, target: DeployStage) -> bool:
    """Check a transition against VALID_TRANSITIONS."""
    return target in VALID_TRANSITIONS.get(current, set())


class StageTransition(BaseModel):
    """One recorded stage change."""

    from_stage: DeployStage
    to_stage: DeployStage
    at: datetime


class DeploymentRun(BaseModel):
    """State of one execution of the orchestrator.

    Attributes:
        run_id: Short unique run identifier
        target: Target name
        image: Image reference being deployed
        stage: Current stage
        backup_name: Backup created during this run
        previous_image: Image of the instance that was replaced
        started_at: Run start time
        history: Every stage transition, in order
    """

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    target: str
    image: str
    stage: DeployStage = DeployStage.IDLE
    backup_name: str | None = None
    previous_image: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    history: list[StageTransition] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def stage_reached(self) -> DeployStage:
        """Furthest forward-path stage this run entered."""
        visited = {self.stage} | {t.to_stage for t in self.history}
        reached = DeployStage.IDLE
        for stage in _FORWARD_ORDER:
            if stage in visited:
                reached = stage
        return reached

    def advance(self, target_stage: DeployStage) -> None:
        """Move the run to a new stage.

        Raises:
            InvalidTransitionError: If VALID_TRANSITIONS does not allow the move
        """
        if not validate_transition(self.stage, target_stage):
            raise InvalidTransitionError(self.stage, target_stage, self.run_id)

        self.history.append(
            StageTransition(
                from_stage=self.stage,
                to_stage=target_stage,
                at=datetime.now(timezone.utc),
            )
        )
        logger.info(
            "deploy_stage_changed",
            run_id=self.run_id,
            from_stage=self.stage.value,
            to_stage=target_stage.value,
        )
        self.stage = target_stage
