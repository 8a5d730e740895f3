"""Deployment orchestration for Hotswap.

This module implements the deployment state machine, per-target locking,
the deploy/rollback control loop, and recovery of interrupted runs.
"""

from __future__ import annotations

from hotswap.orchestrator.deployer import DeploymentOrchestrator
from hotswap.orchestrator.locks import DeploymentInProgressError, TargetLocks
from hotswap.orchestrator.models import (
    DeploymentOutcome,
    DeploymentTarget,
    DeployOptions,
    FailureKind,
    OutcomeKind,
)
from hotswap.orchestrator.recovery import RecoveryAction, RecoveryManager, RecoveryReport
from hotswap.orchestrator.state_machine import (
    VALID_TRANSITIONS,
    DeploymentRun,
    DeployStage,
    InvalidTransitionError,
    validate_transition,
)

__all__ = [
    "VALID_TRANSITIONS",
    "DeployOptions",
    "DeployStage",
    "DeploymentInProgressError",
    "DeploymentOrchestrator",
    "DeploymentOutcome",
    "DeploymentRun",
    "DeploymentTarget",
    "FailureKind",
    "InvalidTransitionError",
    "OutcomeKind",
    "RecoveryAction",
    "RecoveryManager",
    "RecoveryReport",
    "TargetLocks",
    "validate_transition",
]
