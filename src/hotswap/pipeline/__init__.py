"""Container engine operations for Hotswap.

This module implements the container runtime client, health probing, backup
snapshots of the running instance, and image garbage collection.
"""

from __future__ import annotations

from hotswap.pipeline.backup import BackupManager, BackupResult, make_backup_name
from hotswap.pipeline.container import (
    ContainerInstance,
    ContainerRuntime,
    DockerRuntime,
    ImageRecord,
    InstanceState,
    RuntimeAction,
)
from hotswap.pipeline.health import HealthOutcome, HealthProbe, ProbeResult, ProbeStatus
from hotswap.pipeline.images import ImageGarbageCollector, PruneReport

__all__ = [
    "BackupManager",
    "BackupResult",
    "ContainerInstance",
    "ContainerRuntime",
    "DockerRuntime",
    "HealthOutcome",
    "HealthProbe",
    "ImageGarbageCollector",
    "ImageRecord",
    "InstanceState",
    "ProbeResult",
    "ProbeStatus",
    "PruneReport",
    "RuntimeAction",
    "make_backup_name",
]
