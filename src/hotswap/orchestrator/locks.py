"""Per-target mutual exclusion for deployment runs.

Only one deployment may touch a target's containers at a time. TargetLocks
keeps one asyncio.Lock per target name; deployments to different targets never
wait on each other.

Lock policies:
- **reject**: a second deploy of a busy target raises DeploymentInProgressError
- **queue**: a second deploy waits until the first one finishes

Locks live in the current process. Separate processes deploying the same target
must be serialized by whoever launches them.

Example:
    >>> locks = TargetLocks(policy="reject")
    >>> async with locks.hold("api"):
    ...     ...  # deploy api
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger(__name__)

LOCK_POLICIES = frozenset({"reject", "queue"})


class DeploymentInProgressError(Exception):
    """Raised when a target is already being deployed under the reject policy.

    Attributes:
        target: Name of the busy target.
    """

    def __init__(self, target: str):
        self.target = target
        super().__init__(f"A deployment of {target} is already in progress")


class TargetLocks:
    """Registry of per-target asyncio locks.

    Attributes:
        policy: reject or queue
    """

    def __init__(self, policy: str = "reject") -> None:
        if policy not in LOCK_POLICIES:
            raise ValueError(f"Invalid lock policy: {policy}. Must be one of {set(LOCK_POLICIES)}")
        self.policy = policy
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, target: str) -> asyncio.Lock:
        lock = self._locks.get(target)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[target] = lock
        return lock

    def is_locked(self, target: str) -> bool:
        """Whether a deployment of target currently holds the lock."""
        lock = self._locks.get(target)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, target: str) -> AsyncIterator[None]:
        """Hold the target's lock for the duration of the block.

        Raises:
            DeploymentInProgressError: Target is busy and the policy is reject
        """
        lock = self._lock_for(target)
        if lock.locked():
            if self.policy == "reject":
                logger.warning("deploy_rejected_target_busy", target=target)
                raise DeploymentInProgressError(target)
            logger.info("deploy_queued", target=target)

        async with lock:
            logger.debug("target_lock_acquired", target=target)
            try:
                yield
            finally:
                logger.debug("target_lock_released", target=target)
