"""Container runtime client for Hotswap.

This module defines the capability set the deployment orchestrator needs from
the local container engine, plus a docker-py implementation of it.

ContainerRuntime is the structural interface (pull, start, stop, remove, rename,
exists, inspect, list, image listing and removal). DockerRuntime implements it by
running blocking docker-py calls in worker threads, with error handling and
structured logging at every call.

Mutating calls never raise for engine-side failures; they return a RuntimeAction
whose ``success`` flag the caller inspects. Stopping or removing a container that
does not exist counts as success (``not_found=True``), so cleanup steps stay
idempotent.

Example usage:
    >>> from hotswap.config import DockerConfig
    >>> from hotswap.pipeline.container import DockerRuntime
    >>>
    >>> runtime = DockerRuntime(DockerConfig())
    >>> action = await runtime.pull("ghcr.io/acme/api:v2")
    >>> if action.success:
    ...     await runtime.start("api", "ghcr.io/acme/api:v2", ports={80: 8080})
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException
from pydantic import BaseModel, Field

from hotswap.config import DockerConfig
from hotswap.logging import get_logger

# Infix separating a target name from the backup suffix
BACKUP_INFIX = "-backup-"
RETAINED_INFIX = "-retained-"

# Suffix of backup and retained names: UTC timestamp plus 6 random hex characters
_SUFFIX_PATTERN = r"\d{14}-[0-9a-f]{6}"

# Registry and daemon timeouts surface from requests, not docker.errors
_ENGINE_ERRORS = (APIError, DockerException, RequestException)

# Docker timestamps carry nanoseconds; datetime accepts at most microseconds
_DOCKER_TIME_PATTERN = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$"
)


class InstanceState(str, Enum):
    """Lifecycle state of a container instance.

    Attributes:
        RUNNING: Container is running
        STOPPED: Container exists but is not running
        BACKUP: Container carries a backup or retained name and is held for rollback

    A container that no longer exists has no state; lookups return None.
    """

    RUNNING = "running"
    STOPPED = "stopped"
    BACKUP = "backup"


class ContainerInstance(BaseModel):
    """A container known to the engine.

    Attributes:
        container_id: Short container ID
        name: Container name
        image: Image reference the container was created from
        image_id: ID of the backing image
        state: Lifecycle state
        created_at: Container creation timestamp
        labels: Labels attached to the container
    """

    container_id: str = Field(description="Container ID")
    name: str = Field(description="Container name")
    image: str = Field(description="Image reference")
    image_id: str | None = Field(default=None, description="Backing image ID")
    state: InstanceState = Field(description="Lifecycle state")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")
    labels: dict[str, str] = Field(default_factory=dict, description="Container labels")

    @property
    def is_running(self) -> bool:
        """Whether the engine reports the container as running."""
        return self.state == InstanceState.RUNNING


class ImageRecord(BaseModel):
    """A locally cached image.

    Attributes:
        image_id: Image ID (sha256 hash)
        tags: Repository tags pointing at the image
        created_at: Image build timestamp
        last_tagged_at: Last time the image was pulled or tagged locally
    """

    image_id: str = Field(description="Image ID")
    tags: list[str] = Field(default_factory=list, description="Repository tags")
    created_at: datetime | None = Field(default=None, description="Build timestamp")
    last_tagged_at: datetime | None = Field(default=None, description="Last pull/tag time")

    @property
    def freshness(self) -> datetime:
        """Timestamp used to order images by recency."""
        return self.last_tagged_at or self.created_at or datetime.min.replace(tzinfo=timezone.utc)


class RuntimeAction(BaseModel):
    """Result of a container engine operation.

    Attributes:
        success: Whether the operation completed successfully
        name: Container name, container ID or image reference acted on
        action: Action performed (pull, start, stop, remove, rename, restart, remove_image)
        error: Error message if the operation failed
        not_found: The object did not exist (success for stop and remove)
        container_id: ID of the created container (start only)
        duration_seconds: Time taken for the operation
    """

    success: bool = Field(description="Operation success flag")
    name: str = Field(description="Object acted on")
    action: str = Field(description="Action performed")
    error: str | None = Field(default=None, description="Error message if failed")
    not_found: bool = Field(default=False, description="Object did not exist")
    container_id: str | None = Field(default=None, description="Created container ID")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Operation duration")


class ContainerRuntime(Protocol):
    """Capabilities the orchestrator needs from a container engine."""

    async def pull(self, image: str) -> RuntimeAction: ...

    async def start(
        self,
        name: str,
        image: str,
        ports: dict[int, int | None] | None = None,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> RuntimeAction: ...

    async def stop(self, name: str) -> RuntimeAction: ...

    async def remove(self, name: str) -> RuntimeAction: ...

    async def rename(self, name: str, new_name: str) -> RuntimeAction: ...

    async def restart(self, name: str) -> RuntimeAction: ...

    async def exists(self, name: str) -> bool: ...

    async def inspect(self, name: str) -> ContainerInstance | None: ...

    async def list_instances(self, name_prefix: str = "") -> list[ContainerInstance]: ...

    async def list_images(self) -> list[ImageRecord]: ...

    async def remove_image(self, image_id: str) -> RuntimeAction: ...

    async def close(self) -> None: ...


def _matches_scheme(name: str, infix: str, target: str | None) -> bool:
    prefix = re.escape(target) if target is not None else r"[a-zA-Z0-9][a-zA-Z0-9_.-]*"
    return re.fullmatch(rf"{prefix}{re.escape(infix)}{_SUFFIX_PATTERN}", name) is not None


def is_backup_name(name: str, target: str | None = None) -> bool:
    """Check whether a container name follows the backup naming scheme.

    The whole name must match ``{target}-backup-{YYYYmmddHHMMSS}-{6 hex}``, so
    backups of a target named ``api-backup`` are never taken for backups of
    ``api``.

    Args:
        name: Container name to check
        target: Restrict the match to backups of this target

    Returns:
        True if the name is a backup name (of ``target`` when given)
    """
    return _matches_scheme(name, BACKUP_INFIX, target)


def is_retained_name(name: str, target: str | None = None) -> bool:
    """Check whether a container name is a backup kept after a promotion."""
    return _matches_scheme(name, RETAINED_INFIX, target)


def parse_docker_time(value: str | None) -> datetime | None:
    """Parse an engine timestamp into an aware datetime.

    Handles nanosecond precision and the zero timestamp the engine uses for
    unset values.

    Args:
        value: Timestamp string such as ``2026-02-05T11:00:00.123456789Z``

    Returns:
        Parsed UTC-aware datetime, or None if missing or unparseable
    """
    if not value or value.startswith("0001-01-01"):
        return None
    match = _DOCKER_TIME_PATTERN.match(value.strip())
    if match is None:
        return None
    frac = (match.group("frac") or "0")[:6].ljust(6, "0")
    tz = match.group("tz") or "Z"
    tz = "+00:00" if tz == "Z" else tz
    return datetime.fromisoformat(f"{match.group('base')}.{frac}{tz}")


class DockerRuntime:
    """Async container runtime backed by docker-py.

    Wraps docker-py container and image operations with async compatibility,
    error handling and structured logging. The Docker client connection is
    deferred until first use.

    Attributes:
        config: Docker configuration from HotswapConfig
        logger: Structured logger instance
    """

    def __init__(self, config: DockerConfig, client: docker.DockerClient | None = None) -> None:
        """Initialize DockerRuntime with configuration.

        Args:
            config: Docker configuration settings
            client: Pre-built Docker client (connects lazily when omitted)
        """
        self.config = config
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = client

        self.logger.debug(
            "docker_runtime_initialized",
            rootless=config.rootless,
            base_url=config.base_url,
        )

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Returns:
            Active Docker client instance

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            try:
                docker_host = self.config.base_url or os.environ.get("DOCKER_HOST")
                if docker_host:
                    self._client = docker.DockerClient(base_url=docker_host)
                elif self.config.rootless and hasattr(os, "getuid"):
                    xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                    self._client = docker.DockerClient(base_url=f"unix://{xdg_runtime}/docker.sock")
                else:
                    self._client = docker.DockerClient.from_env()

                self.logger.info("docker_client_connected", rootless=self.config.rootless)
            except DockerException as e:
                self.logger.error(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

        return self._client

    def _to_instance(self, container: Any) -> ContainerInstance:
        attrs = container.attrs or {}
        name = container.name
        if is_backup_name(name) or is_retained_name(name):
            state = InstanceState.BACKUP
        elif container.status == "running":
            state = InstanceState.RUNNING
        else:
            state = InstanceState.STOPPED

        return ContainerInstance(
            container_id=container.id[:12],
            name=name,
            image=attrs.get("Config", {}).get("Image", "unknown"),
            image_id=attrs.get("Image"),
            state=state,
            created_at=parse_docker_time(attrs.get("Created")),
            labels=attrs.get("Config", {}).get("Labels") or {},
        )

    def _failed(self, name: str, action: str, start_time: float, error: Exception) -> RuntimeAction:
        self.logger.error(
            f"container_{action}_failed",
            name=name,
            error=str(error),
            error_type=type(error).__name__,
        )
        return RuntimeAction(
            success=False,
            name=name,
            action=action,
            error=str(error),
            duration_seconds=time.monotonic() - start_time,
        )

    async def pull(self, image: str) -> RuntimeAction:
        """Pull an image using the ambient registry credentials.

        Args:
            image: Image reference (``repo:tag`` or ``repo@sha256:...``)

        Returns:
            RuntimeAction describing the pull
        """
        start_time = time.monotonic()
        self.logger.info("pulling_image", image=image)

        try:
            client = await asyncio.to_thread(self._get_client)
            await asyncio.to_thread(client.images.pull, image)
        except ImageNotFound as e:
            action = self._failed(image, "pull", start_time, e)
            action.not_found = True
            return action
        except _ENGINE_ERRORS as e:
            return self._failed(image, "pull", start_time, e)

        duration = time.monotonic() - start_time
        self.logger.info("image_pulled", image=image, duration_seconds=round(duration, 2))
        return RuntimeAction(success=True, name=image, action="pull", duration_seconds=duration)

    async def start(
        self,
        name: str,
        image: str,
        ports: dict[int, int | None] | None = None,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> RuntimeAction:
        """Create and start a detached container.

        If the engine creates the container but fails to start it (for example
        because the host port is taken), the created container is left behind
        and the caller is expected to remove it.

        Args:
            name: Container name
            image: Image reference
            ports: Container port -> host port (None publishes on a random port)
            env: Environment variables to inject
            labels: Labels to attach

        Returns:
            RuntimeAction with the created container ID on success
        """
        start_time = time.monotonic()
        port_bindings = {f"{container_port}/tcp": host_port for container_port, host_port in (ports or {}).items()}

        self.logger.info("starting_container", name=name, image=image, ports=port_bindings)

        try:
            client = await asyncio.to_thread(self._get_client)
            container = await asyncio.to_thread(
                client.containers.run,
                image,
                name=name,
                detach=True,
                ports=port_bindings or None,
                environment=env or None,
                labels=labels or None,
                restart_policy={"Name": self.config.restart_policy},
            )
        except _ENGINE_ERRORS as e:
            return self._failed(name, "start", start_time, e)

        duration = time.monotonic() - start_time
        self.logger.info(
            "container_started",
            name=name,
            container_id=container.id[:12],
            duration_seconds=round(duration, 2),
        )
        return RuntimeAction(
            success=True,
            name=name,
            action="start",
            container_id=container.id[:12],
            duration_seconds=duration,
        )

    async def stop(self, name: str) -> RuntimeAction:
        """Stop a container; a missing or already stopped container is success."""
        start_time = time.monotonic()
        self.logger.info("stopping_container", name=name, timeout=self.config.stop_timeout_seconds)

        try:
            client = await asyncio.to_thread(self._get_client)
            container = await asyncio.to_thread(client.containers.get, name)
            await asyncio.to_thread(container.reload)
            if container.status != "running":
                self.logger.info("container_already_stopped", name=name, status=container.status)
                return RuntimeAction(
                    success=True,
                    name=name,
                    action="stop",
                    duration_seconds=time.monotonic() - start_time,
                )
            await asyncio.to_thread(container.stop, timeout=self.config.stop_timeout_seconds)
        except NotFound:
            self.logger.info("container_already_gone", name=name, action="stop")
            return RuntimeAction(
                success=True,
                name=name,
                action="stop",
                not_found=True,
                duration_seconds=time.monotonic() - start_time,
            )
        except _ENGINE_ERRORS as e:
            return self._failed(name, "stop", start_time, e)

        duration = time.monotonic() - start_time
        self.logger.info("container_stopped", name=name, duration_seconds=round(duration, 2))
        return RuntimeAction(success=True, name=name, action="stop", duration_seconds=duration)

    async def remove(self, name: str) -> RuntimeAction:
        """Remove a container; a missing container is success."""
        start_time = time.monotonic()
        self.logger.info("removing_container", name=name)

        try:
            client = await asyncio.to_thread(self._get_client)
            container = await asyncio.to_thread(client.containers.get, name)
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            self.logger.info("container_already_gone", name=name, action="remove")
            return RuntimeAction(
                success=True,
                name=name,
                action="remove",
                not_found=True,
                duration_seconds=time.monotonic() - start_time,
            )
        except _ENGINE_ERRORS as e:
            return self._failed(name, "remove", start_time, e)

        duration = time.monotonic() - start_time
        self.logger.info("container_removed", name=name, duration_seconds=round(duration, 2))
        return RuntimeAction(success=True, name=name, action="remove", duration_seconds=duration)

    async def rename(self, name: str, new_name: str) -> RuntimeAction:
        """Rename a container, keeping its filesystem and configuration."""
        start_time = time.monotonic()
        self.logger.info("renaming_container", name=name, new_name=new_name)

        try:
            client = await asyncio.to_thread(self._get_client)
            container = await asyncio.to_thread(client.containers.get, name)
            await asyncio.to_thread(container.rename, new_name)
        except NotFound as e:
            action = self._failed(name, "rename", start_time, e)
            action.not_found = True
            return action
        except _ENGINE_ERRORS as e:
            return self._failed(name, "rename", start_time, e)

        duration = time.monotonic() - start_time
        self.logger.info("container_renamed", name=name, new_name=new_name)
        return RuntimeAction(success=True, name=new_name, action="rename", duration_seconds=duration)

    async def restart(self, name: str) -> RuntimeAction:
        """Start an existing stopped container."""
        start_time = time.monotonic()
        self.logger.info("restarting_container", name=name)

        try:
            client = await asyncio.to_thread(self._get_client)
            container = await asyncio.to_thread(client.containers.get, name)
            await asyncio.to_thread(container.start)
            await asyncio.to_thread(container.reload)
        except NotFound as e:
            action = self._failed(name, "restart", start_time, e)
            action.not_found = True
            return action
        except _ENGINE_ERRORS as e:
            return self._failed(name, "restart", start_time, e)

        if container.status != "running":
            return self._failed(
                name,
                "restart",
                start_time,
                RuntimeError(f"Container {name} is {container.status} after start"),
            )

        duration = time.monotonic() - start_time
        self.logger.info("container_restarted", name=name, duration_seconds=round(duration, 2))
        return RuntimeAction(
            success=True,
            name=name,
            action="restart",
            container_id=container.id[:12],
            duration_seconds=duration,
        )

    async def exists(self, name: str) -> bool:
        """Check whether a container with this exact name exists."""
        return await self.inspect(name) is not None

    async def inspect(self, name: str) -> ContainerInstance | None:
        """Get a container by name.

        Returns:
            ContainerInstance, or None if no such container exists

        Raises:
            APIError: If the engine rejects the request
        """
        client = await asyncio.to_thread(self._get_client)
        try:
            container = await asyncio.to_thread(client.containers.get, name)
        except NotFound:
            return None
        # get() also resolves ID prefixes; only exact names count
        if container.name != name:
            return None
        return self._to_instance(container)

    async def list_instances(self, name_prefix: str = "") -> list[ContainerInstance]:
        """List all containers (running or not) whose name starts with a prefix.

        Raises:
            APIError: If the engine rejects the request
        """
        client = await asyncio.to_thread(self._get_client)
        filters = {"name": name_prefix} if name_prefix else None
        containers = await asyncio.to_thread(client.containers.list, all=True, filters=filters)

        # The engine's name filter is a substring match
        instances = [
            self._to_instance(container)
            for container in containers
            if container.name.startswith(name_prefix)
        ]
        self.logger.debug("containers_listed", name_prefix=name_prefix, count=len(instances))
        return instances

    async def list_images(self) -> list[ImageRecord]:
        """List locally cached images.

        Raises:
            APIError: If the engine rejects the request
        """
        client = await asyncio.to_thread(self._get_client)
        images = await asyncio.to_thread(client.images.list)

        records = []
        for image in images:
            attrs = image.attrs or {}
            records.append(
                ImageRecord(
                    image_id=image.id,
                    tags=list(image.tags or []),
                    created_at=parse_docker_time(attrs.get("Created")),
                    last_tagged_at=parse_docker_time(attrs.get("Metadata", {}).get("LastTagTime")),
                )
            )
        return records

    async def remove_image(self, image_id: str) -> RuntimeAction:
        """Remove an image; the engine refuses images still used by containers."""
        start_time = time.monotonic()

        try:
            client = await asyncio.to_thread(self._get_client)
            await asyncio.to_thread(client.images.remove, image_id, force=False)
        except ImageNotFound:
            return RuntimeAction(
                success=True,
                name=image_id,
                action="remove_image",
                not_found=True,
                duration_seconds=time.monotonic() - start_time,
            )
        except _ENGINE_ERRORS as e:
            return self._failed(image_id, "remove_image", start_time, e)

        self.logger.info("image_removed", image_id=image_id[:19])
        return RuntimeAction(
            success=True,
            name=image_id,
            action="remove_image",
            duration_seconds=time.monotonic() - start_time,
        )

    async def close(self) -> None:
        """Close the Docker client connection.

        Safe to call multiple times or if the client was never connected.
        """
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
                self.logger.debug("docker_runtime_closed")
            except Exception as e:
                self.logger.warning("docker_runtime_close_error", error=str(e))
            finally:
                self._client = None
