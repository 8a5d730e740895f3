"""Shared fixtures: an in-memory container engine and scripted health endpoints.

FakeRuntime implements the ContainerRuntime protocol against plain dicts. It
mirrors the engine behaviour the orchestrator depends on: unique container
names, host port conflicts (the container is created, then fails to start),
"already gone" stop/remove, and images that cannot be removed while a container
uses them.

The health transport answers requests for a host port according to the image
of the running container bound to that port, so a test scripts health per
image version (``{"svc:v2": 500}``).
"""

from __future__ import annotations

import hashlib
import itertools
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from hotswap.config import HealthConfig, HotswapConfig
from hotswap.orchestrator.deployer import DeploymentOrchestrator
from hotswap.orchestrator.models import DeployOptions
from hotswap.pipeline.container import (
    ContainerInstance,
    ImageRecord,
    InstanceState,
    RuntimeAction,
    is_backup_name,
    is_retained_name,
)
from hotswap.pipeline.health import HealthProbe
from hotswap.pipeline.images import normalize_ref

HEALTH_PORT = 8080


@dataclass
class FakeContainer:
    container_id: str
    name: str
    image: str
    image_id: str
    running: bool
    ports: dict[int, int | None] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def host_ports(self) -> set[int]:
        return {p for p in self.ports.values() if p is not None}


class FakeRuntime:
    """In-memory ContainerRuntime.

    Failure knobs:
        fail_pull: image refs whose pull fails
        fail_start: image refs whose containers are created but never start
        fail_rename: every rename fails
        fail_restart: container names that refuse to start again
        fail_list_images: image listing raises
    """

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.images: dict[str, ImageRecord] = {}
        self.fail_pull: set[str] = set()
        self.fail_start: set[str] = set()
        self.fail_rename = False
        self.fail_restart: set[str] = set()
        self.fail_list_images = False
        self.calls: list[tuple[str, str]] = []
        self.closed = False
        self._ids = itertools.count(1)

    # helpers used by tests

    @staticmethod
    def image_id_for(ref: str) -> str:
        return "sha256:" + hashlib.sha256(normalize_ref(ref).encode()).hexdigest()

    def add_image(self, ref: str, age: timedelta = timedelta(0)) -> str:
        image_id = self.image_id_for(ref)
        tagged_at = datetime.now(timezone.utc) - age
        self.images[image_id] = ImageRecord(
            image_id=image_id,
            tags=[normalize_ref(ref)],
            created_at=tagged_at,
            last_tagged_at=tagged_at,
        )
        return image_id

    def seed(self, name: str, image: str, running: bool = True, host_port: int | None = HEALTH_PORT) -> FakeContainer:
        """Create an existing container as if deployed earlier."""
        if self.image_id_for(image) not in self.images:
            self.add_image(image, age=timedelta(days=1))
        container = FakeContainer(
            container_id=self._new_id(),
            name=name,
            image=image,
            image_id=self.image_id_for(image),
            running=running,
            ports={80: host_port} if host_port else {},
        )
        self.containers[name] = container
        return container

    def names(self) -> set[str]:
        return set(self.containers)

    def backups_of(self, target: str) -> list[str]:
        return [n for n in self.containers if is_backup_name(n, target)]

    def running_image_on(self, host_port: int | None) -> str | None:
        for container in self.containers.values():
            if container.running and host_port in container.host_ports:
                return container.image
        return None

    def _new_id(self) -> str:
        return f"{next(self._ids):012x}"

    def _port_conflict(self, container: FakeContainer) -> int | None:
        for other in self.containers.values():
            if other is container or not other.running:
                continue
            taken = other.host_ports & container.host_ports
            if taken:
                return min(taken)
        return None

    def _instance(self, container: FakeContainer) -> ContainerInstance:
        if is_backup_name(container.name) or is_retained_name(container.name):
            state = InstanceState.BACKUP
        elif container.running:
            state = InstanceState.RUNNING
        else:
            state = InstanceState.STOPPED
        return ContainerInstance(
            container_id=container.container_id,
            name=container.name,
            image=container.image,
            image_id=container.image_id,
            state=state,
            created_at=container.created_at,
            labels=dict(container.labels),
        )

    # ContainerRuntime

    async def pull(self, image: str) -> RuntimeAction:
        self.calls.append(("pull", image))
        if image in self.fail_pull:
            return RuntimeAction(success=False, name=image, action="pull", error="pull access denied")
        self.add_image(image)
        return RuntimeAction(success=True, name=image, action="pull")

    async def start(
        self,
        name: str,
        image: str,
        ports: dict[int, int | None] | None = None,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> RuntimeAction:
        self.calls.append(("start", name))
        if name in self.containers:
            return RuntimeAction(
                success=False, name=name, action="start", error=f'Conflict. The container name "/{name}" is already in use'
            )
        if self.image_id_for(image) not in self.images:
            return RuntimeAction(success=False, name=name, action="start", error=f"No such image: {image}")

        container = FakeContainer(
            container_id=self._new_id(),
            name=name,
            image=image,
            image_id=self.image_id_for(image),
            running=False,
            ports=dict(ports or {}),
            labels=dict(labels or {}),
        )
        self.containers[name] = container

        conflict = self._port_conflict(container)
        if conflict is not None:
            return RuntimeAction(
                success=False, name=name, action="start", error=f"Bind for 0.0.0.0:{conflict} failed: port is already allocated"
            )
        if image in self.fail_start:
            return RuntimeAction(success=False, name=name, action="start", error="exec format error")

        container.running = True
        return RuntimeAction(success=True, name=name, action="start", container_id=container.container_id)

    async def stop(self, name: str) -> RuntimeAction:
        self.calls.append(("stop", name))
        container = self.containers.get(name)
        if container is None:
            return RuntimeAction(success=True, name=name, action="stop", not_found=True)
        container.running = False
        return RuntimeAction(success=True, name=name, action="stop")

    async def remove(self, name: str) -> RuntimeAction:
        self.calls.append(("remove", name))
        if self.containers.pop(name, None) is None:
            return RuntimeAction(success=True, name=name, action="remove", not_found=True)
        return RuntimeAction(success=True, name=name, action="remove")

    async def rename(self, name: str, new_name: str) -> RuntimeAction:
        self.calls.append(("rename", name))
        container = self.containers.get(name)
        if container is None:
            return RuntimeAction(success=False, name=name, action="rename", not_found=True, error=f"No such container: {name}")
        if self.fail_rename or new_name in self.containers:
            return RuntimeAction(success=False, name=name, action="rename", error=f"Conflict renaming {name}")
        container.name = new_name
        self.containers[new_name] = self.containers.pop(name)
        return RuntimeAction(success=True, name=new_name, action="rename")

    async def restart(self, name: str) -> RuntimeAction:
        self.calls.append(("restart", name))
        container = self.containers.get(name)
        if container is None:
            return RuntimeAction(success=False, name=name, action="restart", not_found=True, error=f"No such container: {name}")
        if name in self.fail_restart:
            return RuntimeAction(success=False, name=name, action="restart", error="container exited immediately")
        conflict = self._port_conflict(container)
        if conflict is not None:
            return RuntimeAction(success=False, name=name, action="restart", error=f"port {conflict} is already allocated")
        container.running = True
        return RuntimeAction(success=True, name=name, action="restart", container_id=container.container_id)

    async def exists(self, name: str) -> bool:
        return name in self.containers

    async def inspect(self, name: str) -> ContainerInstance | None:
        container = self.containers.get(name)
        return self._instance(container) if container else None

    async def list_instances(self, name_prefix: str = "") -> list[ContainerInstance]:
        return [self._instance(c) for n, c in self.containers.items() if n.startswith(name_prefix)]

    async def list_images(self) -> list[ImageRecord]:
        if self.fail_list_images:
            raise RuntimeError("engine unavailable")
        return list(self.images.values())

    async def remove_image(self, image_id: str) -> RuntimeAction:
        self.calls.append(("remove_image", image_id))
        if image_id not in self.images:
            return RuntimeAction(success=True, name=image_id, action="remove_image", not_found=True)
        if any(c.image_id == image_id for c in self.containers.values()):
            return RuntimeAction(
                success=False, name=image_id, action="remove_image", error="conflict: image is being used by a container"
            )
        del self.images[image_id]
        return RuntimeAction(success=True, name=image_id, action="remove_image")

    async def close(self) -> None:
        self.closed = True


def health_transport(runtime: FakeRuntime, responses: dict[str, int | str | list[int | str]]) -> httpx.MockTransport:
    """Health endpoint served by whatever image runs on the requested port.

    ``responses`` maps an image ref to a status code, or to ``"refuse"`` for a
    connection error. A list is answered in order, its last entry repeating.
    Images not listed answer 200; no running container refuses the connection.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        image = runtime.running_image_on(request.url.port)
        behaviour = responses.get(image, 200) if image else "refuse"
        if isinstance(behaviour, list):
            behaviour = behaviour.pop(0) if len(behaviour) > 1 else behaviour[0]
        if behaviour == "refuse":
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(int(behaviour), json={"image": image})

    return httpx.MockTransport(handler)


@pytest.fixture
def runtime() -> FakeRuntime:
    """Empty in-memory engine."""
    return FakeRuntime()


@pytest.fixture
def health_responses() -> dict[str, int | str | list[int | str]]:
    """Per-image health behaviour; tests mutate it before deploying."""
    return {}


@pytest.fixture
def config() -> HotswapConfig:
    """Configuration with fast health polling."""
    return HotswapConfig(
        health=HealthConfig(
            timeout_seconds=0.5,
            interval_seconds=0.01,
            request_timeout_seconds=0.1,
        )
    )


@pytest.fixture
def options(config: HotswapConfig) -> DeployOptions:
    """Deploy options publishing container port 80 on the health port."""
    return DeployOptions.from_config(config, ports={80: HEALTH_PORT})


@pytest.fixture
def make_prober(runtime: FakeRuntime, health_responses: dict[str, int | str]) -> Callable[[HealthConfig], HealthProbe]:
    """Factory for HealthProbes wired to the fake engine's health endpoints."""

    def _make(health: HealthConfig) -> HealthProbe:
        return HealthProbe(health, transport=health_transport(runtime, health_responses))

    return _make


@pytest_asyncio.fixture
async def prober(make_prober: Callable[[HealthConfig], HealthProbe], config: HotswapConfig) -> AsyncGenerator[HealthProbe, None]:
    """HealthProbe for the fast-polling test configuration."""
    probe = make_prober(config.health)
    yield probe
    await probe.close()


@pytest.fixture
def make_orchestrator(
    runtime: FakeRuntime, prober: HealthProbe, config: HotswapConfig
) -> Callable[..., DeploymentOrchestrator]:
    """Factory building orchestrators over the shared fake engine."""

    def _make(**kwargs) -> DeploymentOrchestrator:
        kwargs.setdefault("config", config)
        return DeploymentOrchestrator(runtime, prober, **kwargs)

    return _make
