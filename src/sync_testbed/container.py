"""Container lifecycle management for sync-testbed.

Drives the ``docker`` CLI through ``asyncio`` subprocesses. No
``docker-py`` dependency: anything that exposes a docker-compatible CLI
(Docker Desktop, Colima, Podman's docker shim, CI runners) works.

Key Concepts:
    ContainerManager: ``create_network()``, ``start_backend()``,
        ``start_service()``, ``stop_container()``, ``cleanup()``.
    NetworkHandle: An isolated bridge network owned by one session.
    ContainerHandle: Immutable snapshot of a started container: id, name,
        host-mapped ports and per-network addresses.

Architecture Decisions:
    - Label-based tracking: every network and container carries
      ``{label_prefix}.run_id`` so ``cleanup()`` can sweep a whole session,
      including containers that failed half-way through startup.
    - One inspect after readiness: ports and addresses are read once and
      frozen into the handle; accessors never shell out.
    - Exponential backoff with cap: health polling starts at 1s, doubles
      to 5s max.
    - No retries: a failed docker command raises ``ProvisioningError``
      carrying docker's stderr verbatim.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, NoReturn

import httpx

from sync_testbed.backends import BackendSpec, ServiceSpec
from sync_testbed.descriptors import url_host
from sync_testbed.errors import ConfigurationError, DockerNotFoundError, ProvisioningError
from sync_testbed.logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one docker CLI invocation."""

    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class NetworkHandle:
    """An isolated virtual network shared by the containers of one session."""

    name: str
    network_id: str
    run_id: str


@dataclass(frozen=True)
class ContainerHandle:
    """Runtime information about a started container."""

    container_id: str
    container_name: str
    image: str
    host: str
    ports: Mapping[int, int] = field(default_factory=dict)
    """Internal port -> host-mapped port."""
    networks: Mapping[str, str] = field(default_factory=dict)
    """Network name -> container IP address on that network."""
    aliases: tuple[str, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    started_at: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "ports", MappingProxyType(dict(self.ports)))
        object.__setattr__(self, "networks", MappingProxyType(dict(self.networks)))
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    def get_mapped_port(self, internal_port: int) -> int:
        """Host port that forwards to ``internal_port``."""
        try:
            return self.ports[internal_port]
        except KeyError:
            raise ConfigurationError(
                f"Port {internal_port} is not exposed by {self.container_name}"
            ).with_context(container=self.container_name) from None

    def get_ip_address(self, network_name: str) -> str:
        """Address of this container within ``network_name``."""
        try:
            return self.networks[network_name]
        except KeyError:
            raise ConfigurationError(
                f"{self.container_name} is not attached to network {network_name!r}"
            ).with_context(container=self.container_name, network=network_name) from None

    def is_attached_to(self, network: NetworkHandle) -> bool:
        return network.name in self.networks

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at if self.started_at else 0.0


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ContainerManager:
    """Manages ephemeral networks and containers via the docker CLI.

    Parameters
    ----------
    host
        Address at which published ports are reachable from the test process.
    network_prefix
        Prefix for network names (e.g., ``sync-testbed``).
    label_prefix
        Label prefix for container identification (e.g., ``sync.testbed``).
    docker_cmd
        Path to the docker binary; discovered on PATH when omitted.
    command_timeout
        Seconds allowed for a single docker command.
    run_timeout
        Seconds allowed for ``docker run``, which may pull the image.

    Example::

        mgr = ContainerManager()
        network = await mgr.create_network(run_id)
        handle = await mgr.start_backend(POSTGRES, run_id, network=network)
        ...
        await mgr.cleanup(run_id)
    """

    def __init__(
        self,
        host: str = "localhost",
        network_prefix: str = "sync-testbed",
        label_prefix: str = "sync.testbed",
        docker_cmd: str | None = None,
        command_timeout: int = 60,
        run_timeout: int = 600,
    ) -> None:
        self.host = host
        self.network_prefix = network_prefix
        self.label_prefix = label_prefix
        self.command_timeout = command_timeout
        self.run_timeout = run_timeout
        self._docker_cmd = docker_cmd or self._find_docker()

    @classmethod
    def from_settings(cls, settings: Any) -> ContainerManager:
        """Build a manager from :class:`~sync_testbed.config.SyncTestbedSettings`."""
        return cls(
            host=settings.resolved_host,
            network_prefix=settings.network_prefix,
            label_prefix=settings.label_prefix,
            docker_cmd=settings.docker_cmd,
            command_timeout=settings.command_timeout_seconds,
            run_timeout=settings.pull_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Docker CLI discovery
    # ------------------------------------------------------------------

    @staticmethod
    def _find_docker() -> str:
        docker = shutil.which("docker")
        if docker is None:
            raise DockerNotFoundError(
                "Docker CLI not found on PATH. Install Docker or set SYNC_TESTBED_DOCKER_CMD."
            )
        return docker

    @staticmethod
    def is_docker_available(docker_cmd: str | None = None) -> bool:
        """Check if Docker is installed and the daemon is running."""
        docker = docker_cmd or shutil.which("docker")
        if docker is None:
            return False
        try:
            result = subprocess.run([docker, "info"], capture_output=True, timeout=10)
            return result.returncode == 0
        except (subprocess.TimeoutExpired, OSError):
            return False

    # ------------------------------------------------------------------
    # Network management
    # ------------------------------------------------------------------

    async def create_network(self, run_id: str) -> NetworkHandle:
        """Create an isolated bridge network with a name unique to this call."""
        network_name = f"{self.network_prefix}-{uuid.uuid4().hex[:12]}"
        result = await self._run_docker(
            [
                "network", "create",
                "--driver", "bridge",
                "--label", f"{self.label_prefix}.run_id={run_id}",
                "--label", f"{self.label_prefix}.type=network",
                network_name,
            ],
        )
        handle = NetworkHandle(
            name=network_name,
            network_id=result.stdout.strip()[:12],
            run_id=run_id,
        )
        logger.info("network.created", network=network_name)
        return handle

    async def remove_network(self, network: NetworkHandle | str) -> None:
        """Remove a network (ignores errors)."""
        name = network.name if isinstance(network, NetworkHandle) else network
        await self._run_docker(["network", "rm", name], check=False)
        logger.debug("network.removed", network=name)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def start_backend(
        self,
        spec: BackendSpec,
        run_id: str,
        network: NetworkHandle | None = None,
    ) -> ContainerHandle:
        """Start a backing-service container and wait for its healthcheck.

        The container is attached to ``network`` (under ``spec.network_alias``
        when set) and its port is published to a random host port.

        Raises
        ------
        ProvisioningError
            If the container fails to start or does not become healthy
            within ``spec.startup_timeout``.
        """
        container_name = self._container_name(spec.name, run_id)
        cmd = self._run_args(container_name, run_id, spec.name, "backend", network)
        if network is not None and spec.network_alias:
            cmd.extend(["--network-alias", spec.network_alias])
        cmd.extend(["--publish", str(spec.port)])
        for key, value in spec.env.items():
            cmd.extend(["--env", f"{key}={value}"])
        if spec.healthcheck_cmd:
            cmd.extend([
                "--health-cmd", " ".join(spec.healthcheck_cmd),
                "--health-interval", "1s",
                "--health-timeout", "5s",
                "--health-retries", "30",
            ])
        cmd.append(spec.image)
        cmd.extend(spec.command)

        started_at = time.time()
        await self._run_docker(cmd, timeout=self.run_timeout, image=spec.image)
        logger.info("container.started", container=container_name, image=spec.image)

        if spec.healthcheck_cmd:
            await self.wait_for_healthy(container_name, spec.startup_timeout)

        return await self.inspect(container_name, started_at=started_at)

    async def start_service(
        self,
        spec: ServiceSpec,
        run_id: str,
        network: NetworkHandle,
        extra_env: Mapping[str, str] | None = None,
    ) -> ContainerHandle:
        """Start a service container on ``network`` and wait until it serves.

        With ``spec.healthcheck_path`` set, readiness is a 200 response from
        that path on the mapped port. The docker port forwarder accepts TCP
        connections before anything listens inside the container, so a bare
        port check is only used for specs without a health path.

        Raises
        ------
        ProvisioningError
            If the container fails to start or does not become ready
            within ``spec.startup_timeout``.
        """
        container_name = self._container_name(spec.name, run_id)
        cmd = self._run_args(container_name, run_id, spec.name, "service", network)
        cmd.extend(["--publish", str(spec.internal_port)])
        for key, value in {**spec.env, **(extra_env or {})}.items():
            cmd.extend(["--env", f"{key}={value}"])
        cmd.append(spec.image)

        started_at = time.time()
        await self._run_docker(cmd, timeout=self.run_timeout, image=spec.image)
        logger.info("container.started", container=container_name, image=spec.image)

        handle = await self.inspect(container_name, started_at=started_at)
        port = handle.get_mapped_port(spec.internal_port)
        if spec.healthcheck_path:
            url = f"http://{url_host(self.host)}:{port}{spec.healthcheck_path}"
            await self.wait_for_http(container_name, url, spec.startup_timeout)
        else:
            await self.wait_for_port(container_name, port, spec.startup_timeout)
        return handle

    async def inspect(self, container_name: str, started_at: float = 0.0) -> ContainerHandle:
        """Snapshot a running container into a :class:`ContainerHandle`."""
        data = await self._inspect_raw(container_name)
        settings = data.get("NetworkSettings") or {}

        ports: dict[int, int] = {}
        for key, bindings in (settings.get("Ports") or {}).items():
            if bindings:
                ports[int(key.split("/")[0])] = int(bindings[0]["HostPort"])

        networks: dict[str, str] = {}
        aliases: list[str] = []
        for name, net in (settings.get("Networks") or {}).items():
            networks[name] = net.get("IPAddress") or ""
            aliases.extend(a for a in net.get("Aliases") or [] if a not in aliases)

        config = data.get("Config") or {}
        return ContainerHandle(
            container_id=(data.get("Id") or "")[:12],
            container_name=container_name,
            image=config.get("Image") or "",
            host=self.host,
            ports=ports,
            networks=networks,
            aliases=tuple(aliases),
            labels=config.get("Labels") or {},
            started_at=started_at,
        )

    async def stop_container(self, handle: ContainerHandle | str, timeout: int = 10) -> None:
        """Stop and remove a container."""
        name = handle.container_name if isinstance(handle, ContainerHandle) else handle
        await self._run_docker(["stop", "--time", str(timeout), name], check=False)
        await self._run_docker(["rm", "--force", "--volumes", name], check=False)
        logger.info("container.stopped", container=name)

    async def collect_logs(self, container_name: str, tail: int | None = None) -> str:
        """Capture container logs as a single string."""
        args = ["logs", "--timestamps"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        result = await self._run_docker([*args, container_name], check=False)
        return result.stdout + result.stderr

    async def get_container_state(self, container_name: str) -> tuple[str, str]:
        """Return ``(status, health)``; ``("not_found", "unknown")`` if absent."""
        try:
            data = await self._inspect_raw(container_name)
        except ProvisioningError:
            return "not_found", "unknown"
        state = data.get("State") or {}
        health = (state.get("Health") or {}).get("Status") or "unknown"
        return state.get("Status") or "unknown", health

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def wait_for_healthy(self, container_name: str, timeout: int) -> None:
        """Poll container health until healthy or timeout.

        Uses exponential backoff: 1s, 2s, 4s, 5s (capped), ...
        """
        deadline = time.monotonic() + timeout
        delay = 1.0
        health = "unknown"

        while time.monotonic() < deadline:
            status, health = await self.get_container_state(container_name)
            if health == "healthy":
                logger.debug("container.healthy", container=container_name)
                return
            if status in ("exited", "dead", "not_found"):
                await self._raise_exited(container_name, status)
            await asyncio.sleep(min(delay, max(deadline - time.monotonic(), 0)))
            delay = min(delay * 2, 5.0)

        raise ProvisioningError(
            f"Container {container_name} did not become healthy within {timeout}s. "
            f"Last health status: {health}"
        ).with_context(container=container_name)

    async def wait_for_port(self, container_name: str, port: int, timeout: int) -> None:
        """Wait until ``host:port`` accepts TCP connections."""
        deadline = time.monotonic() + timeout
        delay = 0.5

        while time.monotonic() < deadline:
            try:
                _, writer = await asyncio.open_connection(self.host, port)
            except OSError:
                status, _ = await self.get_container_state(container_name)
                if status in ("exited", "dead", "not_found"):
                    await self._raise_exited(container_name, status)
                await asyncio.sleep(delay)
                delay = min(delay * 2, 5.0)
                continue
            writer.close()
            await writer.wait_closed()
            logger.debug("container.listening", container=container_name, port=port)
            return

        raise ProvisioningError(
            f"Container {container_name} did not accept connections on "
            f"{self.host}:{port} within {timeout}s"
        ).with_context(container=container_name)

    async def wait_for_http(self, container_name: str, url: str, timeout: int) -> None:
        """Wait until ``GET url`` answers 200.

        Connection resets, protocol errors and non-200 answers (the sync
        service replies 202 while it is still starting) all count as not
        ready yet.
        """
        deadline = time.monotonic() + timeout
        delay = 0.5
        last = "no response"

        async with httpx.AsyncClient(trust_env=False) as client:
            while time.monotonic() < deadline:
                remaining = max(deadline - time.monotonic(), 0.1)
                try:
                    resp = await client.get(url, timeout=min(5.0, remaining))
                except httpx.HTTPError as exc:
                    last = f"{type(exc).__name__}: {exc}"
                else:
                    if resp.status_code == 200:
                        logger.debug("container.serving", container=container_name, url=url)
                        return
                    last = f"HTTP {resp.status_code}"

                status, _ = await self.get_container_state(container_name)
                if status in ("exited", "dead", "not_found"):
                    await self._raise_exited(container_name, status)
                await asyncio.sleep(min(delay, max(deadline - time.monotonic(), 0)))
                delay = min(delay * 2, 5.0)

        raise ProvisioningError(
            f"Container {container_name} did not serve {url} within {timeout}s. "
            f"Last result: {last}"
        ).with_context(container=container_name)

    async def _raise_exited(self, container_name: str, status: str) -> NoReturn:
        logs = await self.collect_logs(container_name, tail=20)
        raise ProvisioningError(
            f"Container {container_name} {status} before becoming ready.\n"
            f"Last logs:\n{logs}"
        ).with_context(container=container_name)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def list_containers(self, run_id: str | None = None) -> list[dict[str, Any]]:
        """List sync-testbed containers, optionally filtered by run_id."""
        label = f"{self.label_prefix}.run_id"
        label = f"{label}={run_id}" if run_id else label
        result = await self._run_docker(
            ["ps", "--all", "--filter", f"label={label}", "--format", "{{json .}}"],
            check=False,
        )
        containers = []
        for line in result.stdout.splitlines():
            if line.strip():
                try:
                    containers.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.debug("docker.ps_unparsable", line=line)
        return containers

    async def cleanup(self, run_id: str | None = None) -> int:
        """Remove all containers and networks of ``run_id`` (or of every run).

        Returns the number of containers removed.
        """
        removed = 0
        for container in await self.list_containers(run_id):
            name = container.get("Names", "")
            if name:
                await self._run_docker(["rm", "--force", "--volumes", name], check=False)
                removed += 1

        label = f"{self.label_prefix}.run_id"
        label = f"{label}={run_id}" if run_id else label
        result = await self._run_docker(
            ["network", "ls", "--filter", f"label={label}", "--format", "{{.Name}}"],
            check=False,
        )
        for network in result.stdout.splitlines():
            if network.strip():
                await self.remove_network(network.strip())

        logger.info("cleanup.complete", run_id=run_id, containers_removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _container_name(self, component: str, run_id: str) -> str:
        return f"{self.network_prefix}-{component}-{run_id[:8]}-{uuid.uuid4().hex[:4]}"

    def _run_args(
        self,
        container_name: str,
        run_id: str,
        component: str,
        kind: str,
        network: NetworkHandle | None,
    ) -> list[str]:
        cmd = [
            "run", "--detach",
            "--name", container_name,
            "--label", f"{self.label_prefix}.run_id={run_id}",
            "--label", f"{self.label_prefix}.component={component}",
            "--label", f"{self.label_prefix}.type={kind}",
        ]
        if network is not None:
            cmd.extend(["--network", network.name])
        return cmd

    async def _inspect_raw(self, container_name: str) -> dict[str, Any]:
        result = await self._run_docker(["inspect", "--type", "container", container_name])
        try:
            return json.loads(result.stdout)[0]
        except (json.JSONDecodeError, IndexError) as exc:
            raise ProvisioningError(
                f"Unexpected docker inspect output for {container_name}",
                cause=exc,
            ).with_context(container=container_name) from exc

    async def _run_docker(
        self,
        args: list[str],
        check: bool = True,
        timeout: int | None = None,
        image: str | None = None,
    ) -> CommandResult:
        """Run a docker CLI command."""
        timeout = timeout or self.command_timeout
        cmd = [self._docker_cmd, *args]
        logger.debug("docker.exec", cmd=" ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProvisioningError(
                f"Failed to execute docker: {exc}", cause=exc
            ).with_context(command=" ".join(args[:2]), image=image) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ProvisioningError(
                f"Docker command timed out after {timeout}s: {' '.join(args)}"
            ).with_context(command=" ".join(args[:2]), image=image) from exc

        result = CommandResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if check and result.returncode != 0:
            raise ProvisioningError(
                f"Docker command failed (exit {result.returncode}): "
                f"{' '.join(args)}\n{result.stderr}"
            ).with_context(command=" ".join(args[:2]), image=image, exit_code=result.returncode)
        return result


__all__ = [
    "CommandResult",
    "ContainerHandle",
    "ContainerManager",
    "NetworkHandle",
]
