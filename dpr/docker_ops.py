from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from .labels import LabelError, parse_labels
from .settings import Settings, settings


class TransientDiscoveryError(Exception):
    """Inspecting one container failed; only that container is dropped from the cycle."""


@dataclass(frozen=True)
class ContainerRecord:
    id: str
    name: str
    ip: str
    port: int
    path: str
    host: str | None = None
    enabled: bool = True
    created: str = ""

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def upstream_name(self) -> str:
        return f"{self.name}_backend"


@dataclass(frozen=True)
class NotEligible:
    """Container is deliberately left out of the route table (not an error)."""

    name: str
    reason: str


def infer_port(exposed_ports: dict[str, Any] | None) -> int | None:
    """Lowest exposed TCP port, e.g. {"8080/tcp": {}} -> 8080."""
    ports: list[int] = []
    for key in exposed_ports or {}:
        num, _, proto = key.partition("/")
        if (proto or "tcp") != "tcp":
            continue
        try:
            ports.append(int(num))
        except ValueError:
            continue
    return min(ports) if ports else None


def extract_metadata(attrs: dict[str, Any], cfg: Settings = settings) -> ContainerRecord | NotEligible:
    """Turn a docker inspect document into a routable record.

    Returns NotEligible when the container is stopped, disabled by label, the
    proxy itself, or has no address on the managed network. Raises LabelError
    when its routing labels are unusable.
    """
    name = (attrs.get("Name") or "").lstrip("/")
    config = attrs.get("Config") or {}
    state = attrs.get("State") or {}

    if not state.get("Running", False):
        return NotEligible(name, "container is not running")
    if cfg.nginx_container and name == cfg.nginx_container:
        return NotEligible(name, "container is the proxy itself")

    networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
    ip = (networks.get(cfg.docker_network) or {}).get("IPAddress") or ""
    if not ip:
        return NotEligible(name, f"not on {cfg.docker_network}")

    labels = parse_labels(config.get("Labels"), cfg.label_prefix)
    if not labels.enable:
        return NotEligible(name, f"{cfg.label_prefix}enable=false")

    port = labels.port or infer_port(config.get("ExposedPorts"))
    if port is None:
        raise LabelError(f"no {cfg.label_prefix}port label and no exposed TCP port")

    return ContainerRecord(
        id=attrs.get("Id", ""),
        name=name,
        ip=ip,
        port=port,
        path=labels.path or f"/{name}/",
        host=labels.host,
        enabled=labels.enable,
        created=attrs.get("Created", ""),
    )


class DockerRuntime:
    """Thin wrapper over the docker SDK with the calls the reconciler needs."""

    def __init__(self, client: docker.DockerClient | None = None, cfg: Settings = settings) -> None:
        self.cfg = cfg
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env(timeout=max(1, int(self.cfg.command_timeout_s)))
        return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except (DockerException, requests.exceptions.RequestException):
            return False

    def ensure_network(self) -> bool:
        """Create the managed network if missing. Returns True if it was created."""
        try:
            self.client.networks.get(self.cfg.docker_network)
            return False
        except NotFound:
            self.client.networks.create(self.cfg.docker_network, driver="bridge")
            return True

    def running_container_ids(self) -> list[str]:
        containers = self.client.containers.list(
            filters={"status": "running", "network": self.cfg.docker_network}, sparse=True
        )
        return sorted(c.id for c in containers)

    def inspect(self, container_id: str) -> dict[str, Any]:
        try:
            return self.client.api.inspect_container(container_id)
        except NotFound as e:
            raise TransientDiscoveryError(f"container {container_id[:12]} disappeared: {e}") from e
        except (APIError, requests.exceptions.RequestException) as e:
            raise TransientDiscoveryError(f"inspect {container_id[:12]} failed: {e}") from e

    def container_networks(self, container_id: str) -> set[str] | None:
        """Networks a container is attached to, or None when it no longer exists."""
        try:
            attrs = self.client.api.inspect_container(container_id)
        except NotFound:
            return None
        networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
        found = set(networks)
        mode = (attrs.get("HostConfig") or {}).get("NetworkMode")
        if mode:
            found.add(mode)
        return found

    def events(self) -> Iterator[dict[str, Any]]:
        """Blocking stream of container start/die events (closable via .close())."""
        return self.client.events(decode=True, filters={"type": "container", "event": ["start", "die"]})

    def exec_run(self, container: str, argv: list[str]) -> tuple[int, str]:
        try:
            cont = self.client.containers.get(container)
        except NotFound as e:
            raise DockerException(f"proxy container '{container}' not found") from e
        code, output = cont.exec_run(argv)
        text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else str(output or "")
        return int(code if code is not None else -1), text
