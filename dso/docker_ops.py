from __future__ import annotations

import math
from typing import Sequence

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from .db import log_event
from .runtime import ProcessRef, ServiceSpec
from .settings import settings
from .shell import CommandResult


def _client(timeout_s: float | None = None) -> docker.DockerClient:
    if timeout_s:
        return docker.from_env(timeout=max(1, math.ceil(timeout_s)))
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def container_name(project: str, service: str) -> str:
    return f"{project}-{service}"


class DockerBackend:
    """Runs each service as a container attached to the stack network.

    Containers are labeled so they can be re-discovered after an orchestrator
    restart. The service name is registered as a network alias, which is what
    the proxy upstreams and probes resolve.
    """

    def __init__(self, project: str, network: str | None = None):
        self.project = project
        self.network = network or settings.docker_network

    def ensure_network(self) -> None:
        c = _client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
            log_event("INFO", f"Created docker network '{self.network}'.")

    def spawn(self, spec: ServiceSpec) -> ProcessRef:
        if not spec.image:
            raise ValueError(f"service '{spec.name}' has no image")
        if not docker_available():
            raise RuntimeError("Docker is not available. Start the docker daemon and try again.")
        self.ensure_network()

        name = container_name(self.project, spec.name)
        c = _client()
        # A leftover container from a previous run would block the name.
        try:
            c.containers.get(name).remove(force=True)
        except NotFound:
            pass

        labels = {"dso.project": self.project, "dso.service": spec.name}
        container = c.containers.create(
            spec.image,
            command=list(spec.command) or None,
            name=name,
            environment=dict(spec.env),
            labels=labels,
            ports={f"{p}/tcp": p for p in spec.ports} or None,
            # Supervision is done here; keep Docker's own restart policy off to make behavior explicit.
            restart_policy={"Name": "no"},
        )
        c.networks.get(self.network).connect(container, aliases=[spec.name])
        container.start()

        log_event("INFO", f"Started container {name} from image {spec.image}", service_name=spec.name)
        return ProcessRef(id=container.id, name=name, address=spec.name)

    def find(self, spec: ServiceSpec) -> ProcessRef | None:
        if not docker_available():
            return None
        try:
            cont = _client().containers.get(container_name(self.project, spec.name))
        except NotFound:
            return None
        return ProcessRef(id=cont.id, name=cont.name, address=spec.name)

    def is_running(self, ref: ProcessRef) -> bool:
        try:
            cont = _client().containers.get(ref.id)
            cont.reload()
            return cont.status == "running"
        except NotFound:
            return False

    def exit_code(self, ref: ProcessRef) -> int | None:
        try:
            cont = _client().containers.get(ref.id)
            cont.reload()
        except NotFound:
            return None
        if cont.status == "running":
            return None
        return int(cont.attrs.get("State", {}).get("ExitCode", 0))

    def stop(self, ref: ProcessRef, timeout_s: int | None = None) -> None:
        """Stop gracefully (SIGTERM, then SIGKILL after the stop budget) and remove."""
        try:
            cont = _client().containers.get(ref.id)
        except NotFound:
            return
        try:
            cont.stop(timeout=settings.stop_timeout_s if timeout_s is None else int(timeout_s))
        except APIError as e:
            log_event("WARN", f"Stopping {ref.name} failed: {e}")
        cont.remove(force=True)

    def exec(self, ref: ProcessRef, argv: Sequence[str], timeout_s: float | None = None) -> CommandResult:
        # docker exec has no timeout of its own, so bound the API call instead.
        try:
            cont = _client(timeout_s).containers.get(ref.id)
            res = cont.exec_run(list(argv))
        except NotFound:
            return CommandResult(125, f"container {ref.name} not found")
        except APIError as e:
            return CommandResult(126, f"exec failed: {e}")
        except requests.exceptions.Timeout:
            return CommandResult(124, f"exec in {ref.name} timed out")
        output = res.output.decode("utf-8", "replace") if isinstance(res.output, bytes) else str(res.output or "")
        return CommandResult(int(res.exit_code or 0), output.strip())
