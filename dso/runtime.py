from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ServiceStatus(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class HealthSpec:
    kind: str  # http|tcp|command
    interval_s: float = 5.0
    timeout_s: float | None = None  # defaults to interval_s
    failure_threshold: int = 3
    start_timeout_s: float | None = None
    port: int | None = None
    path: str = "/health"
    command: tuple[str, ...] = ()

    @property
    def effective_timeout_s(self) -> float:
        return self.timeout_s if self.timeout_s is not None else self.interval_s


@dataclass(frozen=True)
class RestartSpec:
    policy: str = "on-failure"
    max_backoff_s: float = 60.0
    max_restarts: int = 5


@dataclass(frozen=True)
class RouteSpec:
    domain: str
    port: int
    path: str = "/"
    host: str | None = None
    streaming: bool = False


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image: str | None = None
    command: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    health: HealthSpec | None = None
    restart: RestartSpec = field(default_factory=RestartSpec)
    env: tuple[tuple[str, str], ...] = ()
    ports: tuple[int, ...] = ()
    route: RouteSpec | None = None

    @property
    def upstream_host(self) -> str:
        if self.route and self.route.host:
            return self.route.host
        return self.name


@dataclass(frozen=True)
class ProcessRef:
    """Handle of one supervised process (container or local child)."""

    id: str
    name: str
    address: str


@dataclass
class ServiceState:
    spec: ServiceSpec
    status: ServiceStatus = ServiceStatus.PENDING
    handle: ProcessRef | None = None
    restart_count: int = 0
    consecutive_failures: int = 0
    message: str = ""
    last_transition: str = field(default_factory=utc_now)
    # Monotonic timestamps used by the control loop.
    started_at: float | None = None
    next_probe_at: float = 0.0
    restart_at: float | None = None
    probe_in_flight: bool = False


@dataclass(frozen=True)
class ServiceSnapshot:
    name: str
    status: str
    restart_count: int
    last_transition: str
    message: str
    process: str | None


class ServiceTable:
    """ServiceState entries keyed by service name.

    The control loop is the only writer; other threads read through snapshot().
    """

    def __init__(self, specs: list[ServiceSpec]) -> None:
        self.lock = Lock()
        self._states: dict[str, ServiceState] = {s.name: ServiceState(spec=s) for s in specs}

    def __contains__(self, name: str) -> bool:
        return name in self._states

    def get(self, name: str) -> ServiceState:
        return self._states[name]

    def states(self) -> list[ServiceState]:
        return list(self._states.values())

    def statuses(self) -> dict[str, ServiceStatus]:
        with self.lock:
            return {name: st.status for name, st in self._states.items()}

    def transition(self, name: str, status: ServiceStatus, message: str = "") -> tuple[ServiceStatus, ServiceState]:
        """Move a service to a new status. Returns (previous_status, state)."""
        with self.lock:
            st = self._states[name]
            prev = st.status
            st.status = status
            st.message = message
            st.last_transition = utc_now()
            return prev, st

    def snapshot(self) -> list[ServiceSnapshot]:
        with self.lock:
            return [
                ServiceSnapshot(
                    name=st.spec.name,
                    status=st.status.value,
                    restart_count=st.restart_count,
                    last_transition=st.last_transition,
                    message=st.message,
                    process=st.handle.name if st.handle else None,
                )
                for st in sorted(self._states.values(), key=lambda x: x.spec.name)
            ]


@dataclass(frozen=True)
class MigrationStep:
    version: int
    command: tuple[str, ...]
    service: str | None = None  # run inside this service's process instead of locally


@dataclass(frozen=True)
class MigrationJob:
    """One-shot job that applies schema migrations once its dependencies are healthy."""

    name: str
    depends_on: tuple[str, ...]
    steps: tuple[MigrationStep, ...]


@dataclass(frozen=True)
class StackDescriptor:
    project: str
    services: tuple[ServiceSpec, ...]
    migrations: MigrationJob | None = None
    domains: tuple[str, ...] = ()

    def service(self, name: str) -> ServiceSpec:
        for s in self.services:
            if s.name == name:
                return s
        raise KeyError(name)
