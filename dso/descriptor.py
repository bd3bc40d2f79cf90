"""Service descriptor loading.

The descriptor is a YAML file listing the services of one stack, the optional
migration job and the domains that need TLS certificates. It is validated once
at startup and turned into immutable ServiceSpec objects.
"""
from __future__ import annotations

import re
import shlex
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InvalidDescriptorError
from .runtime import (
    HealthSpec,
    MigrationJob,
    MigrationStep,
    RestartSpec,
    RouteSpec,
    ServiceSpec,
    StackDescriptor,
)
from .settings import settings


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-_]{0,62}$")
DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            f"Invalid service name '{name}'. Use lowercase letters/numbers, '-' or '_', starting with a letter (max 63 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes only ever reach the supervised service.
    if not path.startswith("/"):
        raise ValueError("health path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health path must be a simple absolute path (no scheme, no '..').")


def _split_command(v: Any) -> Any:
    if isinstance(v, str):
        return shlex.split(v)
    return v


# Commands may be written as a YAML list or as one shell-style string.
Command = Annotated[list[str], BeforeValidator(_split_command)]


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid")


class HealthModel(_Model):
    type: Literal["http", "tcp", "command"]
    interval_s: float = Field(5.0, gt=0)
    timeout_s: float | None = Field(None, gt=0)
    failure_threshold: int | None = Field(None, ge=1)
    start_timeout_s: float | None = Field(None, gt=0)
    port: int | None = Field(None, ge=1, le=65535)
    path: str = "/health"
    command: Command = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_kind(self) -> "HealthModel":
        if self.type in {"http", "tcp"} and self.port is None:
            raise ValueError(f"{self.type} health check needs a port")
        if self.type == "command" and not self.command:
            raise ValueError("command health check needs a command")
        if self.type == "http":
            validate_health_path(self.path)
        return self


class RestartModel(_Model):
    policy: Literal["never", "on-failure", "always"] = "on-failure"
    max_backoff_s: float | None = Field(None, gt=0)
    max_restarts: int | None = Field(None, ge=0)


class RouteModel(_Model):
    domain: str
    port: int = Field(..., ge=1, le=65535)
    path: str = "/"
    host: str | None = None
    streaming: bool = Field(False, description="Pass Upgrade/Connection headers through (websockets, SSE)")

    @field_validator("domain")
    @classmethod
    def _domain(cls, v: str) -> str:
        v = v.strip().lower()
        if not DOMAIN_RE.match(v):
            raise ValueError(f"invalid domain '{v}'")
        return v

    @field_validator("path")
    @classmethod
    def _path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("route path must start with '/'")
        return v


class ServiceModel(_Model):
    image: str | None = None
    command: Command = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    health: HealthModel | None = None
    restart: RestartModel = Field(default_factory=RestartModel)
    env: dict[str, str] = Field(default_factory=dict)
    ports: list[int] = Field(default_factory=list)
    route: RouteModel | None = None

    @field_validator("restart", mode="before")
    @classmethod
    def _restart_shorthand(cls, v: Any) -> Any:
        # `restart: always` is accepted as shorthand for `restart: {policy: always}`.
        if isinstance(v, str):
            return {"policy": v}
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _env_strings(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def _check_runnable(self) -> "ServiceModel":
        if not self.image and not self.command:
            raise ValueError("a service needs an image or a command")
        return self


class MigrationStepModel(_Model):
    version: int = Field(..., ge=1)
    command: Command
    service: str | None = None


class MigrationsModel(_Model):
    name: str = "migrate"
    depends_on: list[str] = Field(default_factory=list)
    steps: list[MigrationStepModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_versions(self) -> "MigrationsModel":
        versions = [s.version for s in self.steps]
        dupes = sorted({v for v in versions if versions.count(v) > 1})
        if dupes:
            raise ValueError(f"duplicate migration versions: {dupes}")
        return self


class StackModel(_Model):
    project: str = "dso"
    services: dict[str, ServiceModel]
    migrations: MigrationsModel | None = None
    domains: list[str] | None = None


def _to_spec(name: str, m: ServiceModel) -> ServiceSpec:
    health = None
    if m.health:
        h = m.health
        health = HealthSpec(
            kind=h.type,
            interval_s=h.interval_s,
            timeout_s=h.timeout_s,
            failure_threshold=h.failure_threshold or settings.fail_threshold,
            start_timeout_s=h.start_timeout_s,
            port=h.port,
            path=h.path,
            command=tuple(h.command),
        )
    restart = RestartSpec(
        policy=m.restart.policy,
        max_backoff_s=m.restart.max_backoff_s or settings.max_backoff_s,
        max_restarts=m.restart.max_restarts if m.restart.max_restarts is not None else settings.max_restarts,
    )
    route = None
    if m.route:
        route = RouteSpec(
            domain=m.route.domain,
            port=m.route.port,
            path=m.route.path,
            host=m.route.host,
            streaming=m.route.streaming,
        )
    return ServiceSpec(
        name=name,
        image=m.image,
        command=tuple(m.command),
        depends_on=tuple(m.depends_on),
        health=health,
        restart=restart,
        env=tuple(sorted(m.env.items())),
        ports=tuple(m.ports),
        route=route,
    )


def parse_descriptor(data: Any, backend: str | None = None) -> StackDescriptor:
    """Validate raw descriptor data (already parsed from YAML)."""
    if not isinstance(data, dict):
        raise InvalidDescriptorError("descriptor must be a mapping with a 'services' key")
    try:
        model = StackModel.model_validate(data)
    except ValidationError as e:
        raise InvalidDescriptorError(f"descriptor schema error:\n{e}") from e

    try:
        for name in model.services:
            validate_service_name(name)
        if model.migrations:
            validate_service_name(model.migrations.name)
    except ValueError as e:
        raise InvalidDescriptorError(str(e)) from e

    specs = tuple(_to_spec(name, m) for name, m in model.services.items())
    names = {s.name for s in specs}

    seen_routes: dict[tuple[str, str], str] = {}
    seen_upstreams: dict[str, str] = {}
    for s in specs:
        if not s.route:
            continue
        upstream = s.name.replace("-", "_")
        if upstream in seen_upstreams:
            raise InvalidDescriptorError(
                f"routed services '{seen_upstreams[upstream]}' and '{s.name}' differ only in '-' vs '_'"
            )
        seen_upstreams[upstream] = s.name
        key = (s.route.domain, s.route.path)
        if key in seen_routes:
            raise InvalidDescriptorError(
                f"services '{seen_routes[key]}' and '{s.name}' both route {s.route.domain}{s.route.path}"
            )
        seen_routes[key] = s.name

    job = None
    if model.migrations:
        mm = model.migrations
        if mm.name in names:
            raise InvalidDescriptorError(f"migration job name '{mm.name}' clashes with a service")
        for dep in mm.depends_on:
            if dep not in names:
                raise InvalidDescriptorError(f"migration job '{mm.name}' depends on unknown service '{dep}'")
        for step in mm.steps:
            if step.service and step.service not in names:
                raise InvalidDescriptorError(f"migration {step.version} runs in unknown service '{step.service}'")
        job = MigrationJob(
            name=mm.name,
            depends_on=tuple(mm.depends_on),
            steps=tuple(
                MigrationStep(version=s.version, command=tuple(s.command), service=s.service)
                for s in sorted(mm.steps, key=lambda x: x.version)
            ),
        )

    known = names | ({job.name} if job else set())
    for s in specs:
        for dep in s.depends_on:
            if dep not in known:
                raise InvalidDescriptorError(f"service '{s.name}' depends on unknown service '{dep}'")

    if backend == "docker":
        missing = [s.name for s in specs if not s.image]
        if missing:
            raise InvalidDescriptorError(f"docker backend needs an image for: {', '.join(missing)}")

    if model.domains is not None:
        domains = []
        for d in model.domains:
            d = d.strip().lower()
            if not DOMAIN_RE.match(d):
                raise InvalidDescriptorError(f"invalid domain '{d}'")
            domains.append(d)
    else:
        domains = [s.route.domain for s in specs if s.route]

    return StackDescriptor(
        project=model.project,
        services=specs,
        migrations=job,
        domains=tuple(sorted(set(domains))),
    )


def load_descriptor(path: str | Path, backend: str | None = None) -> StackDescriptor:
    """Read and validate a YAML descriptor file."""
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as file:
            data = yaml.safe_load(file) or {}
    except FileNotFoundError as e:
        raise InvalidDescriptorError(f"descriptor not found: {p}") from e
    except yaml.YAMLError as e:
        raise InvalidDescriptorError(f"descriptor is not valid YAML: {e}") from e
    return parse_descriptor(data, backend=backend)
