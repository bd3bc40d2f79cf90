from __future__ import annotations

from pydantic import BaseModel, Field


class ServiceStateOut(BaseModel):
    name: str
    status: str = Field(..., description="pending|starting|healthy|unhealthy|stopped|failed")
    restart_count: int
    last_transition: str
    message: str = ""
    process: str | None = None


class StatusOut(BaseModel):
    project: str | None = None
    migrations: str | None = Field(None, description="pending|running|done|failed, when a migration job is declared")
    services: list[ServiceStateOut]


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    service_name: str | None = None
    message: str


class MigrationOut(BaseModel):
    version: int
    applied_at: str


class CertificateOut(BaseModel):
    domain: str
    state: str = Field(..., description="unissued|pending|valid|renewal_due|failed")
    not_before: str | None = None
    not_after: str | None = None
    cert_path: str | None = None
    key_path: str | None = None
    attempts: int = 0
    updated_at: str
