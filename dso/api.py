from __future__ import annotations

from dataclasses import asdict

from fastapi import FastAPI, Query

from . import db
from .api_models import CertificateOut, EventOut, MigrationOut, ServiceStateOut, StatusOut
from .reconciler import Orchestrator


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    """Read-only operator API.

    With a live orchestrator the status comes from its in-memory table;
    otherwise from the last snapshots written to the database.
    """
    app = FastAPI(title="Deployment Stack Orchestrator")
    app.state.orchestrator = orchestrator
    db.init_db()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/status", response_model=StatusOut)
    def status() -> StatusOut:
        orch = app.state.orchestrator
        if orch is not None:
            snaps = orch.snapshot()
            return StatusOut(
                project=orch.stack.project,
                migrations=orch.job_state if orch.job else None,
                services=[ServiceStateOut(**asdict(s)) for s in snaps],
            )
        return StatusOut(services=[ServiceStateOut(**asdict(s)) for s in db.list_service_states()])

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(100, ge=1, le=1000), service: str | None = None) -> list[EventOut]:
        return [EventOut(**e) for e in db.latest_events(limit=limit, service_name=service)]

    @app.get("/migrations", response_model=list[MigrationOut])
    def migrations() -> list[MigrationOut]:
        return [MigrationOut(**asdict(m)) for m in db.list_migrations()]

    @app.get("/certificates", response_model=list[CertificateOut])
    def certificates() -> list[CertificateOut]:
        return [CertificateOut(**asdict(c)) for c in db.list_certificates()]

    return app
