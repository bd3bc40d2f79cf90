"""ASGI entry point: `uvicorn main:app`.

Serves the status API and, unless DSO_SUPERVISE=0, brings up and supervises
the stack described by DSO_DESCRIPTOR for the lifetime of the server.
"""
from __future__ import annotations

from dso import db
from dso.api import create_app
from dso.descriptor import load_descriptor
from dso.reconciler import build_orchestrator
from dso.settings import settings

app = create_app()


@app.on_event("startup")
def startup() -> None:
    if not settings.supervise:
        db.log_event("INFO", "API started without supervision (DSO_SUPERVISE=0)")
        return
    stack = load_descriptor(settings.descriptor_path, backend=settings.backend)
    orch = build_orchestrator(stack, backend_kind=settings.backend)
    app.state.orchestrator = orch
    orch.start()


@app.on_event("shutdown")
def shutdown() -> None:
    orch = app.state.orchestrator
    if orch is not None:
        orch.shutdown()
        app.state.orchestrator = None
