"""Tiny service for trying out the orchestrator.

Reads its behaviour from the environment so a descriptor can simulate a slow
start, a flaky health endpoint or a crash on demand.
"""
from __future__ import annotations

import os
import random
import time

from fastapi import FastAPI, HTTPException

NAME = os.getenv("SERVICE_NAME", "example")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1
WARMUP_S = float(os.getenv("WARMUP_S", "0"))

STARTED_AT = time.monotonic()
APP_STATE = {"healthy": True}

app = FastAPI(title=f"Example Service {NAME}")


@app.get("/")
def root() -> dict[str, str]:
    return {"service": NAME}


@app.get("/health")
def health() -> dict[str, str]:
    if time.monotonic() - STARTED_AT < WARMUP_S:
        raise HTTPException(status_code=503, detail="warming up")
    if not APP_STATE["healthy"] or (FAIL_RATE > 0 and random.random() < FAIL_RATE):
        raise HTTPException(status_code=503, detail="unhealthy")
    return {"status": "healthy"}


@app.post("/simulate/unhealthy")
def simulate_unhealthy() -> dict[str, str]:
    APP_STATE["healthy"] = False
    return {"status": "unhealthy"}


@app.post("/simulate/reset")
def simulate_reset() -> dict[str, str]:
    APP_STATE["healthy"] = True
    return {"status": "healthy"}
