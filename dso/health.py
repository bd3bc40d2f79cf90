from __future__ import annotations

import socket
import time
from typing import Callable, Sequence

import httpx

from .runtime import HealthSpec
from .shell import CommandResult, run_command

HEALTHY_PAYLOADS = {"healthy", "ok", "pass", "up"}

ProbeResult = tuple[bool, str, float | None]


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000.0, 2)


def check_http(url: str, timeout_s: float = 2.0) -> ProbeResult:
    """Call a service health endpoint.

    Any 2xx is healthy. If the body is a JSON object with a "status" field it
    must also say so (e.g. {"status": "healthy"}).
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = _elapsed_ms(start)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return True, "Healthy", latency_ms
        if isinstance(data, dict) and "status" in data:
            if str(data["status"]).lower() in HEALTHY_PAYLOADS:
                return True, "Healthy", latency_ms
            return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        return False, "No response", _elapsed_ms(start)
    except httpx.HTTPError as e:
        return False, f"Error: {type(e).__name__}: {e}", _elapsed_ms(start)


def check_tcp(host: str, port: int, timeout_s: float = 2.0) -> ProbeResult:
    start = time.time()
    try:
        with socket.create_connection((host, int(port)), timeout=timeout_s):
            pass
        return True, "Port open", _elapsed_ms(start)
    except OSError as e:
        return False, f"Connect failed: {e}", _elapsed_ms(start)


def check_command(argv: Sequence[str], timeout_s: float = 2.0, runner: Callable[..., CommandResult] | None = None) -> ProbeResult:
    """Healthy when the command exits 0."""
    start = time.time()
    res = (runner or run_command)(list(argv), timeout_s=timeout_s)
    if res.ok:
        return True, "Exit 0", _elapsed_ms(start)
    detail = res.output.splitlines()[-1] if res.output else ""
    return False, f"Exit {res.returncode}{': ' + detail if detail else ''}", _elapsed_ms(start)


def run_probe(health: HealthSpec, address: str, runner: Callable[..., CommandResult] | None = None) -> ProbeResult:
    """Run one probe of the given kind against a service reachable at `address`.

    `runner` executes command probes; the orchestrator passes one that runs
    inside the service's container.
    """
    timeout = health.effective_timeout_s
    if health.kind == "http":
        return check_http(f"http://{address}:{health.port}{health.path}", timeout_s=timeout)
    if health.kind == "tcp":
        return check_tcp(address, int(health.port or 0), timeout_s=timeout)
    if health.kind == "command":
        return check_command(health.command, timeout_s=timeout, runner=runner)
    return False, f"Unknown probe kind '{health.kind}'", None
