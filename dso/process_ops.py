from __future__ import annotations

import os
import subprocess
from threading import Lock
from typing import Sequence

from .db import log_event
from .runtime import ProcessRef, ServiceSpec
from .settings import settings
from .shell import CommandResult, run_command


class ProcessBackend:
    """Runs each service as a local child process.

    Useful on a host where the stack is installed natively (systemd style)
    instead of in containers.
    """

    def __init__(self, project: str, cwd: str | None = None):
        self.project = project
        self.cwd = cwd
        self._lock = Lock()
        self._procs: dict[str, subprocess.Popen] = {}

    def spawn(self, spec: ServiceSpec) -> ProcessRef:
        if not spec.command:
            raise ValueError(f"service '{spec.name}' has no command")
        env = dict(os.environ)
        env.update(dict(spec.env))
        p = subprocess.Popen(list(spec.command), cwd=self.cwd, env=env)
        ref = ProcessRef(id=str(p.pid), name=f"{self.project}-{spec.name}[{p.pid}]", address="127.0.0.1")
        with self._lock:
            self._procs[ref.id] = p
        log_event("INFO", f"Started process {ref.name}: {' '.join(spec.command)}", service_name=spec.name)
        return ref

    def find(self, spec: ServiceSpec) -> ProcessRef | None:
        # Child processes do not outlive the orchestrator, so there is nothing to re-discover.
        return None

    def _proc(self, ref: ProcessRef) -> subprocess.Popen | None:
        with self._lock:
            return self._procs.get(ref.id)

    def is_running(self, ref: ProcessRef) -> bool:
        p = self._proc(ref)
        return p is not None and p.poll() is None

    def exit_code(self, ref: ProcessRef) -> int | None:
        p = self._proc(ref)
        if p is None:
            return None
        return p.poll()

    def stop(self, ref: ProcessRef, timeout_s: int | None = None) -> None:
        p = self._proc(ref)
        if p is None:
            return
        budget = settings.stop_timeout_s if timeout_s is None else timeout_s
        if p.poll() is None:
            p.terminate()
            try:
                p.wait(timeout=budget)
            except subprocess.TimeoutExpired:
                log_event("WARN", f"{ref.name} did not stop within {budget}s; killing")
                p.kill()
                p.wait()
        with self._lock:
            self._procs.pop(ref.id, None)

    def exec(self, ref: ProcessRef, argv: Sequence[str], timeout_s: float | None = None) -> CommandResult:
        return run_command(list(argv), timeout_s=timeout_s)


def make_backend(kind: str, project: str):
    if kind == "docker":
        from .docker_ops import DockerBackend

        return DockerBackend(project)
    if kind == "process":
        return ProcessBackend(project)
    raise ValueError(f"unknown backend '{kind}' (expected docker or process)")
