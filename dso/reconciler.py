from __future__ import annotations

import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from threading import Event, Lock, Thread
from typing import Any, Callable, Sequence

from . import db
from .alerts import service_alert
from .certs import CertbotIssuer, CertificateManager, CertificateRecord
from .errors import (
    EXIT_MIGRATION,
    EXIT_OK,
    EXIT_SERVICE_FAILED,
    InvalidConfigError,
    MigrationApplyError,
    ServiceUnhealthyError,
)
from .migrations import MigrationRunner
from .monitor import HealthMonitor, ProbeFn
from .process_ops import make_backend
from .proxy import ProxyConfigWriter, render_nginx_config
from .runtime import ServiceSnapshot, ServiceSpec, ServiceStatus, ServiceTable, StackDescriptor
from .scheduler import blocked_by, plan_start_order, ready_to_start
from .settings import settings
from .shell import CommandResult

# Migration job states.
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"


class Orchestrator:
    """Brings up a stack in dependency order and keeps it running.

    One control loop thread owns the ServiceState table. Each tick it collects
    finished probes, reacts to process exits, restarts services whose backoff
    has elapsed, starts Pending services whose dependencies are Healthy, runs
    the migration job once its dependencies are Healthy, and submits the
    probes that are due.
    """

    def __init__(
        self,
        stack: StackDescriptor,
        backend: Any,
        probe: ProbeFn | None = None,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.monotonic,
        proxy_writer: ProxyConfigWriter | None = None,
        certs: CertificateManager | None = None,
        poll_interval_s: float | None = None,
    ):
        self.stack = stack
        self.backend = backend
        nodes: list[Any] = list(stack.services)
        if stack.migrations:
            nodes.append(stack.migrations)
        # Raises CyclicDependencyError before anything is spawned.
        self.waves = plan_start_order(nodes)

        self.table = ServiceTable(list(stack.services))
        self.executor = executor or ThreadPoolExecutor(max_workers=max(2, settings.probe_workers), thread_name_prefix="dso")
        self.clock = clock
        self.poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self.monitor = HealthMonitor(
            self.table,
            backend,
            self.executor,
            transition=self._transition,
            spawn=self._spawn,
            probe=probe,
        )

        self.job = stack.migrations
        self.job_state = JOB_PENDING if self.job else JOB_DONE
        self.job_error: Exception | None = None
        self._job_future: Future | None = None

        self.proxy_writer = proxy_writer
        self.certs = certs
        if certs is not None and certs.on_rotate is None:
            certs.on_rotate = self._on_certificate_rotated
        self._published: set[str] = set()
        self._proxy_lock = Lock()

        self._held_logged: set[str] = set()
        self._stop = Event()
        self._thr: Thread | None = None

    # --- state ---

    def snapshot(self) -> list[ServiceSnapshot]:
        return self.table.snapshot()

    def _persist(self, name: str) -> None:
        for snap in self.table.snapshot():
            if snap.name == name:
                db.save_service_state(snap)
                return

    def _transition(self, name: str, status: ServiceStatus, message: str = "", level: str = "INFO") -> None:
        prev, st = self.table.transition(name, status, message)
        self._persist(name)
        db.log_event(level, f"{prev.value} -> {status.value}: {message}".rstrip(": "), service_name=name)

        if status == ServiceStatus.HEALTHY:
            if st.restart_count and prev == ServiceStatus.STARTING:
                service_alert(name, "recovered", message, st.restart_count)
            if st.spec.route:
                self._published.add(name)
            # Upstreams must resolve before the proxy accepts them, so retry on every healthy transition.
            self.refresh_proxy()
        elif status == ServiceStatus.UNHEALTHY and prev == ServiceStatus.HEALTHY:
            service_alert(name, "down", message, st.restart_count)
        elif status == ServiceStatus.FAILED:
            service_alert(name, "failed", message, st.restart_count)

    def _spawn(self, name: str, now: float) -> None:
        st = self.table.get(name)
        try:
            st.handle = self.backend.spawn(st.spec)
        except Exception as e:
            st.handle = None
            self.monitor.mark_unhealthy(name, f"Spawn failed: {type(e).__name__}: {e}", now)
            return
        st.started_at = now
        st.next_probe_at = now
        st.consecutive_failures = 0
        self._transition(name, ServiceStatus.STARTING, f"Started {st.handle.name}")

    # --- scheduling ---

    def completed_jobs(self) -> set[str]:
        return {self.job.name} if self.job and self.job_state == JOB_DONE else set()

    def _start_ready(self, now: float) -> None:
        statuses = self.table.statuses()
        done = self.completed_jobs()
        for wave in self.waves:
            for name in wave:
                if name not in self.table:
                    continue
                st = self.table.get(name)
                if st.status != ServiceStatus.PENDING:
                    continue
                if ready_to_start(st.spec, statuses, done):
                    self._spawn(name, now)
                elif self._dependency_dead(st.spec, statuses) and name not in self._held_logged:
                    self._held_logged.add(name)
                    waiting = ", ".join(blocked_by(st.spec, statuses, done))
                    db.log_event("WARN", f"Held in pending: dependency unavailable ({waiting})", service_name=name)

    def _dependency_dead(self, spec: ServiceSpec, statuses: dict[str, ServiceStatus]) -> bool:
        for dep in spec.depends_on:
            if self.job and dep == self.job.name:
                if self.job_state == JOB_FAILED:
                    return True
            elif statuses.get(dep) in {ServiceStatus.FAILED, ServiceStatus.STOPPED}:
                return True
        return False

    # --- migrations ---

    def _exec_in_service(self, service: str, argv: Sequence[str]) -> CommandResult:
        st = self.table.get(service)
        if st.handle is None:
            return CommandResult(1, f"service '{service}' is not running")
        return self.backend.exec(st.handle, argv)

    def _run_migrations(self) -> None:
        if not self.job:
            return
        if self.job_state == JOB_PENDING and ready_to_start(self.job, self.table.statuses()):
            self.job_state = JOB_RUNNING
            db.log_event("INFO", "Dependencies healthy; running migrations", service_name=self.job.name)
            runner = MigrationRunner(self.job, service_exec=self._exec_in_service)
            self._job_future = self.executor.submit(runner.run)
        elif self.job_state == JOB_RUNNING and self._job_future is not None and self._job_future.done():
            try:
                self._job_future.result()
            except MigrationApplyError as e:
                self.job_state = JOB_FAILED
                self.job_error = e
                service_alert(self.job.name, "failed", str(e))
                return
            except Exception as e:
                # Not a step failure, e.g. a concurrent `migrate` recorded the same version.
                self.job_state = JOB_FAILED
                self.job_error = e
                db.log_event("ERROR", f"Migration job crashed: {type(e).__name__}: {e}", service_name=self.job.name)
                service_alert(self.job.name, "failed", f"{type(e).__name__}: {e}")
                return
            self.job_state = JOB_DONE
            db.log_event("INFO", "Migrations complete", service_name=self.job.name)

    # --- proxy ---

    def published_specs(self) -> list[ServiceSpec]:
        return [s for s in self.stack.services if s.name in self._published]

    def refresh_proxy(self, force_reload: bool = False) -> bool:
        """Re-render the proxy configuration and apply it if it changed.

        A rejected configuration is logged and the previous one stays active.
        """
        if self.proxy_writer is None:
            return False
        with self._proxy_lock:
            records = self.certs.records() if self.certs else []
            text = render_nginx_config(self.published_specs(), records)
            try:
                return self.proxy_writer.apply(text, force_reload=force_reload)
            except InvalidConfigError as e:
                db.log_event("WARN", f"Proxy configuration not applied: {e}")
                return False

    def _on_certificate_rotated(self, rec: CertificateRecord) -> None:
        # Renewed files keep their paths, so the text may not change; reload anyway.
        self.refresh_proxy(force_reload=True)

    # --- loop ---

    def tick(self) -> None:
        now = self.clock()
        self.monitor.collect(now)
        self.monitor.check_processes(now)
        self.monitor.check_start_timeouts(now)
        self.monitor.restart_due(now)
        self._run_migrations()
        self._start_ready(now)
        self.monitor.submit_probes(now)

    def settled(self) -> bool:
        """True once the stack is up (or cleanly exited), or something has failed for good."""
        if self.failures() or self.job_state == JOB_FAILED:
            return True
        if self.job_state != JOB_DONE:
            return False
        statuses = self.table.statuses()
        for st in self.table.states():
            if st.status in {ServiceStatus.HEALTHY, ServiceStatus.STOPPED}:
                continue
            if st.status == ServiceStatus.PENDING and self._dependency_dead(st.spec, statuses):
                continue
            return False
        return True

    def failures(self) -> list[ServiceUnhealthyError]:
        out = []
        for st in self.table.states():
            if st.status == ServiceStatus.FAILED or (
                st.status == ServiceStatus.UNHEALTHY and st.spec.restart.policy == "never"
            ):
                out.append(ServiceUnhealthyError(st.spec.name, st.message))
        return out

    def exit_code(self) -> int:
        if self.job_state == JOB_FAILED:
            return EXIT_MIGRATION
        if self.failures():
            return EXIT_SERVICE_FAILED
        return EXIT_OK

    def run(self, until_settled: bool = False) -> int:
        """Run the control loop in the calling thread until stop() (or until settled)."""
        db.log_event("INFO", f"Orchestrator started for project '{self.stack.project}'")
        db.clear_service_states()
        for snap in self.table.snapshot():
            db.save_service_state(snap)
        if self.certs is not None:
            self.certs.start()
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Control loop tick failed: {type(e).__name__}: {e}")
            if until_settled and self.settled():
                break
            self._stop.wait(max(0.05, self.poll_interval_s))
        return self.exit_code()

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self.run, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self, timeout_s: int | None = None) -> None:
        """Stop every supervised process (graceful budget, then kill) and halt timers."""
        self._stop.set()
        if self.certs is not None:
            self.certs.stop()
        if self._thr and self._thr.is_alive():
            self._thr.join(timeout=max(1.0, self.poll_interval_s * 2))
        budget = settings.stop_timeout_s if timeout_s is None else timeout_s
        futures = []
        for st in self.table.states():
            if st.handle is not None:
                futures.append((st.spec.name, self.executor.submit(self.backend.stop, st.handle, budget)))
                st.handle = None
        for name, fut in futures:
            try:
                fut.result(timeout=budget + 5)
            except Exception as e:
                db.log_event("WARN", f"Stop failed: {type(e).__name__}: {e}", service_name=name)
        try:
            self.monitor.wait_stopped(timeout_s=budget + 5)
        except Exception as e:
            db.log_event("WARN", f"Background stop failed: {type(e).__name__}: {e}")
        for st in self.table.states():
            if st.status not in {ServiceStatus.FAILED, ServiceStatus.STOPPED}:
                self._transition(st.spec.name, ServiceStatus.STOPPED, "Orchestrator shutdown")
        self.executor.shutdown(wait=False)
        db.log_event("INFO", "Orchestrator stopped")


def build_orchestrator(stack: StackDescriptor, backend_kind: str | None = None, with_certs: bool = True) -> Orchestrator:
    """Wire an orchestrator from settings: process backend, proxy writer, certificate manager."""
    backend = make_backend(backend_kind or settings.backend, stack.project)
    writer = ProxyConfigWriter() if any(s.route for s in stack.services) else None
    certs = CertificateManager(stack.domains, CertbotIssuer()) if with_certs and stack.domains else None
    return Orchestrator(stack, backend, proxy_writer=writer, certs=certs)
