from __future__ import annotations

import time
from concurrent.futures import Executor, Future
from typing import Any, Callable

from .db import log_event
from .health import ProbeResult, run_probe
from .runtime import ProcessRef, ServiceSpec, ServiceState, ServiceStatus, ServiceTable
from .settings import settings

ProbeFn = Callable[[ServiceSpec, ProcessRef], ProbeResult]
TransitionFn = Callable[..., Any]
SpawnFn = Callable[[str, float], None]

PROBED = (ServiceStatus.STARTING, ServiceStatus.HEALTHY)


def backoff_delay(restart_count: int, base_s: float, max_backoff_s: float) -> float:
    """Exponential restart delay: base * 2**restarts, capped at max_backoff_s."""
    return min(float(max_backoff_s), float(base_s) * (2 ** max(0, restart_count)))


class HealthMonitor:
    """Probes running services and applies their restart policy.

    All methods are called from the control loop thread; probes themselves run
    on the executor so a slow probe never blocks the loop or other probes.
    """

    def __init__(
        self,
        table: ServiceTable,
        backend: Any,
        executor: Executor,
        transition: TransitionFn,
        spawn: SpawnFn,
        probe: ProbeFn | None = None,
        restart_base_s: float | None = None,
        start_timeout_s: float | None = None,
    ):
        self.table = table
        self.backend = backend
        self.executor = executor
        self.transition = transition
        self.spawn = spawn
        self.probe = probe or self._default_probe
        self.restart_base_s = settings.restart_base_s if restart_base_s is None else restart_base_s
        self.start_timeout_s = settings.start_timeout_s if start_timeout_s is None else start_timeout_s
        self._inflight: dict[str, tuple[str, Future, float]] = {}  # service -> (process id, probe future, deadline)
        self._stopping: dict[str, Future] = {}  # service -> stop future

    def _default_probe(self, spec: ServiceSpec, ref: ProcessRef) -> ProbeResult:
        assert spec.health is not None
        return run_probe(
            spec.health,
            ref.address,
            runner=lambda argv, timeout_s=None: self.backend.exec(ref, argv, timeout_s),
        )

    # --- probes ---

    def submit_probes(self, now: float) -> None:
        for st in self.table.states():
            name = st.spec.name
            if st.status not in PROBED or st.handle is None or st.spec.health is None:
                continue
            if st.probe_in_flight or now < st.next_probe_at:
                continue
            st.probe_in_flight = True
            st.next_probe_at = now + st.spec.health.interval_s
            deadline = now + st.spec.health.effective_timeout_s
            self._inflight[name] = (st.handle.id, self.executor.submit(self.probe, st.spec, st.handle), deadline)

    def collect(self, now: float) -> None:
        for name, (proc_id, fut, deadline) in list(self._inflight.items()):
            timed_out = False
            if not fut.done():
                if now <= deadline:
                    continue
                # A hung probe counts as a failure; its result is ignored if it ever arrives.
                fut.cancel()
                timed_out = True
            del self._inflight[name]
            st = self.table.get(name)
            st.probe_in_flight = False
            # Results for a process that has since been replaced are stale.
            if st.handle is None or st.handle.id != proc_id or st.status not in PROBED:
                continue
            if timed_out:
                ok, msg = False, f"probe timed out after {st.spec.health.effective_timeout_s:g}s"
            else:
                try:
                    ok, msg, _latency = fut.result()
                except Exception as e:
                    ok, msg = False, f"probe error: {type(e).__name__}: {e}"
            self.apply_result(name, ok, msg, now)

    def apply_result(self, name: str, ok: bool, msg: str, now: float) -> None:
        st = self.table.get(name)
        if ok:
            st.consecutive_failures = 0
            if st.status == ServiceStatus.STARTING:
                self.transition(name, ServiceStatus.HEALTHY, msg)
            return

        st.consecutive_failures += 1
        if st.status != ServiceStatus.HEALTHY:
            # Starting services get until their start timeout, see check_start_timeouts().
            st.message = msg
            return
        threshold = st.spec.health.failure_threshold if st.spec.health else settings.fail_threshold
        if st.consecutive_failures >= threshold:
            self.mark_unhealthy(name, f"{st.consecutive_failures} consecutive failed probes ({msg})", now)

    # --- process events ---

    def check_processes(self, now: float) -> None:
        for st in self.table.states():
            if st.status not in PROBED or st.handle is None:
                continue
            name = st.spec.name
            if not self.backend.is_running(st.handle):
                code = self.backend.exit_code(st.handle)
                if code == 0 and st.spec.restart.policy != "always":
                    self._release(st)
                    self.transition(name, ServiceStatus.STOPPED, "Process exited (0)")
                else:
                    self.mark_unhealthy(name, f"Process exited ({code})", now)
                continue
            if st.status == ServiceStatus.STARTING and st.spec.health is None:
                self.transition(name, ServiceStatus.HEALTHY, "Process running")

    def check_start_timeouts(self, now: float) -> None:
        for st in self.table.states():
            if st.status != ServiceStatus.STARTING or st.started_at is None or st.spec.health is None:
                continue
            limit = st.spec.health.start_timeout_s or self.start_timeout_s
            if now - st.started_at >= limit:
                detail = f"; last probe: {st.message}" if st.message else ""
                self.mark_unhealthy(st.spec.name, f"Not healthy within {limit:g}s{detail}", now)

    # --- restart policy ---

    def _release(self, st: ServiceState) -> None:
        """Stop the current process in the background and forget its handle."""
        if st.handle is None:
            return
        ref = st.handle
        st.handle = None
        st.probe_in_flight = False
        self._inflight.pop(st.spec.name, None)
        self._stopping[st.spec.name] = self.executor.submit(self.backend.stop, ref)

    def mark_unhealthy(self, name: str, reason: str, now: float) -> None:
        st = self.table.get(name)
        policy = st.spec.restart
        if policy.policy == "never":
            self.transition(name, ServiceStatus.UNHEALTHY, f"{reason}; restart policy is never", level="WARN")
            return
        self._release(st)
        if st.restart_count >= policy.max_restarts:
            self.transition(name, ServiceStatus.UNHEALTHY, reason, level="WARN")
            self.transition(
                name,
                ServiceStatus.FAILED,
                f"Gave up after {st.restart_count} restarts: {reason}",
                level="ERROR",
            )
            return
        delay = backoff_delay(st.restart_count, self.restart_base_s, policy.max_backoff_s)
        st.restart_at = now + delay
        self.transition(name, ServiceStatus.UNHEALTHY, f"{reason}; restarting in {delay:g}s", level="WARN")

    def restart_due(self, now: float) -> None:
        for st in self.table.states():
            if st.status != ServiceStatus.UNHEALTHY or st.restart_at is None or now < st.restart_at:
                continue
            name = st.spec.name
            stopping = self._stopping.get(name)
            if stopping is not None:
                if not stopping.done():
                    continue
                del self._stopping[name]
                if stopping.exception() is not None:
                    log_event("WARN", f"Stopping old process failed: {stopping.exception()}", service_name=name)
            st.restart_at = None
            st.restart_count += 1
            self.spawn(name, now)

    def wait_stopped(self, timeout_s: float | None = None) -> None:
        for fut in list(self._stopping.values()):
            fut.result(timeout=timeout_s)
        self._stopping.clear()


def wait_ready(
    spec: ServiceSpec,
    ref: ProcessRef | None,
    backend: Any,
    timeout_s: float,
    probe: ProbeFn | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[bool, str]:
    """Poll one already-running service until its probe passes or timeout_s elapses.

    Used by one-shot commands that run outside the control loop.
    """
    if ref is None:
        return False, "not running"
    if spec.health is None:
        return (True, "running") if backend.is_running(ref) else (False, "not running")
    probe = probe or (
        lambda s, r: run_probe(s.health, r.address, runner=lambda argv, timeout_s=None: backend.exec(r, argv, timeout_s))
    )
    deadline = clock() + timeout_s
    msg = "no probe yet"
    while True:
        ok, msg, _latency = probe(spec, ref)
        if ok:
            return True, msg
        if clock() >= deadline:
            return False, msg
        sleep(min(spec.health.interval_s, max(0.0, deadline - clock())) or 0.1)
