import dataclasses
import os
import sys
from concurrent.futures import Future

import pytest

# Ensure project root is importable (so `import cli` / `import main` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dso import db  # noqa: E402
from dso.runtime import HealthSpec, ProcessRef, RestartSpec, ServiceSpec  # noqa: E402
from dso.shell import CommandResult  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(tmp_path / "dso.db")))
    db.init_db()
    return tmp_path


class InlineExecutor:
    """Runs submitted work immediately so the control loop is deterministic."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        fut = Future()
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as e:
            fut.set_exception(e)
        return fut

    def shutdown(self, wait=True):
        pass


class FakeBackend:
    """In-memory stand-in for the docker/process backends."""

    def __init__(self):
        self.spawned: list[str] = []
        self.stopped: list[str] = []
        self.exec_calls: list[tuple[str, list[str]]] = []
        self.exec_results: dict[str, CommandResult] = {}
        self.refs: dict[str, ProcessRef] = {}
        self._running: dict[str, bool] = {}
        self._exit: dict[str, int] = {}
        self.fail_spawn: set[str] = set()

    def spawn(self, spec):
        if spec.name in self.fail_spawn:
            raise RuntimeError("image not found")
        self.spawned.append(spec.name)
        ref = ProcessRef(id=f"{spec.name}-{len(self.spawned)}", name=f"test-{spec.name}", address=spec.name)
        self.refs[spec.name] = ref
        self._running[ref.id] = True
        return ref

    def find(self, spec):
        return self.refs.get(spec.name)

    def is_running(self, ref):
        return self._running.get(ref.id, False)

    def exit_code(self, ref):
        return None if self._running.get(ref.id) else self._exit.get(ref.id)

    def exit(self, name, code):
        ref = self.refs[name]
        self._running[ref.id] = False
        self._exit[ref.id] = code

    def stop(self, ref, timeout_s=None):
        self.stopped.append(ref.address)
        self._running[ref.id] = False

    def exec(self, ref, argv, timeout_s=None):
        self.exec_calls.append((ref.address, list(argv)))
        return self.exec_results.get(ref.address, CommandResult(0, "ok"))


class FakeProbe:
    """Probe results keyed by service name; healthy unless told otherwise."""

    def __init__(self):
        self.healthy: dict[str, bool] = {}
        self.calls: list[str] = []

    def __call__(self, spec, ref):
        self.calls.append(spec.name)
        ok = self.healthy.get(spec.name, True)
        return ok, "Healthy" if ok else "HTTP 503", 1.0


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def make_spec(name, depends_on=(), policy="on-failure", max_restarts=5, threshold=3, health=True, route=None, **kw):
    return ServiceSpec(
        name=name,
        image=f"{name}:test",
        depends_on=tuple(depends_on),
        health=HealthSpec(kind="tcp", port=1, interval_s=1.0, failure_threshold=threshold, start_timeout_s=30) if health else None,
        restart=RestartSpec(policy=policy, max_backoff_s=60.0, max_restarts=max_restarts),
        route=route,
        **kw,
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor():
    return InlineExecutor()
