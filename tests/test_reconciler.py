import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_spec
from dso import db
from dso.certs import CertificateManager, IssuedCertificate
from dso.errors import CyclicDependencyError
from dso.proxy import ProxyConfigWriter
from dso.reconciler import JOB_DONE, JOB_FAILED, Orchestrator
from dso.runtime import MigrationJob, MigrationStep, RouteSpec, StackDescriptor
from dso.shell import CommandResult


def _orch(services, backend, probe, executor, clock, migrations=None, **kw):
    stack = StackDescriptor(project="test", services=tuple(services), migrations=migrations)
    return Orchestrator(stack, backend, probe=probe, executor=executor, clock=clock, poll_interval_s=0, **kw)


def _statuses(orch):
    return {s.name: s.status for s in orch.snapshot()}


def _web_stack():
    return [
        make_spec("db"),
        make_spec("cache"),
        make_spec("web", ["db", "cache"]),
        make_spec("worker", ["db", "cache"]),
    ]


def test_services_start_after_dependencies_are_healthy(backend, probe, executor, clock):
    orch = _orch(_web_stack(), backend, probe, executor, clock)
    orch.tick()
    assert backend.spawned == ["cache", "db"]
    assert _statuses(orch)["web"] == "pending"

    orch.tick()
    assert backend.spawned == ["cache", "db", "web", "worker"]

    orch.tick()
    assert set(_statuses(orch).values()) == {"healthy"}
    assert orch.settled()
    assert orch.exit_code() == 0


def test_dependents_stay_pending_while_dependency_unhealthy(backend, probe, executor, clock):
    probe.healthy["db"] = False
    orch = _orch(_web_stack(), backend, probe, executor, clock)
    for _ in range(5):
        orch.tick()
        clock.advance(1)
    assert "web" not in backend.spawned
    assert "worker" not in backend.spawned
    assert _statuses(orch)["cache"] == "healthy"
    assert _statuses(orch)["db"] == "starting"


def test_transitions_are_persisted_and_logged(backend, probe, executor, clock):
    orch = _orch([make_spec("db")], backend, probe, executor, clock)
    orch.tick()
    orch.tick()
    rows = db.list_service_states()
    assert [(r.name, r.status) for r in rows] == [("db", "healthy")]
    messages = [e["message"] for e in db.latest_events(service_name="db")]
    assert any(m.startswith("starting -> healthy") for m in messages)
    assert any(m.startswith("pending -> starting") for m in messages)


def test_cycle_is_rejected_before_spawning(backend, probe, executor, clock):
    with pytest.raises(CyclicDependencyError):
        _orch([make_spec("a", ["b"]), make_spec("b", ["a"])], backend, probe, executor, clock)
    assert backend.spawned == []


def _migrating_stack():
    services = [
        make_spec("db"),
        make_spec("web", ["db", "migrate"]),
        make_spec("worker", ["db"]),
    ]
    job = MigrationJob(
        name="migrate",
        depends_on=("db",),
        steps=(MigrationStep(1, ("psql", "-f", "1.sql"), "db"), MigrationStep(2, ("psql", "-f", "2.sql"), "db")),
    )
    return services, job


def test_migrations_gate_only_their_dependents(backend, probe, executor, clock):
    services, job = _migrating_stack()
    orch = _orch(services, backend, probe, executor, clock, migrations=job)

    orch.tick()  # db spawned
    orch.tick()  # db healthy, migrations submitted, worker spawned
    assert "worker" in backend.spawned
    assert "web" not in backend.spawned
    assert backend.exec_calls == [("db", ["psql", "-f", "1.sql"]), ("db", ["psql", "-f", "2.sql"])]
    assert [m.version for m in db.list_migrations()] == [1, 2]

    orch.tick()  # job collected, web spawned
    assert orch.job_state == JOB_DONE
    assert "web" in backend.spawned


def test_failed_migration_holds_dependents(backend, probe, executor, clock):
    services, job = _migrating_stack()
    backend.exec_results["db"] = CommandResult(1, "ERROR: relation exists")
    orch = _orch(services, backend, probe, executor, clock, migrations=job)
    for _ in range(4):
        orch.tick()
    assert orch.job_state == JOB_FAILED
    assert orch.job_error.version == 1
    assert "web" not in backend.spawned
    assert _statuses(orch)["web"] == "pending"
    assert _statuses(orch)["worker"] == "healthy"
    assert orch.settled()
    assert orch.exit_code() == 5
    assert db.list_migrations() == []


def test_crashed_service_is_restarted_after_backoff(backend, probe, executor, clock):
    orch = _orch([make_spec("web")], backend, probe, executor, clock)
    orch.tick()
    orch.tick()
    backend.exit("web", 1)
    orch.tick()
    assert _statuses(orch)["web"] == "unhealthy"
    clock.advance(1)
    orch.tick()
    snap = orch.snapshot()[0]
    assert snap.status == "starting"
    assert snap.restart_count == 1
    assert backend.spawned == ["web", "web"]


def test_exhausted_restarts_fail_the_service(backend, probe, executor, clock):
    orch = _orch([make_spec("web", max_restarts=0), make_spec("api", ["web"])], backend, probe, executor, clock)
    orch.tick()
    orch.tick()
    backend.exit("web", 1)
    orch.tick()
    assert _statuses(orch)["web"] == "failed"
    assert orch.settled()
    assert orch.exit_code() == 7
    assert [e.service for e in orch.failures()] == ["web"]


def test_spawn_failure_goes_through_restart_policy(backend, probe, executor, clock):
    backend.fail_spawn.add("web")
    orch = _orch([make_spec("web", policy="never")], backend, probe, executor, clock)
    orch.tick()
    assert _statuses(orch)["web"] == "unhealthy"
    assert "image not found" in orch.snapshot()[0].message
    assert orch.exit_code() == 7


def test_shutdown_stops_everything(backend, probe, executor, clock):
    orch = _orch(_web_stack(), backend, probe, executor, clock)
    for _ in range(3):
        orch.tick()
    orch.shutdown(timeout_s=1)
    assert sorted(backend.stopped) == ["cache", "db", "web", "worker"]
    assert set(_statuses(orch).values()) == {"stopped"}


def test_run_until_settled(backend, probe, executor, clock):
    orch = _orch(_web_stack(), backend, probe, executor, clock)
    assert orch.run(until_settled=True) == 0
    assert set(_statuses(orch).values()) == {"healthy"}


def test_healthy_routed_service_is_published(backend, probe, executor, clock, tmp_path):
    route = RouteSpec(domain="shop.example.com", port=8000)
    writer = ProxyConfigWriter(path=tmp_path / "dso.conf", test_cmd="", reload_cmd="")
    orch = _orch([make_spec("web", route=route)], backend, probe, executor, clock, proxy_writer=writer)
    orch.tick()
    assert writer.current() is None
    orch.tick()
    conf = writer.current()
    assert "upstream dso_web" in conf
    assert "server_name shop.example.com;" in conf


def test_rejected_proxy_config_does_not_stop_the_loop(backend, probe, executor, clock, tmp_path):
    route = RouteSpec(domain="shop.example.com", port=8000)
    writer = ProxyConfigWriter(
        path=tmp_path / "dso.conf",
        test_cmd="nginx -t",
        reload_cmd="",
        runner=lambda cmd, timeout_s=None: CommandResult(1, "host not found in upstream"),
    )
    orch = _orch([make_spec("web", route=route)], backend, probe, executor, clock, proxy_writer=writer)
    orch.tick()
    orch.tick()
    assert _statuses(orch)["web"] == "healthy"
    assert writer.current() is None
    assert any("Proxy configuration not applied" in e["message"] for e in db.latest_events())


def test_clean_exit_counts_as_settled(backend, probe, executor, clock):
    orch = _orch([make_spec("web"), make_spec("seed", health=False)], backend, probe, executor, clock)
    orch.tick()
    orch.tick()
    backend.exit("seed", 0)
    orch.tick()
    assert _statuses(orch) == {"seed": "stopped", "web": "healthy"}
    assert orch.settled()
    assert orch.exit_code() == 0


def test_migration_job_crash_fails_the_job_once(backend, probe, executor, clock, monkeypatch):
    services, job = _migrating_stack()

    def clash(version):
        raise sqlite3.IntegrityError("UNIQUE constraint failed: migrations.version")

    monkeypatch.setattr(db, "append_migration", clash)
    orch = _orch(services, backend, probe, executor, clock, migrations=job)
    for _ in range(4):
        orch.tick()
    assert orch.job_state == JOB_FAILED
    assert isinstance(orch.job_error, sqlite3.IntegrityError)
    assert _statuses(orch)["web"] == "pending"
    assert orch.exit_code() == 5
    crashes = [e for e in db.latest_events(service_name="migrate") if "Migration job crashed" in e["message"]]
    assert len(crashes) == 1


class RenewingIssuer:
    def __init__(self):
        self.count = 0

    def issue(self, domain, renew=False):
        self.count += 1
        now = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(days=61 * (self.count - 1))
        return IssuedCertificate(domain, f"CERT {self.count}".encode(), f"KEY {self.count}".encode(), now, now + timedelta(days=90))


def test_renewed_certificate_reloads_the_proxy(backend, probe, executor, clock, tmp_path):
    calls = []

    def runner(cmd, timeout_s=None):
        calls.append(cmd)
        return CommandResult(0, "")

    writer = ProxyConfigWriter(path=tmp_path / "dso.conf", test_cmd="nginx -t", reload_cmd="nginx -s reload", runner=runner)
    certs = CertificateManager(["shop.example.com"], RenewingIssuer(), cert_dir=str(tmp_path / "certs"), sleep=lambda s: None)
    route = RouteSpec(domain="shop.example.com", port=8000)
    orch = _orch([make_spec("web", route=route)], backend, probe, executor, clock, proxy_writer=writer, certs=certs)
    orch.tick()
    orch.tick()
    calls.clear()

    certs.check()  # issuance
    conf = writer.current()
    assert calls == ["nginx -t", "nginx -s reload"]

    certs.check(force=True)  # renewal: same paths, same text
    assert writer.current() == conf
    assert calls.count("nginx -s reload") == 2
    assert (tmp_path / "certs" / "shop.example.com" / "fullchain.pem").read_bytes() == b"CERT 2"
