import dataclasses
import json
import textwrap
from datetime import datetime, timedelta, timezone

import pytest

import cli
from dso import db
from dso.certs import IssuedCertificate
from dso.errors import ChallengeFailedError


def _write(tmp_path, body):
    p = tmp_path / "stack.yaml"
    p.write_text(textwrap.dedent(body))
    return str(p)


STACK = """
    project: shop
    services:
      db:
        image: postgres:16
      cache:
        image: redis:7
      web:
        image: shop/web
        depends_on: [db, cache, migrate]
        route: {domain: shop.example.com, port: 8000}
      worker:
        image: shop/web
        depends_on: [db, cache]
    migrations:
      steps:
        - {version: 1, command: "true"}
        - {version: 2, command: "false"}
        - {version: 3, command: "true"}
"""


def test_plan_prints_waves(tmp_path, capsys):
    assert cli.main(["--descriptor", _write(tmp_path, STACK), "plan"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["waves"] == [["cache", "db", "migrate"], ["web", "worker"]]


def test_cycle_exit_code(tmp_path, capsys):
    path = _write(
        tmp_path,
        """
        services:
          a: {image: a, depends_on: [b]}
          b: {image: b, depends_on: [a]}
        """,
    )
    assert cli.main(["--descriptor", path, "plan"]) == 4
    assert "cycle" in capsys.readouterr().err


def test_invalid_descriptor_exit_code(tmp_path):
    assert cli.main(["--descriptor", str(tmp_path / "missing.yaml"), "plan"]) == 3


def test_migrate_stops_at_failing_version(tmp_path, capsys):
    path = _write(tmp_path, STACK)
    assert cli.main(["--descriptor", path, "--backend", "process", "migrate"]) == 5
    assert "Migration 2 failed" in capsys.readouterr().err
    assert [m.version for m in db.list_migrations()] == [1]


def test_status_and_events_read_the_database(capsys):
    db.log_event("INFO", "hello", service_name="db")
    assert cli.main(["status"]) == 0
    assert json.loads(capsys.readouterr().out) == {"services": []}
    assert cli.main(["events", "--service", "db"]) == 0
    assert [e["message"] for e in json.loads(capsys.readouterr().out)] == ["hello"]


def test_status_via_api(monkeypatch, capsys):
    class _Resp:
        ok = True

        def json(self):
            return {"services": [{"name": "db", "status": "healthy"}]}

    seen = {}

    def fake_get(url, timeout=None, **kw):
        seen["url"] = url
        return _Resp()

    monkeypatch.setattr(cli.requests, "get", fake_get)
    assert cli.main(["status", "--api", "http://localhost:8700/"]) == 0
    assert seen["url"] == "http://localhost:8700/status"
    assert json.loads(capsys.readouterr().out)["services"][0]["status"] == "healthy"


def test_proxy_dry_run(tmp_path, capsys):
    assert cli.main(["--descriptor", _write(tmp_path, STACK), "proxy", "--dry-run"]) == 0
    out = capsys.readouterr().out
    assert "upstream dso_web" in out
    assert "server_name shop.example.com;" in out


@pytest.fixture
def cert_settings(tmp_path, monkeypatch):
    import dso.certs
    import dso.proxy

    monkeypatch.setattr(
        dso.certs,
        "settings",
        dataclasses.replace(dso.certs.settings, cert_dir=str(tmp_path / "certs"), challenge_backoff_s=0),
    )
    monkeypatch.setattr(
        dso.proxy,
        "settings",
        dataclasses.replace(
            dso.proxy.settings,
            proxy_config_path=str(tmp_path / "dso.conf"),
            proxy_test_cmd="",
            proxy_reload_cmd="",
        ),
    )
    return tmp_path


def test_renew_certs_installs_and_reloads_proxy(cert_settings, monkeypatch, capsys):
    now = datetime.now(timezone.utc)

    class Issuer:
        def issue(self, domain, renew=False):
            return IssuedCertificate(domain, b"CERT", b"KEY", now, now + timedelta(days=90))

    monkeypatch.setattr(cli, "CertbotIssuer", Issuer)
    assert cli.main(["--descriptor", _write(cert_settings, STACK), "renew-certs"]) == 0
    assert json.loads(capsys.readouterr().out) == {"certificates": {"shop.example.com": "valid"}}
    conf = (cert_settings / "dso.conf").read_text()
    assert "ssl_certificate " in conf
    assert (cert_settings / "certs" / "shop.example.com" / "fullchain.pem").read_bytes() == b"CERT"


def test_renew_certs_failure_exit_code(cert_settings, monkeypatch, capsys):
    class Issuer:
        def issue(self, domain, renew=False):
            raise ChallengeFailedError(domain, "timeout during connect")

    monkeypatch.setattr(cli, "CertbotIssuer", Issuer)
    assert cli.main(["--descriptor", _write(cert_settings, STACK), "renew-certs"]) == 6
    assert json.loads(capsys.readouterr().out) == {"certificates": {"shop.example.com": "failed"}}
