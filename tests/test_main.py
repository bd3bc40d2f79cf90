import dataclasses
import sys
import textwrap
import time

from fastapi.testclient import TestClient


def test_api_only_when_supervision_disabled(monkeypatch):
    import main

    monkeypatch.setattr(main, "settings", dataclasses.replace(main.settings, supervise=False))
    with TestClient(main.app) as client:
        assert client.get("/health").json() == {"status": "healthy"}
        assert client.get("/status").json()["services"] == []
    assert main.app.state.orchestrator is None


def test_supervises_descriptor_for_server_lifetime(tmp_path, monkeypatch):
    import main

    stack = tmp_path / "stack.yaml"
    stack.write_text(
        textwrap.dedent(
            f"""
            project: demo
            services:
              sleeper:
                command: ["{sys.executable}", "-c", "import time; time.sleep(60)"]
            """
        )
    )
    monkeypatch.setattr(
        main,
        "settings",
        dataclasses.replace(main.settings, supervise=True, descriptor_path=str(stack), backend="process"),
    )
    with TestClient(main.app) as client:
        orch = main.app.state.orchestrator
        assert orch is not None
        deadline = time.monotonic() + 10
        status = None
        while time.monotonic() < deadline:
            status = {s["name"]: s["status"] for s in client.get("/status").json()["services"]}
            if status.get("sleeper") == "healthy":
                break
            time.sleep(0.1)
        assert status == {"sleeper": "healthy"}
    assert main.app.state.orchestrator is None
    assert [s.status for s in orch.snapshot()] == ["stopped"]
