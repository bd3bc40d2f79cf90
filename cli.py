from __future__ import annotations

import argparse
import json
import signal
import sys
from dataclasses import asdict

import requests

from dso import db
from dso.certs import CertbotIssuer, CertificateManager, CertState, load_records
from dso.descriptor import load_descriptor
from dso.errors import (
    EXIT_CERTIFICATE,
    EXIT_OK,
    DSOError,
    InvalidConfigError,
    ServiceUnhealthyError,
)
from dso.migrations import MigrationRunner
from dso.monitor import wait_ready
from dso.process_ops import make_backend
from dso.proxy import ProxyConfigWriter, render_nginx_config
from dso.reconciler import build_orchestrator
from dso.scheduler import flatten, plan_start_order
from dso.settings import settings
from dso.shell import CommandResult


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _load(args):
    return load_descriptor(args.descriptor, backend=args.backend)


def cmd_plan(args) -> int:
    stack = _load(args)
    nodes = list(stack.services) + ([stack.migrations] if stack.migrations else [])
    waves = plan_start_order(nodes)
    _print({"project": stack.project, "waves": waves, "order": flatten(waves)})
    return EXIT_OK


def cmd_status(args) -> int:
    if args.api:
        r = requests.get(f"{args.api.rstrip('/')}/status", timeout=10)
        _print(r.json())
        return EXIT_OK if r.ok else 1
    db.init_db()
    _print({"services": [asdict(s) for s in db.list_service_states()]})
    return EXIT_OK


def cmd_events(args) -> int:
    if args.api:
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        r = requests.get(f"{args.api.rstrip('/')}/events", params=params, timeout=10)
        _print(r.json())
        return EXIT_OK if r.ok else 1
    db.init_db()
    _print(db.latest_events(limit=args.limit, service_name=args.service))
    return EXIT_OK


def cmd_up(args) -> int:
    stack = _load(args)
    db.init_db()
    orch = build_orchestrator(stack, backend_kind=args.backend)

    if args.wait:
        code = orch.run(until_settled=True)
        _print({"services": [asdict(s) for s in orch.snapshot()], "migrations": orch.job_state})
        for err in orch.failures():
            print(err, file=sys.stderr)
        if orch.job_error is not None:
            print(orch.job_error, file=sys.stderr)
        return code

    if args.serve:
        import uvicorn

        from dso.api import create_app

        orch.start()
        try:
            # uvicorn owns SIGINT/SIGTERM and returns once asked to exit.
            uvicorn.run(create_app(orch), host=settings.api_host, port=settings.api_port)
        finally:
            orch.shutdown()
        return orch.exit_code()

    def _stop(signum, frame):
        orch.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    try:
        code = orch.run()
    finally:
        orch.shutdown()
    return code


def cmd_migrate(args) -> int:
    stack = _load(args)
    db.init_db()
    if not stack.migrations:
        _print({"applied": [], "detail": "no migrations declared"})
        return EXIT_OK
    job = stack.migrations
    backend = make_backend(args.backend or settings.backend, stack.project)

    refs = {}
    needed = set(job.depends_on) | {s.service for s in job.steps if s.service}
    for name in sorted(needed):
        refs[name] = backend.find(stack.service(name))

    if not args.no_wait:
        for dep in job.depends_on:
            ok, msg = wait_ready(stack.service(dep), refs.get(dep), backend, timeout_s=args.timeout)
            if not ok:
                raise ServiceUnhealthyError(dep, f"not ready for migrations: {msg}")

    def service_exec(service: str, argv) -> CommandResult:
        ref = refs.get(service)
        if ref is None:
            return CommandResult(1, f"service '{service}' is not running")
        return backend.exec(ref, argv)

    records = MigrationRunner(job, service_exec=service_exec).run()
    _print({"applied": [r.version for r in records]})
    return EXIT_OK


def cmd_renew_certs(args) -> int:
    stack = _load(args)
    db.init_db()
    if not stack.domains:
        _print({"certificates": {}})
        return EXIT_OK

    routed = [s for s in stack.services if s.route]
    writer = ProxyConfigWriter() if routed else None

    def on_rotate(rec) -> None:
        if writer is None:
            return
        try:
            writer.apply(render_nginx_config(routed, load_records(stack.domains)), force_reload=True)
        except InvalidConfigError as e:
            db.log_event("WARN", f"Proxy configuration not applied: {e}")

    mgr = CertificateManager(stack.domains, CertbotIssuer(), on_rotate=on_rotate)
    states = mgr.check(force=args.force, retry_failed=True)
    _print({"certificates": {d: s.value for d, s in states.items()}})
    bad = [d for d, s in states.items() if s in {CertState.FAILED, CertState.UNISSUED}]
    for d in bad:
        print(f"Certificate for '{d}' is not available ({states[d].value})", file=sys.stderr)
    return EXIT_CERTIFICATE if bad else EXIT_OK


def cmd_proxy(args) -> int:
    stack = _load(args)
    db.init_db()
    text = render_nginx_config(stack.services, load_records(stack.domains))
    if args.dry_run:
        sys.stdout.write(text)
        return EXIT_OK
    changed = ProxyConfigWriter().apply(text)
    _print({"path": settings.proxy_config_path, "changed": changed})
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dso", description="Deployment Stack Orchestrator CLI")
    p.add_argument("--descriptor", default=settings.descriptor_path, help="Stack descriptor (YAML)")
    p.add_argument("--backend", choices=["docker", "process"], default=None, help="Process backend (default: DSO_BACKEND)")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_plan = sub.add_parser("plan", help="Print the dependency start order")
    s_plan.set_defaults(func=cmd_plan)

    s_status = sub.add_parser("status", help="Show service states")
    s_status.add_argument("--api", default=None, help="Ask a running orchestrator's API instead of the database")
    s_status.set_defaults(func=cmd_status)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service", default=None)
    s_ev.add_argument("--api", default=None)
    s_ev.set_defaults(func=cmd_events)

    s_up = sub.add_parser("up", help="Start the stack and supervise it")
    mode = s_up.add_mutually_exclusive_group()
    mode.add_argument("--wait", action="store_true", help="Return once every service is healthy or has failed")
    mode.add_argument("--serve", action="store_true", help="Also serve the status API")
    s_up.set_defaults(func=cmd_up)

    s_mig = sub.add_parser("migrate", help="Apply pending migrations")
    s_mig.add_argument("--timeout", type=float, default=settings.ready_timeout_s, help="Seconds to wait for dependencies")
    s_mig.add_argument("--no-wait", action="store_true", help="Do not probe dependencies first")
    s_mig.set_defaults(func=cmd_migrate)

    s_cert = sub.add_parser("renew-certs", help="Issue missing and renew expiring certificates")
    s_cert.add_argument("--force", action="store_true", help="Renew even if not due")
    s_cert.set_defaults(func=cmd_renew_certs)

    s_proxy = sub.add_parser("proxy", help="Render and apply the reverse proxy configuration")
    s_proxy.add_argument("--dry-run", action="store_true", help="Print the configuration instead of applying it")
    s_proxy.set_defaults(func=cmd_proxy)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except DSOError as e:
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
