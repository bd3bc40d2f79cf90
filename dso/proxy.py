from __future__ import annotations

from collections import defaultdict
from pathlib import Path
from typing import Callable, Iterable

from . import db
from .certs import CertificateRecord
from .errors import InvalidConfigError
from .files import atomic_write_text
from .runtime import ServiceSpec
from .settings import settings
from .shell import CommandResult, run_command

HEADER = "# Generated by dso. Do not edit by hand; changes are overwritten.\n"

_PROXY_HEADERS = (
    "        proxy_set_header Host $host;\n"
    "        proxy_set_header X-Real-IP $remote_addr;\n"
    "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;\n"
    "        proxy_set_header X-Forwarded-Proto $scheme;\n"
)


def upstream_name(service: str) -> str:
    return "dso_" + service.replace("-", "_")


def _location(spec: ServiceSpec) -> str:
    assert spec.route is not None
    out = f"    location {spec.route.path} {{\n"
    out += f"        proxy_pass http://{upstream_name(spec.name)};\n"
    if spec.route.streaming:
        out += (
            "        proxy_http_version 1.1;\n"
            "        proxy_set_header Upgrade $http_upgrade;\n"
            "        proxy_set_header Connection $connection_upgrade;\n"
        )
    out += _PROXY_HEADERS
    if spec.route.streaming:
        out += "        proxy_buffering off;\n        proxy_read_timeout 3600s;\n"
    out += "    }\n"
    return out


def _acme_location(webroot: str) -> str:
    return f"    location /.well-known/acme-challenge/ {{\n        root {webroot};\n    }}\n"


def render_nginx_config(
    specs: Iterable[ServiceSpec],
    certs: Iterable[CertificateRecord],
    acme_webroot: str | None = None,
) -> str:
    """Render the proxy configuration for every routed service.

    Pure: the output depends only on the arguments, and services and domains
    are emitted in sorted order so identical inputs give identical bytes.
    Domains with a certificate get an HTTPS server and an HTTP->HTTPS redirect;
    domains without one are proxied over plain HTTP until issuance.
    """
    webroot = acme_webroot or settings.acme_webroot
    routed = sorted((s for s in specs if s.route), key=lambda s: s.name)
    cert_by_domain = {c.domain: c for c in certs}

    by_domain: dict[str, list[ServiceSpec]] = defaultdict(list)
    for s in routed:
        by_domain[s.route.domain].append(s)

    out = HEADER
    if any(s.route.streaming for s in routed):
        out += "\nmap $http_upgrade $connection_upgrade {\n    default upgrade;\n    ''      close;\n}\n"

    for s in routed:
        out += f"\nupstream {upstream_name(s.name)} {{\n    server {s.upstream_host}:{s.route.port};\n}}\n"

    for domain in sorted(by_domain):
        locations = "".join(_location(s) for s in sorted(by_domain[domain], key=lambda s: (s.route.path, s.name)))
        cert = cert_by_domain.get(domain)

        out += "\nserver {\n    listen 80;\n    listen [::]:80;\n"
        out += f"    server_name {domain};\n\n"
        out += _acme_location(webroot)
        if cert:
            out += "\n    location / {\n        return 301 https://$host$request_uri;\n    }\n"
        else:
            out += "\n" + locations
        out += "}\n"

        if cert:
            out += "\nserver {\n    listen 443 ssl;\n    listen [::]:443 ssl;\n"
            out += f"    server_name {domain};\n\n"
            out += f"    ssl_certificate {cert.cert_path};\n"
            out += f"    ssl_certificate_key {cert.key_path};\n"
            out += "    ssl_protocols TLSv1.2 TLSv1.3;\n"
            out += "    ssl_session_cache shared:SSL:10m;\n\n"
            out += locations
            out += "}\n"
    return out


class ProxyConfigWriter:
    """Swaps the proxy configuration file and reloads the proxy.

    The new file is written atomically and checked with the proxy's own syntax
    test. If the test or the reload fails the previous file is put back, so the
    running proxy keeps its last good configuration.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        test_cmd: str | None = None,
        reload_cmd: str | None = None,
        runner: Callable[..., CommandResult] = run_command,
    ):
        self.path = Path(path or settings.proxy_config_path)
        self.test_cmd = settings.proxy_test_cmd if test_cmd is None else test_cmd
        self.reload_cmd = settings.proxy_reload_cmd if reload_cmd is None else reload_cmd
        self.runner = runner

    def current(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _restore(self, previous: str | None) -> None:
        if previous is None:
            self.path.unlink(missing_ok=True)
        else:
            atomic_write_text(self.path, previous)

    def apply(self, text: str, force_reload: bool = False) -> bool:
        """Install `text` and reload. Returns False when nothing changed.

        With force_reload the proxy is checked and reloaded even if the text is
        unchanged, which is how files the configuration points at (rotated
        certificates) get picked up.
        Raises InvalidConfigError if the proxy rejects the configuration.
        """
        previous = self.current()
        unchanged = previous == text
        if unchanged and not force_reload:
            return False

        if not unchanged:
            atomic_write_text(self.path, text)

        for label, cmd in (("syntax check", self.test_cmd), ("reload", self.reload_cmd)):
            if not cmd:
                continue
            res = self.runner(cmd, timeout_s=30)
            if not res.ok:
                if not unchanged:
                    self._restore(previous)
                detail = res.output.splitlines()[-1] if res.output else f"exit {res.returncode}"
                db.log_event("WARN", f"Proxy {label} failed, keeping previous configuration: {detail}")
                raise InvalidConfigError(f"proxy {label} failed: {detail}")

        if unchanged:
            db.log_event("INFO", f"Proxy reloaded ({self.path})")
        else:
            db.log_event("INFO", f"Proxy configuration updated ({self.path})")
        return True
