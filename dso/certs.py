"""TLS certificate lifecycle.

Each domain moves through unissued -> pending -> valid -> renewal_due -> valid.
Initial issuance is retried with backoff a bounded number of times and then
marked failed (fatal for that domain only). Renewal failures are logged and
retried on the next timer tick while the current certificate keeps serving.
"""
from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from threading import Event, Thread
from typing import Callable, Protocol

from . import db
from .alerts import certificate_alert
from .errors import ChallengeFailedError
from .files import atomic_symlink, atomic_write_bytes
from .settings import settings
from .shell import run_command, split


class CertState(str, Enum):
    UNISSUED = "unissued"
    PENDING = "pending"
    VALID = "valid"
    RENEWAL_DUE = "renewal_due"
    FAILED = "failed"


@dataclass(frozen=True)
class CertificateRecord:
    domain: str
    not_before: datetime
    not_after: datetime
    cert_path: str
    key_path: str

    def renewal_due(self, now: datetime, threshold: timedelta) -> bool:
        return now >= self.not_after - threshold


@dataclass(frozen=True)
class IssuedCertificate:
    domain: str
    fullchain_pem: bytes
    privkey_pem: bytes
    not_before: datetime
    not_after: datetime


class Issuer(Protocol):
    def issue(self, domain: str, renew: bool = False) -> IssuedCertificate: ...


def _parse_openssl_date(value: str) -> datetime:
    # e.g. "Jan  1 00:00:00 2027 GMT"
    return datetime.strptime(value.strip(), "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)


def read_validity(cert_path: str | Path) -> tuple[datetime, datetime]:
    """Return (not_before, not_after) of a PEM certificate using `openssl x509`."""
    res = run_command(["openssl", "x509", "-noout", "-startdate", "-enddate", "-in", str(cert_path)], timeout_s=10)
    if not res.ok:
        raise ValueError(f"cannot read certificate {cert_path}: {res.output}")
    fields = dict(line.split("=", 1) for line in res.output.splitlines() if "=" in line)
    try:
        return _parse_openssl_date(fields["notBefore"]), _parse_openssl_date(fields["notAfter"])
    except (KeyError, ValueError) as e:
        raise ValueError(f"unexpected openssl output for {cert_path}: {res.output!r}") from e


class CertbotIssuer:
    """Obtains certificates with the certbot CLI using the webroot challenge.

    The reverse proxy serves `/.well-known/acme-challenge/` from the same
    webroot, so no downtime is needed for issuance or renewal.
    """

    def __init__(
        self,
        webroot: str | None = None,
        email: str | None = None,
        staging: bool | None = None,
        certbot_cmd: str | None = None,
        letsencrypt_dir: str | None = None,
        timeout_s: float = 300,
    ):
        self.webroot = webroot or settings.acme_webroot
        self.email = email if email is not None else settings.acme_email
        self.staging = settings.acme_staging if staging is None else staging
        self.certbot_cmd = certbot_cmd or settings.certbot_cmd
        self.letsencrypt_dir = letsencrypt_dir or settings.letsencrypt_dir
        self.timeout_s = timeout_s

    def command(self, domain: str, renew: bool = False) -> list[str]:
        argv = split(self.certbot_cmd) + [
            "certonly",
            "--webroot",
            "-w",
            self.webroot,
            "-d",
            domain,
            "--cert-name",
            domain,
            "--non-interactive",
            "--agree-tos",
        ]
        argv += ["--email", self.email] if self.email else ["--register-unsafely-without-email"]
        if self.staging:
            argv.append("--staging")
        if renew:
            argv.append("--force-renewal")
        return argv

    def issue(self, domain: str, renew: bool = False) -> IssuedCertificate:
        res = run_command(self.command(domain, renew=renew), timeout_s=self.timeout_s)
        if not res.ok:
            detail = res.output.splitlines()[-1] if res.output else f"exit {res.returncode}"
            raise ChallengeFailedError(domain, detail)
        live = Path(self.letsencrypt_dir) / "live" / domain
        fullchain = live / "fullchain.pem"
        privkey = live / "privkey.pem"
        try:
            not_before, not_after = read_validity(fullchain)
            return IssuedCertificate(
                domain=domain,
                fullchain_pem=fullchain.read_bytes(),
                privkey_pem=privkey.read_bytes(),
                not_before=not_before,
                not_after=not_after,
            )
        except (OSError, ValueError) as e:
            raise ChallengeFailedError(domain, f"issued files unreadable: {e}") from e


def load_record(domain: str) -> CertificateRecord | None:
    """Installed certificate for a domain, from the database; None until first issuance."""
    row = db.get_certificate(domain)
    if not row or not row.not_after or not row.cert_path or not row.key_path:
        return None
    return CertificateRecord(
        domain=row.domain,
        not_before=datetime.fromisoformat(row.not_before) if row.not_before else datetime.min.replace(tzinfo=timezone.utc),
        not_after=datetime.fromisoformat(row.not_after),
        cert_path=row.cert_path,
        key_path=row.key_path,
    )


def load_records(domains) -> list[CertificateRecord]:
    out = []
    for d in sorted(set(domains)):
        rec = load_record(d)
        if rec:
            out.append(rec)
    return out


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


class CertificateManager:
    def __init__(
        self,
        domains: list[str] | tuple[str, ...],
        issuer: Issuer,
        on_rotate: Callable[[CertificateRecord], None] | None = None,
        cert_dir: str | None = None,
        threshold_days: int | None = None,
        max_attempts: int | None = None,
        backoff_s: float | None = None,
        check_interval_s: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.domains = sorted(set(domains))
        self.issuer = issuer
        self.on_rotate = on_rotate
        self.cert_dir = Path(cert_dir or settings.cert_dir)
        self.threshold = timedelta(days=settings.renewal_threshold_days if threshold_days is None else threshold_days)
        self.max_attempts = max(1, settings.challenge_max_attempts if max_attempts is None else max_attempts)
        self.backoff_s = settings.challenge_backoff_s if backoff_s is None else backoff_s
        self.check_interval_s = settings.renewal_check_interval_s if check_interval_s is None else check_interval_s
        self.clock = clock
        self.sleep = sleep
        self._stop = Event()
        self._thr: Thread | None = None

    # --- state ---

    def state(self, domain: str) -> CertState:
        row = db.get_certificate(domain)
        return CertState(row.state) if row else CertState.UNISSUED

    def record(self, domain: str) -> CertificateRecord | None:
        return load_record(domain)

    def records(self) -> list[CertificateRecord]:
        return load_records(self.domains)

    def _set_state(self, domain: str, state: CertState, attempts: int = 0, rec: CertificateRecord | None = None) -> None:
        rec = rec or self.record(domain)
        db.upsert_certificate(
            domain,
            state.value,
            not_before=_iso(rec.not_before) if rec else None,
            not_after=_iso(rec.not_after) if rec else None,
            cert_path=rec.cert_path if rec else None,
            key_path=rec.key_path if rec else None,
            attempts=attempts,
        )

    # --- issuance ---

    def paths(self, domain: str) -> tuple[Path, Path]:
        base = self.cert_dir / domain
        return base / "fullchain.pem", base / "privkey.pem"

    def _archive(self, domain: str) -> Path:
        return self.cert_dir / ".archive" / domain

    def _versions(self, domain: str) -> list[Path]:
        archive = self._archive(domain)
        if not archive.is_dir():
            return []
        return sorted((p for p in archive.iterdir() if p.name.isdigit()), key=lambda p: int(p.name))

    def _install(self, issued: IssuedCertificate) -> CertificateRecord:
        """Write the pair into a fresh version directory, then swap the live symlink.

        `<cert_dir>/<domain>` is a symlink into `.archive/<domain>/<n>`, so the
        key and certificate change together and a reload never sees a mix.
        """
        domain = issued.domain
        live = self.cert_dir / domain
        archive = self._archive(domain)
        archive.mkdir(parents=True, exist_ok=True)
        if live.is_dir() and not live.is_symlink():
            # Plain directory from an older install: keep it as version 0.
            live.rename(archive / "0")

        versions = self._versions(domain)
        version = archive / str(int(versions[-1].name) + 1 if versions else 1)
        version.mkdir()
        atomic_write_bytes(version / "privkey.pem", issued.privkey_pem, mode=0o600)
        atomic_write_bytes(version / "fullchain.pem", issued.fullchain_pem)
        atomic_symlink(live, os.path.relpath(version, live.parent))

        # Keep the previous pair for rollback; older ones go.
        for old in self._versions(domain)[:-2]:
            shutil.rmtree(old, ignore_errors=True)

        cert_path, key_path = self.paths(domain)
        rec = CertificateRecord(
            domain=issued.domain,
            not_before=issued.not_before,
            not_after=issued.not_after,
            cert_path=str(cert_path),
            key_path=str(key_path),
        )
        self._set_state(issued.domain, CertState.VALID, rec=rec)
        return rec

    def _rotated(self, rec: CertificateRecord) -> None:
        db.log_event("INFO", f"Certificate for {rec.domain} installed (valid until {_iso(rec.not_after)})")
        if self.on_rotate:
            self.on_rotate(rec)

    def issue(self, domain: str) -> CertificateRecord:
        """Initial issuance with bounded retries.

        Raises ChallengeFailedError once max_attempts challenges failed; the
        domain is then marked failed and not retried automatically.
        """
        last: ChallengeFailedError | None = None
        for attempt in range(1, self.max_attempts + 1):
            self._set_state(domain, CertState.PENDING, attempts=attempt)
            try:
                issued = self.issuer.issue(domain)
            except ChallengeFailedError as e:
                last = e
                self._set_state(domain, CertState.UNISSUED, attempts=attempt)
                db.log_event("WARN", f"Challenge for {domain} failed (attempt {attempt}/{self.max_attempts}): {e.detail}")
                if attempt < self.max_attempts:
                    self.sleep(self.backoff_s * (2 ** (attempt - 1)))
                continue
            rec = self._install(issued)
            self._rotated(rec)
            return rec

        self._set_state(domain, CertState.FAILED, attempts=self.max_attempts)
        detail = last.detail if last else "no attempts made"
        db.log_event("ERROR", f"Giving up on certificate for {domain}: {detail}")
        certificate_alert(domain, detail, self.max_attempts)
        raise ChallengeFailedError(domain, detail)

    def renew(self, domain: str) -> CertificateRecord | None:
        """One renewal attempt. On failure the current certificate stays in place."""
        try:
            issued = self.issuer.issue(domain, renew=True)
        except ChallengeFailedError as e:
            db.log_event("WARN", f"Renewal of {domain} failed, will retry on next check: {e.detail}")
            return None
        rec = self._install(issued)
        self._rotated(rec)
        return rec

    # --- timer ---

    def check(self, force: bool = False, retry_failed: bool = False) -> dict[str, CertState]:
        """Run one lifecycle pass over all domains and return their resulting states.

        Errors for one domain never stop the others.
        """
        now = self.clock()
        out: dict[str, CertState] = {}
        for domain in self.domains:
            state = self.state(domain)
            if state == CertState.FAILED and not retry_failed:
                out[domain] = state
                continue

            rec = self.record(domain)
            if rec is None:
                try:
                    self.issue(domain)
                except ChallengeFailedError:
                    pass
                out[domain] = self.state(domain)
                continue

            if state in {CertState.VALID, CertState.FAILED, CertState.PENDING} and (force or rec.renewal_due(now, self.threshold)):
                self._set_state(domain, CertState.RENEWAL_DUE, rec=rec)
                state = CertState.RENEWAL_DUE
                db.log_event("INFO", f"Certificate for {domain} due for renewal (expires {_iso(rec.not_after)})")

            if state == CertState.RENEWAL_DUE:
                self.renew(domain)
            out[domain] = self.state(domain)
        return out

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.check()
            except Exception as e:
                db.log_event("ERROR", f"Certificate check failed: {type(e).__name__}: {e}")
            self._stop.wait(max(1.0, float(self.check_interval_s)))
