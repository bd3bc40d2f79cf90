from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .db import log_event
from .settings import settings


def _recipients() -> list[str]:
    return [addr.strip() for addr in (settings.email_to or "").split(",") if addr.strip()]


def send_email(subject: str, body: str) -> bool:
    """Send an operator alert if SMTP settings are configured.

    Environment variables:
      - DSO_ENABLE_EMAIL=true
      - DSO_SMTP_HOST / DSO_SMTP_PORT
      - DSO_SMTP_USER / DSO_SMTP_PASSWORD (optional for an unauthenticated relay)
      - DSO_EMAIL_FROM / DSO_EMAIL_TO (comma separated)

    Returns True if the message was handed to the SMTP server. Delivery
    problems are logged, never raised.
    """
    to = _recipients()
    if not settings.enable_email or not (settings.smtp_host and settings.email_from and to):
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = ", ".join(to)
    msg["Subject"] = f"[dso] {subject}"
    msg.attach(MIMEText(body, "plain"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            if settings.smtp_user:
                server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, to, msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        log_event("WARN", f"Alert e-mail '{subject}' not sent: {type(e).__name__}: {e}")
        return False
    return True


def service_alert(service: str, status: str, detail: str, restart_count: int = 0) -> bool:
    subject = f"{status.upper()}: {service}"
    body = f"Service: {service}\nStatus: {status}\nRestarts: {restart_count}\nDetail: {detail}"
    return send_email(subject, body)


def certificate_alert(domain: str, detail: str, attempts: int) -> bool:
    subject = f"CERTIFICATE FAILED: {domain}"
    body = f"Domain: {domain}\nAttempts: {attempts}\nDetail: {detail}\n\nThe domain is served without TLS until `dso renew-certs` succeeds."
    return send_email(subject, body)
