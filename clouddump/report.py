"""
Job reports and the mail transport that delivers them.
"""

from __future__ import annotations

import copy
import mimetypes
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from clouddump import __version__
from clouddump.config import Settings
from clouddump.logs import logger
from clouddump.redact import redact

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
STARTTLS_PORTS = {25, 587}
SMTP_TIMEOUT_SECONDS = 60
SENSITIVE_KEYS = {
    "buckets": ("aws_access_key_id", "aws_secret_access_key"),
    "servers": ("pass",),
}


@dataclass
class RunReport:
    job_id: str
    job_type: str
    exit_code: int
    started_at: datetime
    ended_at: datetime
    log_path: Optional[Path] = None
    config_snapshot: str = ""
    auxiliary_logs: List[Path] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def status_text(self) -> str:
        return "Success" if self.success else "Failure"

    @property
    def elapsed(self) -> timedelta:
        return self.ended_at - self.started_at


@dataclass
class RenderedMessage:
    subject: str
    body: str
    recipient: str
    sender: str
    attachments: List[Path] = field(default_factory=list)


def format_elapsed(elapsed: timedelta) -> str:
    seconds = max(int(elapsed.total_seconds()), 0)
    return f"{seconds // 60} minutes {seconds % 60} seconds"


def _entries(snapshot: Dict[str, Any], key: str) -> List[Any]:
    entries = snapshot.get(key)
    return entries if isinstance(entries, list) else []


def format_job_configuration(payload: Dict[str, Any]) -> str:
    """Readable job configuration with credentials removed."""
    snapshot = copy.deepcopy(payload)
    for key, secrets in SENSITIVE_KEYS.items():
        for entry in _entries(snapshot, key):
            if isinstance(entry, dict):
                for secret in secrets:
                    entry.pop(secret, None)
    for entry in _entries(snapshot, "blobstorages"):
        if isinstance(entry, dict) and isinstance(entry.get("source"), str):
            entry["source"] = entry["source"].split("?", 1)[0]
    text = yaml.safe_dump(snapshot, default_flow_style=False, sort_keys=False)
    return redact(text).rstrip()


def _footer() -> str:
    return f"Vendanor CloudDump v{__version__}"


def build_report(report: RunReport, settings: Settings) -> RenderedMessage:
    body = "\n".join(
        [
            f"CloudDump {settings.host}",
            "",
            f"JOB REPORT ({report.status_text})",
            "",
            f"Type: {report.job_type}",
            f"ID: {report.job_id}",
            f"Started: {report.started_at.strftime(TIMESTAMP_FORMAT)}",
            f"Completed: {report.ended_at.strftime(TIMESTAMP_FORMAT)}",
            f"Time elapsed: {format_elapsed(report.elapsed)}",
            "",
            "CONFIGURATION",
            "",
            report.config_snapshot or "Configuration unavailable",
            "",
            "For more information consult the attached logs.",
            "",
            _footer(),
            "",
        ]
    )
    attachments = [report.log_path] if report.log_path else []
    attachments.extend(report.auxiliary_logs)
    return RenderedMessage(
        subject=f"[{report.status_text}] CloudDump {settings.host}: {report.job_id}",
        body=body,
        recipient=settings.mail_to,
        sender=settings.mail_from,
        attachments=attachments,
    )


def build_startup_message(settings: Settings, jobs: List[Any]) -> RenderedMessage:
    config_lines = [
        f"Debug: {str(settings.debug).lower()}",
        f"SMTP server: {settings.smtp_server}",
        f"SMTP port: {settings.smtp_port}",
        f"Mail from: {settings.mail_from}",
        f"Mail to: {settings.mail_to}",
        f"Schedule policy: {settings.schedule_policy}",
    ]
    if settings.mounts:
        config_lines.extend(["", "Mountpoints:"])
        for mount in settings.mounts:
            config_lines.extend(["", f"Path: {mount.path}", f"Mountpoint: {mount.mountpoint}"])
    config_lines.extend(["", f"Total jobs configured: {len(jobs)}"])

    job_blocks = [
        "\n".join(
            [
                f"ID: {job.id}",
                f"Type: {job.type.value} ({job.type.label})",
                f"Schedule: {job.schedule}",
                f"Debug: {str(job.debug).lower()}",
            ]
        )
        for job in jobs
    ]

    body = "\n".join(
        [
            f"CloudDump {settings.host}",
            "",
            "STARTED",
            "",
            "CONFIGURATION",
            "",
            redact("\n".join(config_lines)),
            "",
            "JOBS",
            "",
            redact("\n\n".join(job_blocks)),
            "",
            _footer(),
            "",
        ]
    )
    return RenderedMessage(
        subject=f"[Started] CloudDump {settings.host}",
        body=body,
        recipient=settings.mail_to,
        sender=settings.mail_from,
    )


class Mailer:
    """SMTP transport. Implicit TLS unless the port is a STARTTLS port."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def compose(self, message: RenderedMessage) -> EmailMessage:
        email = EmailMessage()
        email["Subject"] = message.subject
        email["From"] = f"{message.sender} <{message.sender}>"
        email["To"] = message.recipient
        email.set_content(message.body)
        for path in message.attachments:
            if not path.is_file():
                continue
            ctype, _ = mimetypes.guess_type(path.name)
            maintype, subtype = (ctype or "text/plain").split("/", 1)
            email.add_attachment(
                path.read_bytes(),
                maintype=maintype,
                subtype=subtype,
                filename=path.name,
            )
        return email

    def _connect(self) -> smtplib.SMTP:
        settings = self.settings
        context = ssl.create_default_context()
        if settings.smtp_port in STARTTLS_PORTS:
            client = smtplib.SMTP(settings.smtp_server, settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            client.starttls(context=context)
            return client
        return smtplib.SMTP_SSL(
            settings.smtp_server,
            settings.smtp_port,
            timeout=SMTP_TIMEOUT_SECONDS,
            context=context,
        )

    def send(self, message: RenderedMessage) -> bool:
        if not self.settings.mail_enabled:
            logger.info("Mail is not configured; not sending \"%s\".", message.subject)
            return False
        logger.info("Sending e-mail to %s from %s: %s", message.recipient, message.sender, message.subject)
        try:
            email = self.compose(message)
            with self._connect() as client:
                if self.settings.smtp_user:
                    client.login(self.settings.smtp_user, self.settings.smtp_pass)
                client.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send e-mail \"%s\": %s", message.subject, exc)
            return False
        except Exception as exc:
            logger.exception("Unexpected error sending e-mail \"%s\": %s", message.subject, exc)
            return False
        return True


class Reporter:
    def __init__(self, settings: Settings, mailer: Optional[Mailer] = None):
        self.settings = settings
        self.mailer = mailer or Mailer(settings)

    def deliver(self, report: RunReport) -> bool:
        """Mail the report, then delete its log files whether or not the mail went out."""
        try:
            return self.mailer.send(build_report(report, self.settings))
        finally:
            paths = [report.log_path] if report.log_path else []
            paths.extend(report.auxiliary_logs)
            for path in paths:
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Could not delete log file %s: %s", path, exc)

    def announce_startup(self, jobs: List[Any]) -> bool:
        return self.mailer.send(build_startup_message(self.settings, jobs))
