from __future__ import annotations

import logging
import os
import smtplib
from collections.abc import Mapping
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

from portal.config import env_bool, env_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    username: str
    password: str
    sender: str
    starttls: bool


class Mailer:
    def send(self, *, to: str, subject: str, text: str, html: str | None = None) -> None:
        raise NotImplementedError


class InMemoryMailer(Mailer):
    def __init__(self) -> None:
        self.outbox: list[dict[str, Any]] = []

    def send(self, *, to: str, subject: str, text: str, html: str | None = None) -> None:
        self.outbox.append({"to": to, "subject": subject, "text": text, "html": html})


class SmtpMailer(Mailer):
    def __init__(self, *, config: SmtpConfig) -> None:
        if not config.host:
            raise ValueError("SMTP_HOST must not be empty")
        self._config = config

    def send(self, *, to: str, subject: str, text: str, html: str | None = None) -> None:
        msg = EmailMessage()
        msg["From"] = self._config.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(host=self._config.host, port=self._config.port, timeout=30) as s:
            s.ehlo()
            if self._config.starttls:
                s.starttls()
                s.ehlo()
            if self._config.username:
                s.login(self._config.username, self._config.password)
            s.send_message(msg)


def send_quietly(mailer: Mailer, *, to: str, subject: str, text: str, html: str | None = None) -> bool:
    """Deliver one message; failures are logged and reported as ``False``."""
    try:
        mailer.send(to=to, subject=subject, text=text, html=html)
    except Exception as exc:
        logger.warning("portal_email_send_failed to=%s subject=%s error=%s", to, subject, exc)
        return False
    logger.info("portal_email_sent to=%s subject=%s", to, subject)
    return True


def create_mailer_from_env(environ: Mapping[str, str] | None = None) -> Mailer:
    env = os.environ if environ is None else environ
    host = env.get("SMTP_HOST", "").strip()
    if not host:
        return InMemoryMailer()
    username = env.get("SMTP_USER", "").strip()
    return SmtpMailer(
        config=SmtpConfig(
            host=host,
            port=env_int(env, "SMTP_PORT", default=587, minimum=1),
            username=username,
            password=env.get("SMTP_PASSWORD", ""),
            sender=env.get("SMTP_FROM", "").strip() or username or "no-reply@localhost",
            starttls=env_bool(env, "SMTP_STARTTLS", True),
        )
    )
