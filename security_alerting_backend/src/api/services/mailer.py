from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape

from src.api.config import SmtpSettings

if TYPE_CHECKING:
    from src.api.services.notifications import AlertPayload

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"


class Mailer(Protocol):
    async def send_security_alert(self, to: str, subject: str, text: str, alert: "AlertPayload") -> None: ...

    async def send_suspicious_login_notification(self, to: str, user_name: str, info: Dict[str, Any]) -> None: ...


SEVERITY_COLORS = {
    "low": "#28a745",
    "medium": "#ffc107",
    "high": "#fd7e14",
    "critical": "#dc3545",
}


# PUBLIC_INTERFACE
def build_template_env() -> Environment:
    """Jinja2 environment for the mail templates; HTML templates are autoescaped."""
    return Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html", "xml"]),
        keep_trailing_newline=True,
    )


def render_alert_html(env: Environment, text: str, alert: "AlertPayload") -> str:
    return env.get_template("security_alert.html").render(
        color=SEVERITY_COLORS.get(alert.severity.value, "#6c757d"),
        severity=alert.severity.value,
        alert_type=alert.type,
        rule_key=alert.rule_key,
        lines=text.splitlines(),
    )


def render_suspicious_login(env: Environment, user_name: str, info: Dict[str, Any]) -> Tuple[str, str]:
    """Plain-text and HTML bodies of the suspicious sign-in notice."""
    context = {"user_name": user_name, "info": info}
    text = env.get_template("suspicious_login.txt").render(**context)
    html = env.get_template("suspicious_login.html").render(**context)
    return text, html


class SmtpMailer:
    """Sends mail through an SMTP relay; the blocking smtplib session runs in a worker thread."""

    def __init__(self, settings: SmtpSettings, env: Optional[Environment] = None):
        self._settings = settings
        self._env = env or build_template_env()

    def _build_message(self, to: str, subject: str, text: str, html: str | None = None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self._settings.from_name} <{self._settings.from_address}>"
        msg["To"] = to
        msg.attach(MIMEText(text, "plain", "utf-8"))
        if html:
            msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def _send_sync(self, to: str, msg: MIMEMultipart) -> None:
        s = self._settings
        server = smtplib.SMTP(s.host, s.port, timeout=s.timeout_sec)
        try:
            if s.use_tls:
                server.starttls(context=ssl.create_default_context())
            if s.username and s.password:
                server.login(s.username, s.password)
            server.sendmail(s.from_address, [to], msg.as_string())
        finally:
            server.quit()

    async def send_security_alert(self, to: str, subject: str, text: str, alert: "AlertPayload") -> None:
        msg = self._build_message(to, subject, text, render_alert_html(self._env, text, alert))
        await asyncio.to_thread(self._send_sync, to, msg)
        logger.info("Security alert mailed to=%s type=%s", to, alert.type)

    async def send_suspicious_login_notification(self, to: str, user_name: str, info: Dict[str, Any]) -> None:
        text, html = render_suspicious_login(self._env, user_name, info)
        msg = self._build_message(to, "Security alert: suspicious sign-in activity", text, html)
        await asyncio.to_thread(self._send_sync, to, msg)
        logger.info("Suspicious login notice mailed to=%s", to)


class LoggingMailer:
    """Development mailer: logs what would have been sent."""

    async def send_security_alert(self, to: str, subject: str, text: str, alert: "AlertPayload") -> None:
        logger.info("[DEV MAIL] security alert to=%s subject=%s severity=%s", to, subject, alert.severity.value)

    async def send_suspicious_login_notification(self, to: str, user_name: str, info: Dict[str, Any]) -> None:
        logger.info("[DEV MAIL] suspicious login notice to=%s user=%s info=%s", to, user_name, info)
