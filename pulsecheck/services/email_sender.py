"""Email sender service - sends alerts via SMTP."""
import asyncio
import logging
import smtplib
import ssl
from datetime import datetime
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from html import escape
from typing import Optional, List, Dict, Any, Tuple
from dataclasses import dataclass

from ..config import Settings
from ..exceptions import MailDeliveryError

logger = logging.getLogger(__name__)


@dataclass
class EmailConfig:
    """SMTP configuration for sending emails."""
    host: str
    port: int
    username: str
    password: str
    use_tls: bool = True
    from_address: str = ""

    @classmethod
    def from_settings(cls, config: Settings) -> "EmailConfig":
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            from_address=config.email_from,
        )


class EmailSenderService:
    """Service for sending email alerts via SMTP.

    send() raises MailDeliveryError on any failure so the notification
    queue can retry the job.
    """

    def __init__(self, config: EmailConfig):
        self.config = config

    def _parse_recipients(self, to_address: str) -> List[str]:
        """Parse comma-separated email addresses into a list."""
        if not to_address:
            return []
        # Split by comma, strip whitespace, filter empty
        return [addr.strip() for addr in to_address.split(",") if addr.strip()]

    async def send(self, to: str, subject: str, body: str, html: Optional[str] = None):
        """Send an email. The blocking SMTP session runs in a worker thread."""
        config = self.config
        if not config.host:
            raise MailDeliveryError("Email not configured - missing SMTP host")

        recipients = self._parse_recipients(to)
        if not recipients:
            raise MailDeliveryError("No valid recipients")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = config.from_address or config.username
        msg["To"] = ", ".join(recipients)
        msg.attach(MIMEText(body, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))

        try:
            await asyncio.to_thread(self._deliver, recipients, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed for user '{config.username}': {e}")
            raise MailDeliveryError(f"SMTP authentication failed: {e}") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"Recipients refused by server: {e}")
            raise MailDeliveryError(f"Recipients refused: {e}") from e
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {type(e).__name__}: {e}")
            raise MailDeliveryError(f"SMTP error: {e}") from e
        except (ConnectionRefusedError, TimeoutError, OSError) as e:
            logger.error(f"Could not reach {config.host}:{config.port}: {e}")
            raise MailDeliveryError(f"Connection to {config.host}:{config.port} failed: {e}") from e

        logger.info(f"Email sent to {len(recipients)} recipient(s): {subject}")

    def _deliver(self, recipients: List[str], msg: MIMEMultipart):
        config = self.config
        from_addr = config.from_address or config.username
        with smtplib.SMTP(config.host, config.port, timeout=30) as server:
            if config.use_tls:
                server.starttls(context=ssl.create_default_context())
            if config.username and config.password:
                server.login(config.username, config.password)
            server.sendmail(from_addr, recipients, msg.as_string())


def _format_checked_at(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S UTC")
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M:%S UTC")
        except ValueError:
            return value
    return "N/A"


def render_alert(alert_type: str, name: str, url: str, result: Dict[str, Any]) -> Tuple[str, str, str]:
    """Build (subject, text, html) for a DOWN or UP alert."""
    label = name or url
    checked_at = _format_checked_at(result.get("checked_at"))
    status_code = result.get("status_code")
    status_code = "N/A" if status_code is None else status_code

    if alert_type == "down":
        subject = f"ALERT: {label} is DOWN"
        lines = [
            subject,
            f"URL: {url}",
            f"Checked at: {checked_at}",
            f"Status code: {status_code}",
        ]
        if result.get("error"):
            lines.append(f"Error: {result['error']}")
        heading = "Monitor DOWN"
        status_line = f"DOWN (status code: {status_code})"
    else:
        subject = f"RECOVERY: {label} is UP"
        lines = [
            subject,
            f"URL: {url}",
            f"Checked at: {checked_at}",
        ]
        if result.get("response_time_ms") is not None:
            lines.append(f"Response time: {result['response_time_ms']}ms")
        heading = "Monitor UP"
        status_line = "UP"

    lines.extend(["", "--", "PulseCheck Monitoring"])
    text = "\n".join(lines)

    html = "\n".join([
        f"<h3>PulseCheck - {heading}</h3>",
        f"<p><strong>Monitor:</strong> {escape(label)}</p>",
        f'<p><strong>URL:</strong> <a href="{escape(url, quote=True)}">{escape(url)}</a></p>',
        f"<p><strong>Checked at:</strong> {escape(checked_at)}</p>",
        f"<p><strong>Status:</strong> {escape(status_line)}</p>",
        "<hr/>",
        "<p>This is an automated message from PulseCheck.</p>",
    ])
    return subject, text, html
