from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional, Set

from authcore.logging import get_logger

logger = get_logger(__name__)

_BACKGROUND_TASKS: Set[asyncio.Task] = set()

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #1f6feb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def dispatch_background(func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Run a blocking notification call off the request path.

    Failures are logged; the caller never waits on or sees them.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        func(*args, **kwargs)
        return

    async def _runner() -> None:
        try:
            await asyncio.to_thread(func, *args, **kwargs)
        except Exception as exc:
            logger.warning(
                "background_dispatch_failed",
                task=getattr(func, "__name__", repr(func)),
                error=str(exc),
            )

    task = loop.create_task(_runner())
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)


class EmailService:
    """Transactional account-security emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - New sign-in alerts
    - Sessions-revoked notices
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Account Security",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _render(self, heading: str, paragraphs: list[str], *, link: Optional[str] = None,
                link_label: str = "Review account activity") -> tuple[str, str]:
        # Paragraphs carry request headers (User-Agent, CF-IPCountry); escape everything
        html_paragraphs = "\n".join(f"        <p>{html.escape(p)}</p>" for p in paragraphs)
        button = (
            f'        <p style="margin: 30px 0;"><a href="{html.escape(link)}" class="button">'
            f"{html.escape(link_label)}</a></p>\n"
            if link
            else ""
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}    </style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(heading)}</h1>
{html_paragraphs}
{button}        <div class="footer">
            <p>{html.escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""
        text_lines = [heading, ""] + [p for p in paragraphs]
        if link:
            text_lines += ["", link]
        text_lines += ["", "---", self.from_name, ""]
        return html_body, "\n".join(text_lines)

    def send_login_alert(
        self,
        to_email: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        location: Optional[str] = None,
    ) -> bool:
        """Tell the account owner about a new sign-in."""
        device = user_agent or "an unknown device"
        where = location or ip_addr or "an unknown location"
        html_body, text_body = self._render(
            "New sign-in to your account",
            [
                f"Your account was just signed in from {device} ({where}).",
                "If this was you, there is nothing to do.",
                "If you don't recognise this activity, sign out of all other sessions and change your password.",
            ],
            link=f"{self.base_url}/account/sessions",
        )
        return self._send_email(to_email, "New sign-in to your account", html_body, text_body)

    def send_sessions_revoked_notice(self, to_email: str, *, count: int) -> bool:
        """Confirm that other sessions were signed out."""
        noun = "session was" if count == 1 else "sessions were"
        html_body, text_body = self._render(
            "Other sessions signed out",
            [
                f"{count} other {noun} signed out of your account.",
                "If you didn't make this change, please contact support immediately.",
            ],
            link=f"{self.base_url}/account/sessions",
        )
        return self._send_email(to_email, "Other sessions signed out", html_body, text_body)
