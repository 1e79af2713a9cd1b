from __future__ import annotations

import html
import smtplib
import ssl
from contextlib import contextmanager
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Iterator, Optional

from docuflow.config import SmtpSecurity
from docuflow.logging import get_logger, mask_email
from docuflow.service.errors import DeliveryError

logger = get_logger(__name__)

ROLE_LABELS = {"accountant": "Accountant", "client": "Client"}


class EmailService:
    """Transactional email over SMTP.

    ``deliver`` walks the SMTP conversation one stage at a time (connect,
    greet, starttls, authenticate, envelope, data) and raises
    :class:`DeliveryError` labelled with the stage that failed. The
    connection is released on every path and nothing is retried here;
    callers decide whether a failed send matters.

    Without an SMTP host the service runs in dev mode outside production:
    messages are logged and reported as delivered.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_security: SmtpSecurity | str | None = None,
        timeout_seconds: float = 15.0,
        from_email: Optional[str] = None,
        from_name: str = "DocuFlow",
        production: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        if smtp_security is None:
            smtp_security = SmtpSecurity.SSL if smtp_port == 465 else SmtpSecurity.STARTTLS
        self.smtp_security = SmtpSecurity(smtp_security)
        self.timeout_seconds = timeout_seconds
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.production = production

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    @property
    def has_credentials(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> bytes:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = Header(subject, "utf-8")
        msg["From"] = formataddr((str(Header(self.from_name, "utf-8")), self.from_email))
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg.as_bytes()

    @contextmanager
    def _stage(self, stage: str, to_email: str) -> Iterator[None]:
        try:
            yield
        except DeliveryError:
            raise
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_stage_failed",
                stage=stage,
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError(f"{type(exc).__name__}: {exc}", stage=stage) from exc

    @staticmethod
    def _expect(stage: str, reply: tuple[int, bytes], *accepted: int) -> None:
        code, message = reply
        if code not in accepted:
            text = message.decode("utf-8", "replace") if isinstance(message, bytes) else str(message)
            raise DeliveryError(f"unexpected reply {code}: {text}".strip(), stage=stage)

    def deliver(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        """Send one message; raise :class:`DeliveryError` on any failed stage."""
        if not self.is_configured:
            if self.production:
                logger.error("email_not_configured", to=mask_email(to_email), subject=subject)
                raise DeliveryError("SMTP transport is not configured", stage="configure")
            logger.info("email_dev_mode", to=mask_email(to_email), subject=subject)
            return

        payload = self._build_message(to_email, subject, html_body, text_body)
        context = ssl.create_default_context()
        implicit_tls = self.smtp_security == SmtpSecurity.SSL
        server: smtplib.SMTP | None = None
        try:
            with self._stage("connect", to_email):
                if implicit_tls:
                    server = smtplib.SMTP_SSL(context=context, timeout=self.timeout_seconds)
                else:
                    server = smtplib.SMTP(timeout=self.timeout_seconds)
                self._expect("connect", server.connect(self.smtp_host, self.smtp_port), 220)

            with self._stage("greet", to_email):
                reply = server.ehlo()
                if reply[0] != 250:
                    reply = server.helo()
                self._expect("greet", reply, 250)

            if self.smtp_security == SmtpSecurity.STARTTLS:
                with self._stage("starttls", to_email):
                    self._expect("starttls", server.starttls(context=context), 220)
                    self._expect("starttls", server.ehlo(), 250)

            if self.has_credentials:
                with self._stage("authenticate", to_email):
                    self._expect(
                        "authenticate", server.login(self.smtp_user, self.smtp_password), 235
                    )

            with self._stage("envelope", to_email):
                self._expect("envelope", server.mail(self.from_email), 250)
                self._expect("envelope", server.rcpt(to_email), 250, 251)

            with self._stage("data", to_email):
                self._expect("data", server.data(payload), 250)
        finally:
            if server is not None:
                self._release(server)

        logger.info("email_sent", to=mask_email(to_email), subject=subject)

    @staticmethod
    def _release(server: smtplib.SMTP) -> None:
        try:
            server.quit()
        except (smtplib.SMTPException, OSError):
            server.close()

    def send_password_reset(
        self, to_email: str, full_name: Optional[str], link: str, ttl_minutes: int
    ) -> None:
        """Send password reset email with reset link."""
        greeting = f"Hi {full_name}," if full_name else "Hi,"
        subject = "Reset your DocuFlow password"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Reset your password</h1>
        <p>{html.escape(greeting)}</p>
        <p>We received a request to reset your DocuFlow password. Click the button below to choose a new one:</p>
        <p style="margin: 30px 0;">
            <a href="{html.escape(link, quote=True)}" class="button">Reset Password</a>
        </p>
        <p>This link will expire in {ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>DocuFlow</p>
            <p>If the button doesn't work, copy and paste this URL: {html.escape(link)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Reset your DocuFlow password

{greeting}

We received a request to reset your password. Visit the link below to choose a new one:

{link}

This link will expire in {ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
DocuFlow
"""

        self.deliver(to_email, subject, html_body, text_body)

    def send_invite(
        self, to_email: str, firm_name: str, role: str, link: str, ttl_hours: int
    ) -> None:
        """Send a firm invitation for an accountant or client seat."""
        role_label = ROLE_LABELS.get(role, role.title())
        subject = f"You're invited to join {firm_name} on DocuFlow"
        safe_firm = html.escape(firm_name)

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Join {safe_firm} on DocuFlow</h1>
        <p><strong>{safe_firm}</strong> has invited you to DocuFlow as a <strong>{html.escape(role_label)}</strong>.</p>
        <p style="margin: 30px 0;">
            <a href="{html.escape(link, quote=True)}" class="button">Accept Invitation</a>
        </p>
        <p>This invitation will expire in {ttl_hours} hours.</p>
        <div class="footer">
            <p>DocuFlow</p>
            <p>If the button doesn't work, copy and paste this URL: {html.escape(link)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""You're invited to join {firm_name} on DocuFlow

{firm_name} has invited you to DocuFlow as a {role_label}.

Accept the invitation here:

{link}

This invitation will expire in {ttl_hours} hours.

---
DocuFlow
"""

        self.deliver(to_email, subject, html_body, text_body)
