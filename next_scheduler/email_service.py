"""
Email Service using Resend or SMTP
Compiles MJML templates and delivers booking confirmations
"""

import asyncio
import logging
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import resend
from mjml import mjml_to_html

from .background.errors import DeliveryError

logger = logging.getLogger(__name__)


def compile_mjml_to_html(mjml_content: str) -> str:
    """Compile MJML template to production-ready HTML"""
    try:
        result = mjml_to_html(mjml_content)
    except Exception as e:
        logger.error(f"MJML compilation error: {e}")
        raise ValueError(f"Failed to compile MJML template: {e}") from e

    # Dict with 'html' and 'errors' keys, or an object exposing the same attributes
    if isinstance(result, dict):
        errors, html = result.get("errors"), result.get("html", "")
    elif isinstance(result, str):
        errors, html = None, result
    else:
        errors, html = getattr(result, "errors", None), getattr(result, "html", "")
    if errors:
        logger.warning(f"MJML compilation warnings: {errors}")
    return html


def send_via_smtp(
    host: str,
    port: int,
    username: Optional[str],
    password: Optional[str],
    use_tls: bool,
    to: str,
    subject: str,
    html_content: str,
    from_address: str,
    timeout: float = 30,
) -> str:
    """Send email via an SMTP server; returns a local message id"""
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = from_address
    msg["To"] = to
    msg.attach(MIMEText(html_content, "html"))

    if port == 465:
        server = smtplib.SMTP_SSL(host, port, context=ssl.create_default_context(), timeout=timeout)
    else:
        server = smtplib.SMTP(host, port, timeout=timeout)
        if use_tls:
            server.starttls(context=ssl.create_default_context())

    try:
        if username:
            server.login(username, password or "")
        server.sendmail(from_address.split("<")[-1].rstrip(">"), [to], msg.as_string())
    finally:
        server.quit()

    logger.info(f"✅ SMTP email sent successfully via {host}")
    return f"smtp-{datetime.now(timezone.utc).timestamp()}"


def send_via_resend(api_key: str, to: str, subject: str, html_content: str, from_address: str) -> str:
    resend.api_key = api_key
    response = resend.Emails.send({"from": from_address, "to": [to], "subject": subject, "html": html_content})
    message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
    logger.info(f"✅ Email sent successfully via Resend: {message_id}")
    return message_id or ""


class MailSender:
    """
    Delivers HTML email through Resend when an API key is configured,
    otherwise through SMTP. Every failure surfaces as DeliveryError.
    """

    def __init__(
        self,
        from_address: str,
        resend_api_key: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
    ):
        self.from_address = from_address
        self.resend_api_key = resend_api_key
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls

    def send_sync(self, to: str, subject: str, html_content: str) -> str:
        if self.resend_api_key:
            logger.info(f"📧 Sending email via Resend to: {to}")
            try:
                return send_via_resend(self.resend_api_key, to, subject, html_content, self.from_address)
            except Exception as e:
                logger.error(f"❌ Email send error to {to}: {e}")
                raise DeliveryError(f"Resend delivery failed: {e}") from e

        if self.smtp_host:
            logger.info(f"📧 Sending email via SMTP: {self.smtp_host}")
            try:
                return send_via_smtp(
                    host=self.smtp_host,
                    port=self.smtp_port,
                    username=self.smtp_username,
                    password=self.smtp_password,
                    use_tls=self.smtp_use_tls,
                    to=to,
                    subject=subject,
                    html_content=html_content,
                    from_address=self.from_address,
                )
            except (smtplib.SMTPException, OSError) as e:
                logger.error(f"❌ SMTP send failed: {e}")
                raise DeliveryError(f"SMTP delivery failed: {e}") from e

        logger.error("❌ No email service configured - RESEND_API_KEY and SMTP_HOST missing")
        raise DeliveryError("Email service not configured")

    async def send(self, to: str, subject: str, html_content: str) -> str:
        """Deliver one email from a worker thread; returns the provider message id"""
        return await asyncio.to_thread(self.send_sync, to, subject, html_content)
