"""
SMTP email provider implementation.

Supports Gmail, Mailgun, SendGrid and other SMTP relays. Newsletter batches
go out as one message per BCC chunk, addressed To the sender.
"""

from __future__ import annotations

import asyncio
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Dict, List, Optional, Sequence

from app.core.logging import get_logger
from services.errors import BatchSendError
from .base import EmailProvider

logger = get_logger()

SMTP_TIMEOUT_S = 30


def status_for_smtp_error(exc: BaseException) -> int:
    """
    Map an smtplib failure onto an HTTP-like status for retry classification:
    SMTP 4xx replies and connection problems are transient (503), SMTP 5xx
    replies and refused recipients are permanent (422).
    """
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return 401
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return 422
    if isinstance(exc, smtplib.SMTPResponseException):
        code = int(exc.smtp_code or 0)
        if 400 <= code < 500:
            return 503
        if code >= 500:
            return 422
    return 503


class SMTPEmailProvider(EmailProvider):
    """
    Email provider using SMTP.

    Port 465 uses implicit TLS; other ports use STARTTLS when `smtp_use_tls` is set.
    """

    name = "smtp"

    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Newsletter",
        **kwargs,
    ):
        """
        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port (default: 587)
            smtp_user: SMTP username
            smtp_password: SMTP password
            smtp_use_tls: Whether to use STARTTLS (default: True)
            from_email: Sender email address, defaults to smtp_user
            from_name: Sender display name
            **kwargs: Passed to EmailProvider (breaker, retry_config, ...)
        """
        super().__init__(from_email or smtp_user, from_name, **kwargs)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls

    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password and self.from_email)

    def _build_message(
        self,
        to_header: str,
        subject: str,
        html_body: str,
        text_body: Optional[str],
        headers: Dict[str, str],
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_header
        msg["Message-ID"] = make_msgid()
        if self.reply_to:
            msg["Reply-To"] = self.reply_to
        for name, value in headers.items():
            msg[name] = value

        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    def _open(self) -> smtplib.SMTP:
        if self.smtp_port == 465:
            return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_S)
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_S)
        if self.smtp_use_tls:
            server.starttls()
        return server

    def _deliver(self, msg: MIMEMultipart, to_addrs: List[str]) -> Dict[str, tuple]:
        """Blocking send; returns the recipients the server refused."""
        with self._open() as server:
            server.login(self.smtp_user, self.smtp_password)
            return server.send_message(msg, from_addr=self.from_email, to_addrs=to_addrs) or {}

    async def _deliver_async(self, msg: MIMEMultipart, to_addrs: List[str]) -> Dict[str, tuple]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._deliver, msg, to_addrs)
        except (smtplib.SMTPException, OSError) as exc:
            raise BatchSendError(
                f"SMTP delivery failed: {type(exc).__name__}: {exc}",
                status=status_for_smtp_error(exc),
                total_failed=len(to_addrs),
            ) from exc

    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> str:
        if not self.is_configured():
            logger.warning("email_not_configured", provider=self.name, to_email=to)
            raise ValueError("SMTP email provider is not configured")

        msg = self._build_message(to, subject, html_body, text_body, self.list_headers())
        try:
            await self._deliver_async(msg, [to])
        except BatchSendError as e:
            logger.error(
                "email_send_failed",
                to_email=to,
                subject=subject,
                status=e.status,
                error=str(e),
                exc_info=True,
            )
            raise

        message_id = f"smtp-{datetime.now().timestamp()}"
        logger.info("email_sent", to_email=to, subject=subject, message_id=message_id)
        return message_id

    async def send_bcc_chunk(
        self,
        recipients: Sequence[str],
        subject: str,
        html_body: str,
        text_body: str,
        headers: Dict[str, str],
    ) -> List[str]:
        # Recipients only appear in the envelope, never in a header.
        msg = self._build_message(self.from_email or "", subject, html_body, text_body, headers)
        refused = await self._deliver_async(msg, list(recipients))
        return list(refused.keys())
