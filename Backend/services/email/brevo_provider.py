# Backend/services/email/brevo_provider.py
"""
Brevo (formerly Sendinblue) email provider implementation.

Sends through the Brevo Transactional Email API; newsletter chunks are one
API call each with the chunk in BCC.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from sib_api_v3_sdk import ApiClient, Configuration, SendSmtpEmail, TransactionalEmailsApi
from sib_api_v3_sdk.rest import ApiException

from app.core.logging import get_logger
from services.errors import BatchSendError
from .base import EmailProvider

logger = get_logger()


class BrevoEmailProvider(EmailProvider):
    """
    Email provider using Brevo (formerly Sendinblue).

    API errors are raised as BatchSendError carrying the HTTP status, so 429
    and 5xx are retried and other 4xx (invalid sender, bad key) are not.
    """

    name = "brevo"

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: str = "Newsletter",
        *,
        client: Optional[TransactionalEmailsApi] = None,
        **kwargs,
    ):
        """
        Args:
            api_key: Brevo API key
            from_email: Sender email address (must be verified in Brevo)
            from_name: Sender display name
            client: Prebuilt TransactionalEmailsApi (tests)
            **kwargs: Passed to EmailProvider (breaker, retry_config, ...)
        """
        super().__init__(from_email, from_name, **kwargs)
        self.api_key = api_key
        self._brevo_client: Optional[TransactionalEmailsApi] = client

    def _get_client(self) -> TransactionalEmailsApi:
        if self._brevo_client is None:
            config = Configuration()
            config.api_key["api-key"] = self.api_key
            self._brevo_client = TransactionalEmailsApi(ApiClient(config))
        return self._brevo_client

    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    def _headers(self, extra: Dict[str, str]) -> Dict[str, str]:
        headers = {
            "X-Mailer": "Newsletter Feed Mailer",
            # Suppress auto-responses (prevents out-of-office loops)
            "X-Auto-Response-Suppress": "All",
        }
        headers.update(extra)
        return headers

    async def _submit(self, email: SendSmtpEmail, recipient_count: int) -> Any:
        client = self._get_client()
        loop = asyncio.get_running_loop()
        try:
            # The SDK is synchronous.
            return await loop.run_in_executor(None, lambda: client.send_transac_email(email))
        except ApiException as e:
            error_code = getattr(e, "status", None)
            error_body = getattr(e, "body", None) or str(e)
            if error_code == 429:
                logger.error("brevo_email_rate_limited", error_code=error_code, error_body=error_body)
            elif error_code == 401:
                logger.error("brevo_invalid_api_key", error_code=error_code, error_body=error_body)
            else:
                logger.error("brevo_email_send_failed", error_code=error_code, error_body=error_body)
            raise BatchSendError(
                f"Brevo error ({error_code}): {error_body}",
                status=error_code if isinstance(error_code, int) and error_code > 0 else 503,
                total_failed=recipient_count,
            ) from e

    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> str:
        if not self.is_configured():
            logger.warning("brevo_email_not_configured", to_email=to, subject=subject)
            raise ValueError("Brevo email provider is not configured")

        email = SendSmtpEmail(
            to=[{"email": to}],
            subject=subject,
            html_content=html_body,
            sender={"email": self.from_email, "name": self.from_name},
            headers=self._headers(self.list_headers()),
        )
        if text_body:
            email.text_content = text_body
        if self.reply_to:
            email.reply_to = {"email": self.reply_to}

        response = await self._submit(email, 1)
        message_id = getattr(response, "message_id", None) or ""
        logger.info("brevo_email_sent", to_email=to, subject=subject, message_id=message_id)
        return message_id

    async def send_bcc_chunk(
        self,
        recipients: Sequence[str],
        subject: str,
        html_body: str,
        text_body: str,
        headers: Dict[str, str],
    ) -> List[str]:
        email = SendSmtpEmail(
            to=[{"email": self.from_email, "name": self.from_name}],
            bcc=[{"email": r} for r in recipients],
            subject=subject,
            html_content=html_body,
            text_content=text_body or None,
            sender={"email": self.from_email, "name": self.from_name},
            headers=self._headers(headers),
        )
        if self.reply_to:
            email.reply_to = {"email": self.reply_to}

        response = await self._submit(email, len(recipients))
        logger.info(
            "brevo_chunk_sent",
            recipient_count=len(recipients),
            message_id=getattr(response, "message_id", None),
        )
        # The API accepts or rejects the whole message.
        return []
