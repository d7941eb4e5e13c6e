# Backend/services/email_service.py
"""
Newsletter sending facade.

Uses provider pattern to support multiple email providers (SMTP, Brevo).
Providers are built once per invocation from Settings and passed explicitly.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Sequence

from app.config import Settings
from app.core.logging import get_logger
from app.models.delivery_queue import QueuedPost
from services.circuit_breaker import CircuitBreaker
from services.email import BatchSendResult, BrevoEmailProvider, EmailProvider, SMTPEmailProvider
from services.email_template_service import EmailTemplateService

logger = get_logger()


def create_email_provider(
    settings: Settings,
    *,
    breaker: Optional[CircuitBreaker] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> EmailProvider:
    """
    Build the provider selected by EMAIL_PROVIDER ('smtp' or 'brevo').
    """
    common = dict(
        from_name=settings.EMAIL_FROM_NAME,
        reply_to=settings.EMAIL_REPLY_TO,
        unsubscribe_url=settings.UNSUBSCRIBE_URL,
        breaker=breaker,
        sleep=sleep,
    )
    if settings.EMAIL_PROVIDER == "brevo":
        provider: EmailProvider = BrevoEmailProvider(
            api_key=settings.BREVO_API_KEY,
            from_email=settings.EMAIL_FROM_ADDRESS,
            **common,
        )
    else:
        provider = SMTPEmailProvider(
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            smtp_user=settings.SMTP_USER,
            smtp_password=settings.SMTP_PASSWORD,
            from_email=settings.EMAIL_FROM_ADDRESS,
            **common,
        )

    if not provider.is_configured():
        logger.warning("email_provider_not_configured", provider=provider.name)
    return provider


class EmailService:
    """
    Renders a queued post and hands it to the provider as one batch.
    """

    def __init__(self, provider: EmailProvider, templates: EmailTemplateService):
        self.provider = provider
        self.templates = templates

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "EmailService":
        return cls(
            create_email_provider(settings, breaker=breaker, sleep=sleep),
            EmailTemplateService.from_settings(settings),
        )

    @property
    def is_configured(self) -> bool:
        return self.provider.is_configured()

    async def send_newsletter(self, post: QueuedPost, recipients: Sequence[str]) -> BatchSendResult:
        content = self.templates.render_newsletter(post)
        result = await self.provider.send_batch(recipients, content.subject, content.html, content.text)
        logger.info(
            "newsletter_batch_sent",
            provider=self.provider.name,
            slug=post.slug,
            total_sent=result.total_sent,
            total_failed=result.total_failed,
            error=result.error,
        )
        return result
