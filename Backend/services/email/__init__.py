"""
Email provider package for the newsletter mailer.

Provides abstraction layer for different email providers (SMTP, Brevo).
"""

from .base import BatchSendResult, EmailProvider
from .smtp_provider import SMTPEmailProvider
from .brevo_provider import BrevoEmailProvider

__all__ = [
    "BatchSendResult",
    "EmailProvider",
    "SMTPEmailProvider",
    "BrevoEmailProvider",
]
