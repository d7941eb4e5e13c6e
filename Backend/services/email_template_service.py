# Backend/services/email_template_service.py
"""
Newsletter template rendering.

Uses Jinja2 templates from Backend/templates/emails/: `<name>.html.j2` is
autoescaped, `<name>.txt.j2` is the plain-text part.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.config import Settings
from app.core.logging import get_logger
from app.models.delivery_queue import QueuedPost

logger = get_logger()

DEFAULT_TEMPLATES_DIR = Path(__file__).parent.parent / "templates" / "emails"


def _date_filter(value: Any, format_string: str = "%d %B %Y") -> str:
    """
    Jinja2 filter for formatting dates.

    Accepts datetimes and ISO-8601 strings; anything unparsable is rendered as-is.
    """
    if isinstance(value, datetime):
        return value.strftime(format_string)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime(format_string)
        except ValueError:
            return value
    return ""


@dataclass
class RenderedNewsletter:
    subject: str
    html: str
    text: str


class EmailTemplateService:
    def __init__(
        self,
        templates_dir: Optional[Path] = None,
        *,
        site_url: str = "",
        site_owner: str = "",
        unsubscribe_url: str = "",
    ):
        """
        Args:
            templates_dir: Directory containing email templates. Defaults to Backend/templates/emails/
            site_url: Public site link shown in the footer
            site_owner: Name shown as the newsletter sender in the footer
            unsubscribe_url: Unsubscribe link shown in every message
        """
        self.templates_dir = templates_dir or DEFAULT_TEMPLATES_DIR
        self.site_url = site_url
        self.site_owner = site_owner
        self.unsubscribe_url = unsubscribe_url
        self.env = Environment(
            loader=FileSystemLoader(str(self.templates_dir)),
            autoescape=select_autoescape(["html", "xml", "html.j2"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["date"] = _date_filter

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailTemplateService":
        return cls(
            site_url=settings.SITE_URL,
            site_owner=settings.SITE_OWNER or settings.EMAIL_FROM_NAME,
            unsubscribe_url=settings.UNSUBSCRIBE_URL,
        )

    def _default_context(self) -> Dict[str, Any]:
        return {
            "site_url": self.site_url,
            "site_owner": self.site_owner,
            "unsubscribe_url": self.unsubscribe_url,
            "year": datetime.now().year,
        }

    def render_template(
        self,
        template_name: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, str]:
        """
        Render `<template_name>.html.j2` and `<template_name>.txt.j2`.

        Returns:
            Tuple of (html_body, text_body)
        """
        final_context = self._default_context()
        if context:
            final_context.update(context)

        try:
            html_body = self.env.get_template(f"{template_name}.html.j2").render(**final_context)
        except Exception as e:
            logger.error("template_render_failed", template=template_name, error=str(e), exc_info=True)
            raise

        try:
            text_body = self.env.get_template(f"{template_name}.txt.j2").render(**final_context)
        except Exception as e:
            logger.error("text_template_render_failed", template=template_name, error=str(e), exc_info=True)
            raise

        return html_body, text_body

    def render_newsletter(self, post: QueuedPost) -> RenderedNewsletter:
        html, text = self.render_template("newsletter", {"post": post})
        return RenderedNewsletter(subject=post.title, html=html, text=text)
