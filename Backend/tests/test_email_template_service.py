from __future__ import annotations

from datetime import datetime

from app.config import Settings
from app.models.delivery_queue import QueuedPost
from services.email_template_service import EmailTemplateService, _date_filter


def _post(**overrides) -> QueuedPost:
    data = dict(
        title="Hello <World>",
        url="https://example.com/blog/hello-world",
        slug="blog/hello-world",
        description="First post & more",
        published_at="2024-01-15T10:00:00.000Z",
        author="Jane",
        categories=["news", "python"],
    )
    data.update(overrides)
    return QueuedPost(**data)


def test_render_newsletter_html_is_escaped():
    service = EmailTemplateService(
        site_url="https://example.com",
        site_owner="Example Blog",
        unsubscribe_url="https://example.com/unsubscribe",
    )

    rendered = service.render_newsletter(_post())

    assert rendered.subject == "Hello <World>"
    assert "Hello &lt;World&gt;" in rendered.html
    assert "First post &amp; more" in rendered.html
    assert 'href="https://example.com/blog/hello-world"' in rendered.html
    assert "15 January 2024" in rendered.html
    assert "news, python" in rendered.html
    assert "https://example.com/unsubscribe" in rendered.html


def test_render_newsletter_text_part():
    service = EmailTemplateService(site_owner="Example Blog", unsubscribe_url="https://example.com/unsubscribe")

    rendered = service.render_newsletter(_post())

    assert "Hello <World>" in rendered.text
    assert "Read the full post: https://example.com/blog/hello-world" in rendered.text
    assert "Unsubscribe: https://example.com/unsubscribe" in rendered.text


def test_render_newsletter_without_optional_fields():
    service = EmailTemplateService()

    rendered = service.render_newsletter(_post(description="", author="", categories=[], published_at=""))

    assert "Unsubscribe" not in rendered.html
    assert "Read the full post" in rendered.html


def test_date_filter():
    assert _date_filter("2024-01-15T10:00:00.000Z") == "15 January 2024"
    assert _date_filter(datetime(2024, 2, 1), "%Y-%m-%d") == "2024-02-01"
    assert _date_filter("yesterday") == "yesterday"
    assert _date_filter(None) == ""


def test_from_settings_falls_back_to_sender_name():
    service = EmailTemplateService.from_settings(
        Settings(EMAIL_FROM_NAME="Example Newsletter", SITE_OWNER="", SITE_URL="https://example.com")
    )

    assert service.site_owner == "Example Newsletter"
    assert service.site_url == "https://example.com"
