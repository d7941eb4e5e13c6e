from __future__ import annotations

import pytest

from app.models.delivery_queue import SentRecord
from services.kv_store import InMemoryKVStore
from services.sent_tracker import SentTracker, encode_url_key
from tests.fixtures import T0

URL = "https://example.com/blog/hello-world"
POST_ID = "blog/hello-world"


def _record() -> SentRecord:
    return SentRecord(url=URL, slug=POST_ID, title="Hello World", sent_at=T0, recipient_count=2)


def test_encode_url_key_matches_uri_component_rules():
    assert encode_url_key(URL) == "https%3A%2F%2Fexample.com%2Fblog%2Fhello-world"
    assert encode_url_key("https://example.com/a b(1)") == "https%3A%2F%2Fexample.com%2Fa%20b(1)"


@pytest.mark.asyncio
async def test_mark_sent_writes_both_records_and_deletes_queue():
    store = InMemoryKVStore()
    tracker = SentTracker(store)
    await store.put("email-queue:blog/hello-world", "{}")

    await tracker.mark_sent(POST_ID, URL, _record(), "email-queue:blog/hello-world")

    assert await store.get("newsletter-sent:blog/hello-world") is not None
    assert await store.get(f"newsletter-sent-url:{encode_url_key(URL)}") is not None
    assert await store.get("email-queue:blog/hello-world") is None
    assert await tracker.already_sent(POST_ID, URL) is True


@pytest.mark.asyncio
async def test_mark_sent_is_idempotent():
    store = InMemoryKVStore()
    tracker = SentTracker(store)

    await tracker.mark_sent(POST_ID, URL, _record(), "email-queue:blog/hello-world")
    await tracker.mark_sent(POST_ID, URL, _record(), "email-queue:blog/hello-world")

    assert await tracker.already_sent(POST_ID, URL) is True
    assert SentRecord.model_validate_json(await store.get(tracker.id_key(POST_ID))).recipient_count == 2


@pytest.mark.asyncio
async def test_not_sent_when_no_record():
    tracker = SentTracker(InMemoryKVStore())

    assert await tracker.already_sent(POST_ID, URL) is False


@pytest.mark.asyncio
async def test_partial_record_counts_as_not_sent():
    store = InMemoryKVStore()
    tracker = SentTracker(store)
    await store.put(tracker.id_key(POST_ID), _record().model_dump_json())

    assert await tracker.already_sent(POST_ID, URL) is False


@pytest.mark.asyncio
async def test_custom_prefixes():
    store = InMemoryKVStore()
    tracker = SentTracker(store, sent_prefix="ns-sent:", sent_url_prefix="ns-url:")

    await tracker.mark_sent(POST_ID, URL, _record(), "email-queue:x")

    assert (await store.list("ns-")).keys == [f"ns-sent:{POST_ID}", f"ns-url:{encode_url_key(URL)}"]
