# Backend/app/workers/dead_letter_admin.py
"""
Dead Letter Admin: inspect and reprocess parked delivery batches.

Commands:
- list              print every dead-letter entry as one JSON line
- clear             delete every dead-letter entry
- requeue KEY       pop KEY and write its queue snapshot back under its queue key

Path: Backend/app/workers/dead_letter_admin.py
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id

configure_logging(service_name="worker")
logger = get_logger()
logger = logger.bind(worker="dead_letter_admin")

THIS_FILE = Path(__file__).resolve()
APP_DIR = THIS_FILE.parent.parent           # .../Backend/app
BACKEND_DIR = APP_DIR.parent                # .../Backend

if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))    # .../Backend

from pydantic import ValidationError

from app.config import Settings, get_settings
from app.models.delivery_queue import DeliveryQueue
from services.db_service import close_pool
from services.dead_letter_service import DeadLetterStore
from services.kv_store import KVStore, create_kv_store


async def list_entries(dead_letters: DeadLetterStore) -> int:
    entries = await dead_letters.get_all()
    for key, entry in entries:
        print(json.dumps({"key": key, **entry.model_dump(mode="json")}))
    logger.info("dead_letter_listed", count=len(entries))
    return len(entries)


async def requeue_entry(dead_letters: DeadLetterStore, store: KVStore, key: str) -> Optional[str]:
    """
    Pop `key` from the inbox and restore its queue so the next run resumes it.

    Returns the queue key written, or None when nothing could be restored.
    """
    item = await dead_letters.retry(key)
    if item is None:
        logger.warning("dead_letter_not_found", key=key)
        return None

    queue_key = item.get("queue_key")
    snapshot = item.get("queue")
    if not queue_key or not isinstance(snapshot, dict):
        logger.error("dead_letter_not_requeueable", key=key, fields=sorted(item.keys()))
        return None

    try:
        queue = DeliveryQueue.model_validate(snapshot)
    except ValidationError as exc:
        logger.error("dead_letter_invalid_queue_snapshot", key=key, error=str(exc))
        return None

    queue.next_send_at = None
    queue.batch_retry_count = 0
    await store.put(queue_key, queue.model_dump_json())
    logger.info("dead_letter_requeued", key=key, queue_key=queue_key, retry_count=item.get("retry_count"))
    return queue_key


async def run_admin(command: str, key: Optional[str] = None, settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    store = create_kv_store(settings)
    dead_letters = DeadLetterStore(store, prefix=settings.PREFIX_DEAD_LETTER, ttl_seconds=settings.DLQ_TTL_SECONDS)

    try:
        with with_run_id():
            if command == "list":
                await list_entries(dead_letters)
                return 0
            if command == "clear":
                deleted = await dead_letters.clear()
                print(json.dumps({"deleted": deleted}))
                return 0
            if command == "requeue":
                if not key:
                    logger.error("dead_letter_requeue_missing_key")
                    return 2
                queue_key = await requeue_entry(dead_letters, store, key)
                print(json.dumps({"key": key, "queue_key": queue_key}))
                return 0 if queue_key else 1
            logger.error("dead_letter_unknown_command", command=command)
            return 2
    finally:
        if settings.KV_BACKEND == "postgres":
            await close_pool()


def main():
    """CLI entry point for the dead-letter admin."""
    parser = argparse.ArgumentParser(description="Dead Letter Admin - inspect and requeue failed batches")
    parser.add_argument("command", choices=["list", "clear", "requeue"])
    parser.add_argument("key", nargs="?", default=None, help="Dead-letter key (requeue only)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_admin(args.command, args.key)))


if __name__ == "__main__":
    main()
