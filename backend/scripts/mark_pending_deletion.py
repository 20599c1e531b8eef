"""
Move businesses whose cancellation grace window has elapsed to pending_deletion.

Idempotent: only canceled businesses with deletion_scheduled_at <= now are touched.
Intended for a daily cron.

Usage (from backend/):
  python -m scripts.mark_pending_deletion
"""
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# Ensure backend root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("mark_pending_deletion")


async def main():
    from database import database
    from services.business_store import business_store

    await database.connect()
    try:
        count = await business_store.mark_due_for_deletion(datetime.now(timezone.utc))
        logger.info(f"PENDING_DELETION_SWEEP marked={count}")
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(main())
