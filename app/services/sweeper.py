"""Expiry sweeper — periodically marks timed-out pending requests as expired.

Purely cosmetic for listings: ``respond`` and the room access guard check
expiry lazily, so skipping or overlapping runs never affects correctness.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.services.requests import sweep_expired

logger = logging.getLogger(__name__)


async def run_sweep(session_factory: async_sessionmaker, now: Optional[datetime] = None) -> int:
    """One sweep pass in its own session."""
    async with session_factory() as db:
        count = await sweep_expired(db, now=now)
    if count:
        logger.info(f"Expiry sweep moved {count} pending chat request(s) to expired")
    return count


async def sweeper_loop(session_factory: async_sessionmaker, interval: float) -> None:
    """Run ``run_sweep`` every ``interval`` seconds until cancelled."""
    logger.info(f"Expiry sweeper started (every {interval}s)")
    while True:
        try:
            await run_sweep(session_factory)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Expiry sweep failed; will retry next interval")
        await asyncio.sleep(interval)
