"""
Hold expiry sweep.

Periodically releases holds that were not confirmed in time:
slot occupancy goes back to the ledger and the pending booking is
cancelled with reason hold_expired.

Runs as an asyncio task in backend lifespan.
Uses synchronous DB (via asyncio.to_thread).
"""

import asyncio
import logging

from ..config import settings
from .reservations import ReservationCoordinator

logger = logging.getLogger(__name__)


async def hold_expiry_loop(
    coordinator: ReservationCoordinator | None = None,
    interval: float | None = None,
) -> None:
    """
    Periodic loop that expires holds past their expiry.

    Safe to run next to live hold/confirm calls: every hold is expired in its
    own transaction and holds resolved in the meantime are skipped.
    """
    if coordinator is None:
        from ..redis_client import redis_client
        coordinator = ReservationCoordinator(redis=redis_client)
    if interval is None:
        interval = settings.hold_sweep_interval_seconds

    logger.info("hold_expiry_loop started")

    try:
        while True:
            try:
                expired = await asyncio.to_thread(coordinator.expire_holds)
                if expired:
                    logger.info(f"hold_expiry_loop: {expired} hold(s) expired")
            except asyncio.CancelledError:
                logger.info("hold_expiry_loop cancelled")
                raise
            except Exception:
                logger.exception("hold_expiry_loop error")

            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        pass
