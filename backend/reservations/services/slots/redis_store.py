# backend/reservations/services/slots/redis_store.py
"""
Redis cache for Level 1 working windows using Sorted Sets.

Key format: slots:win:{business_id}:{resource_id}:{date}
Value: Sorted Set where member = "{start}/{end}" (UTC, YYYYmmddHHMM),
       score = end_ts (unix timestamp when the window is over).

Query: ZRANGEBYSCORE key {now_ts} +inf → only windows that have not ended.
Sentinel: "__empty__" with score=0 marks "calculated, closed day".
"""

from datetime import date, datetime, timezone
from redis import Redis

from .config import BookingConfig, get_booking_config


EMPTY_SENTINEL = "__empty__"
WINDOW_FORMAT = "%Y%m%d%H%M"


def _ts(value: datetime) -> float:
    """Naive UTC datetime → unix timestamp."""
    return value.replace(tzinfo=timezone.utc).timestamp()


def _decode(member) -> str:
    return member.decode() if isinstance(member, bytes) else member


class SlotsRedisStore:
    """Redis storage wrapper using Sorted Sets for window data."""

    KEY_PREFIX = "slots:win"

    def __init__(self, redis: Redis, config: BookingConfig | None = None):
        self.redis = redis
        self.config = config or get_booking_config()

    def _key(self, business_id: int, resource_id: int, dt: date) -> str:
        return f"{self.KEY_PREFIX}:{business_id}:{resource_id}:{dt.isoformat()}"

    # ── Write ────────────────────────────────────────────────────────────

    def store_day_windows(
        self,
        business_id: int,
        resource_id: int,
        dt: date,
        windows: list[tuple[datetime, datetime]],
    ) -> None:
        """
        Store calculated windows for a day.

        Args:
            windows: List of (start_utc, end_utc) pairs.
                     Empty list → sentinel is stored.
        """
        key = self._key(business_id, resource_id, dt)
        pipe = self.redis.pipeline()

        # Remove old data
        pipe.delete(key)

        if windows:
            mapping = {
                f"{start.strftime(WINDOW_FORMAT)}/{end.strftime(WINDOW_FORMAT)}": _ts(end)
                for start, end in windows
            }
            pipe.zadd(key, mapping)
        else:
            # Closed day: sentinel so EXISTS returns True
            pipe.zadd(key, {EMPTY_SENTINEL: 0})

        pipe.expire(key, self.config.cache_ttl_seconds)
        pipe.execute()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_day_windows(
        self,
        business_id: int,
        resource_id: int,
        dt: date,
        now: datetime,
    ) -> list[tuple[datetime, datetime]] | None:
        """
        Get windows of a day that have not ended yet.

        Returns:
            Sorted list of (start_utc, end_utc), or None on cache miss.
        """
        key = self._key(business_id, resource_id, dt)
        if not self.redis.exists(key):
            return None

        members = self.redis.zrangebyscore(key, _ts(now), "+inf")
        windows = []
        for member in members:
            value = _decode(member)
            if value == EMPTY_SENTINEL:
                continue
            start_str, end_str = value.split("/")
            windows.append((
                datetime.strptime(start_str, WINDOW_FORMAT),
                datetime.strptime(end_str, WINDOW_FORMAT),
            ))
        return sorted(windows)

    # ── Delete ───────────────────────────────────────────────────────────

    def delete_day_windows(
        self,
        business_id: int,
        dates: list[date] | None = None,
    ) -> int:
        """
        Delete cached windows of every resource of a business.

        Args:
            dates: Specific dates, or None to delete all for the business.

        Returns:
            Number of deleted keys.
        """
        if dates:
            patterns = [f"{self.KEY_PREFIX}:{business_id}:*:{dt.isoformat()}" for dt in dates]
        else:
            patterns = [f"{self.KEY_PREFIX}:{business_id}:*"]

        keys = []
        for pattern in patterns:
            keys.extend(self.redis.scan_iter(match=pattern))

        if not keys:
            return 0

        return self.redis.delete(*keys)
