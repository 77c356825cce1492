# backend/reservations/redis_client.py

from redis import Redis

from .config import settings

# None when no Redis is configured: windows are computed on the fly, events are not emitted
redis_client = Redis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None
