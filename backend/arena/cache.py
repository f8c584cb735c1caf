"""
Redis cache manager for ranked standings.

The cache is advisory: every miss, error or unavailable Redis is reported to
the caller as "no value" so it recomputes from the standings store. Keys follow
the ``scope:identifier:top<N>`` format and values are JSON arrays of ranked
entries.
"""
import json
import logging
import redis
from typing import Optional, Any
from arena.config import get_settings

logger = logging.getLogger(__name__)


def top_key(scope: str, identifier: str, size: int) -> str:
    """Build a ``scope:identifier:top<N>`` cache key."""
    return f"{scope}:{identifier}:top{size}"


GLOBAL_TOP_KEY = top_key("leaderboard", "global", 100)
CURRENT_TOURNAMENT_KEY = "tournament:current"


def tournament_top_key(tournament_id: str, size: int) -> str:
    return top_key("tournament", tournament_id, size)


def player_stats_key(user_id: str) -> str:
    return f"tournament:player_stats:{user_id}"


class CacheManager:
    """
    Redis cache manager with connection pooling and error handling.

    Features:
    - Connection pooling for high concurrency
    - Automatic JSON serialization/deserialization
    - Graceful degradation when Redis is unavailable
    - Pattern-based cache invalidation
    """

    def __init__(self, redis_client=None, redis_url: Optional[str] = None):
        """
        Initialize the Redis client.

        Args:
            redis_client: Pre-built client (used by tests); skips URL setup
            redis_url: Connection URL, defaults to ``settings.redis_url``
        """
        if redis_client is not None:
            self.redis_client = redis_client
            return

        url = redis_url or get_settings().redis_url
        try:
            self.redis_client = redis.from_url(
                url,
                decode_responses=True,
                max_connections=50,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True
            )
            # Test connection
            self.redis_client.ping()
            logger.info(f"Redis cache initialized: {url}")
        except Exception as e:
            logger.error(f"Failed to initialize Redis cache: {str(e)}")
            self.redis_client = None

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Args:
            key: Cache key to retrieve

        Returns:
            Deserialized value if found, None otherwise
        """
        if not self.redis_client:
            return None

        try:
            value = self.redis_client.get(key)
            if value:
                return json.loads(value)
            return None
        except redis.RedisError as e:
            logger.warning(f"Cache get error for key '{key}': {str(e)}")
            return None
        except json.JSONDecodeError as e:
            logger.error(f"Cache deserialization error for key '{key}': {str(e)}")
            return None
        except Exception as e:
            logger.error(f"Unexpected cache get error: {str(e)}", exc_info=True)
            return None

    def set(self, key: str, value: Any, ttl: int) -> bool:
        """
        Set value in cache with TTL.

        Args:
            key: Cache key
            value: Value to cache (will be JSON serialized)
            ttl: Time to live in seconds

        Returns:
            True if successful, False otherwise
        """
        if not self.redis_client:
            return False

        try:
            serialized = json.dumps(value, default=str)  # Handle datetime objects
            return bool(self.redis_client.setex(key, ttl, serialized))
        except redis.RedisError as e:
            logger.warning(f"Cache set error for key '{key}': {str(e)}")
            return False
        except (TypeError, ValueError) as e:
            logger.error(f"Cache serialization error for key '{key}': {str(e)}")
            return False
        except Exception as e:
            logger.error(f"Unexpected cache set error: {str(e)}", exc_info=True)
            return False

    def delete(self, *keys: str) -> int:
        """
        Delete one or more keys from cache.

        Args:
            *keys: Variable number of cache keys to delete

        Returns:
            Number of keys deleted
        """
        if not self.redis_client or not keys:
            return 0

        try:
            return self.redis_client.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Cache delete error: {str(e)}")
            return 0
        except Exception as e:
            logger.error(f"Unexpected cache delete error: {str(e)}", exc_info=True)
            return 0

    def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching pattern.

        Uses SCAN so large keyspaces are not blocked.

        Args:
            pattern: Redis key pattern (e.g., "tournament:abc:*")

        Returns:
            Number of keys deleted
        """
        if not self.redis_client:
            return 0

        try:
            keys = list(self.redis_client.scan_iter(match=pattern, count=500))
            if keys:
                deleted = self.redis_client.delete(*keys)
                logger.debug(f"Deleted {deleted} keys matching pattern '{pattern}'")
                return deleted
            return 0
        except redis.RedisError as e:
            logger.warning(f"Cache delete_pattern error for '{pattern}': {str(e)}")
            return 0
        except Exception as e:
            logger.error(f"Unexpected cache delete_pattern error: {str(e)}", exc_info=True)
            return 0

    def invalidate_tournament(self, tournament_id: str) -> None:
        """Drop every cached page of one tournament's leaderboard."""
        deleted = self.delete_pattern(f"tournament:{tournament_id}:*")
        logger.debug(f"Invalidated tournament cache for {tournament_id} ({deleted} keys)")

    def invalidate_player(self, user_id: str) -> None:
        self.delete(player_stats_key(user_id))

    def ping(self) -> bool:
        """
        Check if Redis is available.

        Returns:
            True if Redis is reachable, False otherwise
        """
        if not self.redis_client:
            return False

        try:
            return bool(self.redis_client.ping())
        except Exception:
            return False
