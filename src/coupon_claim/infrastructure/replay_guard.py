"""Partner token replay protection backed by Redis.

Each partner token ``jti`` is recorded with a single ``SET key 1 NX EX ttl``.
The first caller creates the key and passes; every later caller within the
TTL finds it and is rejected. There is no read-then-write window.

The guard fails closed: if Redis cannot be reached the exchange is refused
rather than risking a replayed token being accepted.
"""

import redis
import structlog
from redis.exceptions import RedisError

from coupon_claim.domain.errors import JtiReplay, ReplayStoreUnavailable
from coupon_claim.domain.services import IReplayGuard
from coupon_claim.logging_config import redact

logger = structlog.get_logger(__name__)


def create_redis_client(url: str, socket_timeout: float = 2.0) -> redis.Redis:
    """Create a synchronous Redis client for the replay store.

    The client connects lazily; callers ping it at startup or in health checks.
    """
    return redis.Redis.from_url(
        url,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
        decode_responses=True,
        retry_on_timeout=False,
        health_check_interval=30,
    )


class ReplayGuard(IReplayGuard):
    """One-time-use jti registry."""

    def __init__(self, client: redis.Redis, key_prefix: str = "jti:"):
        self.client = client
        self.key_prefix = key_prefix

    def key_for(self, jti: str) -> str:
        return f"{self.key_prefix}{jti}"

    def check_and_record(self, jti: str, ttl_seconds: int) -> None:
        """Atomically record a jti, rejecting it if already present.

        Args:
            jti: Token identifier
            ttl_seconds: How long to remember the jti (floored at 1 second)

        Raises:
            JtiReplay: If the jti was already recorded
            ReplayStoreUnavailable: If Redis fails or times out
        """
        ttl = max(1, int(ttl_seconds))
        try:
            created = self.client.set(self.key_for(jti), "1", ex=ttl, nx=True)
        except RedisError as exc:
            logger.error(
                "replay_store_unavailable",
                jti=redact(jti),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ReplayStoreUnavailable() from exc

        if not created:
            logger.warning("partner_token_replay_rejected", jti=redact(jti))
            raise JtiReplay()
