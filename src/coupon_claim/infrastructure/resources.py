"""Process-wide resources: database engine, session factory, Redis client.

Built once at application startup and closed at shutdown. Components receive
them explicitly; nothing here is created at import time.
"""

from dataclasses import dataclass

import redis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from coupon_claim.config import Settings
from coupon_claim.infrastructure.database import create_db_engine, create_session_factory
from coupon_claim.infrastructure.replay_guard import create_redis_client

logger = structlog.get_logger(__name__)


@dataclass
class AppResources:
    """Handles shared by all requests."""

    engine: Engine
    session_factory: sessionmaker[Session]
    redis_client: redis.Redis

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppResources":
        engine = create_db_engine(settings.database_url, echo=settings.debug)
        return cls(
            engine=engine,
            session_factory=create_session_factory(engine),
            redis_client=create_redis_client(
                settings.redis_url,
                socket_timeout=settings.redis_socket_timeout_seconds,
            ),
        )

    def check_database(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("database_health_check_failed", error=str(e))
            return False

    def check_redis(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            return False

    def close(self) -> None:
        try:
            self.redis_client.close()
        except RedisError as e:
            logger.warning("redis_close_failed", error=str(e))
        self.engine.dispose()
        logger.info("resources_closed")
