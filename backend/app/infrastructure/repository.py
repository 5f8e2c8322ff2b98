"""
Challenge Deployer - Challenge Configuration Repository
Redis-backed durable store of challenge definitions with circuit breaker
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog
from pybreaker import CircuitBreaker, CircuitBreakerError
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from app.core.config import Settings
from app.core.exceptions import (
    ChallengeNotFoundError,
    InvalidDefinitionError,
    RepositoryUnavailableError,
)
from app.domain.challenges.entities import ChallengeDefinition

logger = structlog.get_logger(__name__)


class ChallengeConfigRepository(ABC):
    """Read access to durable challenge definitions."""

    @abstractmethod
    async def read(self, challenge_id: str) -> ChallengeDefinition:
        """
        Read one definition.

        Raises:
            ChallengeNotFoundError: No definition stored under challenge_id
            RepositoryUnavailableError: The backing store cannot be reached
        """

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy"}


class RedisChallengeConfigRepository(ChallengeConfigRepository):
    """
    Challenge definitions stored as JSON documents in Redis.

    Documents live under ``{repository_key_prefix}{challenge_id}``. Connection
    failures trip a circuit breaker; while it is open, reads fail fast with
    RepositoryUnavailableError.
    """

    def __init__(self, settings: Settings, client: Optional[Redis] = None):
        """
        Initialize repository.

        Args:
            settings: Application settings
            client: Pre-built Redis client (skips pool creation in connect)
        """
        self._settings = settings
        self._prefix = settings.repository_key_prefix
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = client
        self._breaker = CircuitBreaker(
            fail_max=settings.repository_breaker_fail_max,
            reset_timeout=settings.repository_breaker_reset_timeout,
            name="challenge-repository",
        )

    async def connect(self) -> None:
        """Initialize Redis connection pool."""
        if self._client is not None:
            return

        logger.info(
            "Connecting to challenge repository",
            host=str(self._settings.redis_url).split("@")[-1],
        )

        self._pool = ConnectionPool.from_url(
            str(self._settings.redis_url),
            password=self._settings.redis_password or None,
            max_connections=self._settings.redis_pool_size,
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)

        await self._client.ping()

        logger.info("Challenge repository connection established")

    async def disconnect(self) -> None:
        """Close Redis connection pool."""
        if self._client:
            await self._client.aclose()
        if self._pool:
            await self._pool.disconnect()
        logger.info("Challenge repository connection closed")

    @property
    def client(self) -> Redis:
        """Get Redis client."""
        if self._client is None:
            raise RuntimeError("Challenge repository not connected")
        return self._client

    def key_for(self, challenge_id: str) -> str:
        return f"{self._prefix}{challenge_id}"

    async def read(self, challenge_id: str) -> ChallengeDefinition:
        key = self.key_for(challenge_id)
        try:
            with self._breaker.calling():
                raw = await self.client.get(key)
        except CircuitBreakerError:
            logger.warning("Repository circuit breaker open", key=key)
            raise RepositoryUnavailableError("Challenge repository circuit open")
        except RedisError as e:
            logger.error("Repository read error", key=key, error=str(e))
            raise RepositoryUnavailableError(f"Challenge repository unavailable: {e}") from e

        if raw is None:
            raise ChallengeNotFoundError(challenge_id)

        try:
            document = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Invalid JSON in repository", key=key)
            raise InvalidDefinitionError(challenge_id, "stored document is not valid JSON")

        return ChallengeDefinition.from_dict(challenge_id, document)

    async def write(self, definition: ChallengeDefinition) -> None:
        """Store a definition (admin tooling only)."""
        key = self.key_for(definition.challenge_id)
        payload = definition.to_dict()
        payload.pop("challenge_id")
        try:
            with self._breaker.calling():
                await self.client.set(key, json.dumps(payload))
        except CircuitBreakerError:
            raise RepositoryUnavailableError("Challenge repository circuit open")
        except RedisError as e:
            raise RepositoryUnavailableError(f"Challenge repository unavailable: {e}") from e
        logger.info("Challenge definition stored", key=key)

    async def health_check(self) -> Dict[str, Any]:
        """
        Check Redis health.

        Returns:
            Health status dictionary
        """
        try:
            await self.client.ping()
            return {
                "status": "healthy",
                "breaker": self._breaker.current_state,
            }
        except (RedisError, RuntimeError) as e:
            logger.error("Repository health check failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e),
            }
