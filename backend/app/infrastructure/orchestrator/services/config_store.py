"""
Challenge Configuration Store - read-through cache over the repository

Fresh cache entries are served without I/O. Misses and expired entries are
loaded through a single-flight read so that concurrent lookups for one
challenge cost at most one repository round trip.
"""

from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_none,
)

from app.core.exceptions import RepositoryUnavailableError
from app.domain.challenges.entities import ChallengeDefinition
from app.infrastructure.cache import TTLCache
from app.infrastructure.concurrency import SingleFlight
from app.infrastructure.repository import ChallengeConfigRepository

logger = structlog.get_logger(__name__)


class ChallengeConfigStore:
    """Cached read API for challenge definitions."""

    # One retry on RepositoryUnavailableError before surfacing it
    READ_ATTEMPTS = 2

    def __init__(
        self,
        repository: ChallengeConfigRepository,
        cache: TTLCache[ChallengeDefinition],
    ):
        self._repository = repository
        self._cache = cache
        self._flights: SingleFlight[ChallengeDefinition] = SingleFlight("challenge-config")

    @property
    def cache(self) -> TTLCache[ChallengeDefinition]:
        return self._cache

    async def get(self, challenge_id: str) -> ChallengeDefinition:
        """
        Resolve a challenge definition.

        Args:
            challenge_id: Challenge identifier

        Returns:
            The definition, from cache when fresh

        Raises:
            ChallengeNotFoundError: Unknown challenge
            RepositoryUnavailableError: Repository unreachable after one retry
        """
        definition = self._cache.get(challenge_id)
        if definition is not None:
            return definition
        return await self._flights.do(challenge_id, lambda: self._read_through(challenge_id))

    def invalidate(self, challenge_id: str) -> bool:
        return self._cache.delete(challenge_id)

    async def _read_through(self, challenge_id: str) -> ChallengeDefinition:
        # A flight that finished between our miss and this call may have filled the cache
        definition: Optional[ChallengeDefinition] = self._cache.peek(challenge_id)
        if definition is not None:
            return definition

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RepositoryUnavailableError),
            stop=stop_after_attempt(self.READ_ATTEMPTS),
            wait=wait_none(),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying challenge repository read", challenge_id=challenge_id)
                definition = await self._repository.read(challenge_id)

        self._cache.set(challenge_id, definition)
        logger.debug("Challenge definition cached", challenge_id=challenge_id)
        return definition
