from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from card_intake.core.errors import AuthorizationDenied, StorageUnavailable
from card_intake.core.security import CallerIdentity
from card_intake.modules.agents.models import Agent
from card_intake.modules.agents.schemas import AgentStatus

logger = structlog.get_logger()


class AgentRegistry(ABC):
    """Read-only view of the agent registry."""

    @abstractmethod
    async def lookup(self, external_id: str) -> Agent | None:
        """Return the agent registered under ``external_id``, or None."""
        ...


class SqlAgentRegistry(AgentRegistry):
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def lookup(self, external_id: str) -> Agent | None:
        try:
            result = await self._db.execute(
                select(Agent).where(Agent.external_id == external_id)
            )
        except SQLAlchemyError as exc:
            logger.error("Agent lookup failed", external_id=external_id, exc_info=True)
            raise StorageUnavailable() from exc
        return result.scalar_one_or_none()


async def authorize(
    registry: AgentRegistry,
    identity: CallerIdentity,
    centers: Collection[str],
) -> Agent:
    """Resolve the caller to an active agent of a known center.

    Always reads the registry, so a deactivation applies to the very next
    submission.
    """
    agent = await registry.lookup(identity.external_id)
    if agent is None:
        logger.warning("Unauthorized card upload: unknown agent", external_id=identity.external_id)
        raise AuthorizationDenied()

    if agent.status != AgentStatus.active.value:
        logger.warning(
            "Unauthorized card upload: agent not active",
            external_id=identity.external_id,
            status=agent.status,
        )
        raise AuthorizationDenied()

    if agent.center not in centers:
        logger.warning(
            "Unauthorized card upload: unknown center",
            external_id=identity.external_id,
            center=agent.center,
        )
        raise AuthorizationDenied()

    return agent
