"""
State Machine Manager - loads the active definition and binds it to sessions
"""
import json

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.models.conversation_session import ConversationSession
from app.db.models.state_machine_definition import StateMachineDefinition
from app.state_machine.machine import StateMachine
from app.state_machine.states import DEFAULT_STATE_MACHINE, StateMachineConfig

logger = get_logger(__name__)

_CACHE_KEY = "state_machine:active"


class StateMachineManager:
    """Definition store: active definition from the DB, cached in Redis"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active_definition(self) -> StateMachineConfig:
        cached = await self._read_cache()
        if cached is not None:
            return cached

        result = await self.db.execute(
            select(StateMachineDefinition)
            .where(StateMachineDefinition.is_active == True)  # noqa: E712
            .order_by(StateMachineDefinition.version.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()

        if row is None:
            logger.info("No active state machine stored, using built-in default")
            definition = DEFAULT_STATE_MACHINE
        else:
            definition = StateMachineConfig.model_validate({
                "name": row.name,
                "version": row.version,
                "initial_state": row.initial_state,
                "states": row.states,
            })

        await self._write_cache(definition)
        return definition

    async def build_for_session(self, session: ConversationSession) -> StateMachine:
        definition = await self.get_active_definition()
        return StateMachine.from_session(session, definition)

    async def activate(self, definition: StateMachineConfig) -> StateMachineDefinition:
        """Store ``definition`` as the only active one and drop the cache"""
        result = await self.db.execute(
            select(StateMachineDefinition).where(StateMachineDefinition.is_active == True)  # noqa: E712
        )
        for previous in result.scalars().all():
            previous.is_active = False

        row = StateMachineDefinition(
            name=definition.name,
            version=definition.version,
            initial_state=definition.initial_state,
            states={k: v.model_dump() for k, v in definition.states.items()},
            is_active=True,
        )
        self.db.add(row)
        await self.db.commit()
        await self.invalidate_cache()

        logger.info(
            "State machine definition activated",
            extra_data={"name": definition.name, "version": definition.version}
        )
        return row

    async def invalidate_cache(self) -> None:
        redis = await get_redis()
        await redis.delete(_CACHE_KEY)

    async def _read_cache(self) -> StateMachineConfig | None:
        redis = await get_redis()
        raw = await redis.get(_CACHE_KEY)
        if not raw:
            return None
        try:
            return StateMachineConfig.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(
                "Discarding unreadable cached state machine",
                extra_data={"error": str(e)}
            )
            return None

    async def _write_cache(self, definition: StateMachineConfig) -> None:
        redis = await get_redis()
        await redis.setex(
            _CACHE_KEY,
            settings.STATE_MACHINE_CACHE_TTL_SECONDS,
            definition.model_dump_json(),
        )
