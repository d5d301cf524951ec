"""
Tests for follow-up scheduling, claiming and rendering
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings as hypothesis_settings, strategies as st
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import utcnow
from app.db.models.followup_config import FollowupConfigType
from app.db.models.followup_queue_item import FollowupQueueItem, FollowupStatus
from app.domain.services.followup_service import (
    FINAL_FOLLOWUP_MESSAGE,
    FollowupService,
    calculate_scheduled_time,
    default_followup_message,
    parse_interval_to_minutes,
)
from app.state_machine.states import FollowupStep

SEQUENCE = [
    FollowupStep(interval="15m", config_name="nudge_short"),
    FollowupStep(interval="1d", config_name="nudge_daily"),
    FollowupStep(interval="3d", config_name="nudge_last"),
]


async def _fresh_item(db: AsyncSession, item_id: int) -> FollowupQueueItem:
    result = await db.execute(
        select(FollowupQueueItem)
        .where(FollowupQueueItem.id == item_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _make_due(db: AsyncSession, item_id: int) -> None:
    await db.execute(
        update(FollowupQueueItem)
        .where(FollowupQueueItem.id == item_id)
        .values(scheduled_at=utcnow() - timedelta(minutes=1))
    )
    await db.commit()


class TestIntervalParsing:

    @pytest.mark.unit
    @pytest.mark.parametrize("interval,minutes", [
        ("15m", 15),
        ("2h", 120),
        ("1d", 1440),
        ("3 days", 4320),
        ("1w", 10080),
        ("2 Hours", 120),
        (" 45min ", 45),
    ])
    def test_known_units(self, interval, minutes):
        assert parse_interval_to_minutes(interval) == minutes

    @pytest.mark.unit
    @pytest.mark.parametrize("interval", ["", None, "soon", "10", "5y", "h2", "-1d"])
    def test_unparseable_is_zero(self, interval):
        assert parse_interval_to_minutes(interval) == 0

    @pytest.mark.unit
    @hypothesis_settings(max_examples=100)
    @given(value=st.integers(min_value=0, max_value=10_000), unit=st.sampled_from(["m", "h", "d", "w"]))
    def test_unit_multipliers(self, value, unit):
        factor = {"m": 1, "h": 60, "d": 1440, "w": 10080}[unit]
        assert parse_interval_to_minutes(f"{value}{unit}") == value * factor

    @pytest.mark.unit
    def test_calculate_scheduled_time(self, now):
        assert calculate_scheduled_time("2h", now) == now + timedelta(hours=2)

    @pytest.mark.unit
    def test_default_messages_by_index(self):
        assert default_followup_message(0) != default_followup_message(1)
        assert default_followup_message(7) == FINAL_FOLLOWUP_MESSAGE
        assert default_followup_message(-1) == FINAL_FOLLOWUP_MESSAGE


class TestScheduling:

    @pytest.mark.unit
    async def test_schedule_first_step(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session)
        before = utcnow()

        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)

        assert item is not None
        assert item.sequence_index == 0
        assert item.followup_config_name == "nudge_short"
        assert item.state == "qualifying"
        assert item.status == FollowupStatus.PENDING
        assert item.scheduled_at >= before + timedelta(minutes=15)

    @pytest.mark.unit
    async def test_schedule_advances_index(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session)

        item = await service.schedule_next(session.id, "qualifying", 1, SEQUENCE)

        assert item.sequence_index == 2
        assert item.followup_config_name == "nudge_last"

    @pytest.mark.unit
    async def test_sequence_exhausted(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session)

        assert await service.schedule_next(session.id, "qualifying", 2, SEQUENCE) is None
        assert await service.schedule_next(session.id, "technical_support", -1, []) is None

    @pytest.mark.unit
    async def test_invalid_interval_schedules_nothing(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session)

        item = await service.schedule_next(
            session.id, "qualifying", -1, [FollowupStep(interval="whenever")]
        )

        assert item is None
        assert (await service.get_summary())["total"] == 0

    @pytest.mark.unit
    async def test_cancel_pending_only_touches_pending(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session)
        first = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)
        second = await service.schedule_next(session.id, "qualifying", 0, SEQUENCE)
        await service.mark_sent(first.id)

        cancelled = await service.cancel_pending(session.id)

        assert cancelled == 1
        assert (await _fresh_item(db_session, first.id)).status == FollowupStatus.SENT
        assert (await _fresh_item(db_session, second.id)).status == FollowupStatus.CANCELLED


class TestClaiming:

    @pytest.mark.unit
    async def test_due_items_exclude_future_and_claimed(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session)
        due = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)
        future = await service.schedule_next(session.id, "qualifying", 0, SEQUENCE)
        await _make_due(db_session, due.id)

        items = await service.get_due_items()
        assert [i.id for i in items] == [due.id]
        assert future.id not in [i.id for i in items]

        assert await service.claim(due.id) is True
        assert await service.claim(due.id) is False
        assert await service.get_due_items() == []

    @pytest.mark.unit
    async def test_mark_sent(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)
        await service.claim(item.id)

        await service.mark_sent(item.id)

        stored = await _fresh_item(db_session, item.id)
        assert stored.status == FollowupStatus.SENT
        assert stored.sent_at is not None
        assert stored.processing_started_at is None

    @pytest.mark.unit
    async def test_mark_failed_retries_then_fails(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session, max_retries=2)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)
        await _make_due(db_session, item.id)

        await service.claim(item.id)
        await service.mark_failed(item.id, "WhatsAppError: 500")

        stored = await _fresh_item(db_session, item.id)
        assert stored.status == FollowupStatus.PENDING
        assert stored.retry_count == 1
        assert stored.processing_started_at is None
        assert [i.id for i in await service.get_due_items()] == [item.id]

        await service.claim(item.id)
        await service.mark_failed(item.id, "WhatsAppError: 500")

        stored = await _fresh_item(db_session, item.id)
        assert stored.status == FollowupStatus.FAILED
        assert stored.error_message == "WhatsAppError: 500"
        assert await service.get_due_items() == []

    @pytest.mark.unit
    async def test_cleanup_releases_stale_locks(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session, lock_timeout_seconds=300)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)
        await service.claim(item.id)
        await db_session.execute(
            update(FollowupQueueItem)
            .where(FollowupQueueItem.id == item.id)
            .values(processing_started_at=utcnow() - timedelta(minutes=10))
        )
        await db_session.commit()

        cleanup = await service.cleanup_stale_locks()

        assert cleanup.locks_released == 1
        assert cleanup.dead_lettered == 0
        assert (await _fresh_item(db_session, item.id)).processing_started_at is None

    @pytest.mark.unit
    async def test_cleanup_dead_letters_exhausted_items(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session, max_retries=3)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)
        await db_session.execute(
            update(FollowupQueueItem)
            .where(FollowupQueueItem.id == item.id)
            .values(retry_count=3)
        )
        await db_session.commit()

        cleanup = await service.cleanup_stale_locks()

        assert cleanup.dead_lettered == 1
        assert (await _fresh_item(db_session, item.id)).status == FollowupStatus.FAILED

    @pytest.mark.unit
    async def test_summary(self, db_session: AsyncSession, conversation_factory):
        _, session = await conversation_factory()
        service = FollowupService(db_session)
        sent = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)
        due = await service.schedule_next(session.id, "qualifying", 0, SEQUENCE)
        await service.schedule_next(session.id, "qualifying", 1, SEQUENCE)
        await service.mark_sent(sent.id)
        await _make_due(db_session, due.id)

        summary = await service.get_summary()

        assert summary["sent"] == 1
        assert summary["pending"] == 2
        assert summary["cancelled"] == 0
        assert summary["failed"] == 0
        assert summary["total"] == 3
        assert summary["due"] == 1
        assert summary["processing"] == 0


class TestRendering:

    @pytest.mark.unit
    async def test_text_config_with_path_variable(
        self, db_session: AsyncSession, conversation_factory, followup_config_factory
    ):
        contact, session = await conversation_factory(first_name="Ana")
        await followup_config_factory(
            name="nudge_short",
            content="Hola {{name}}! Sigues en {{session.current_state}}?",
            variables_config=[{"key": "name", "type": "path", "field": "contact.first_name"}],
        )
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)

        rendered = await service.render_message(item, session, contact)

        assert rendered.content == "Hola Ana! Sigues en initial?"
        assert rendered.is_template is False

    @pytest.mark.unit
    async def test_missing_path_uses_default(
        self, db_session: AsyncSession, conversation_factory, followup_config_factory
    ):
        contact, session = await conversation_factory(first_name=None)
        await followup_config_factory(
            content="Hola {{name}}",
            variables_config=[
                {"key": "name", "type": "path", "field": "contact.first_name", "default": "amigo"}
            ],
        )
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)

        rendered = await service.render_message(item, session, contact)

        assert rendered.content == "Hola amigo"

    @pytest.mark.unit
    async def test_context_and_literal_variables(
        self, db_session: AsyncSession, conversation_factory, followup_config_factory
    ):
        contact, session = await conversation_factory(context={"account_type": "pro"})
        await followup_config_factory(
            content="Tu cuenta {{plan}} {{promo}}",
            variables_config=[
                {"key": "plan", "type": "context", "field": "account_type"},
                {"key": "promo", "type": "literal", "value": "-20%"},
            ],
        )
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)

        rendered = await service.render_message(item, session, contact)

        assert rendered.content == "Tu cuenta pro -20%"

    @pytest.mark.unit
    async def test_template_config_collects_parameters(
        self, db_session: AsyncSession, conversation_factory, followup_config_factory
    ):
        contact, session = await conversation_factory(first_name="Luis", current_state="completed")
        await followup_config_factory(
            name="check_in_weekly",
            content="weekly_check_in",
            config_type=FollowupConfigType.TEMPLATE,
            variables_config=[
                {"key": "name", "type": "path", "field": "contact.first_name"},
                {"key": "state", "type": "path", "field": "session.current_state"},
            ],
        )
        service = FollowupService(db_session)
        item = await service.schedule_next(
            session.id, "completed", -1, [FollowupStep(interval="1w", config_name="check_in_weekly")]
        )

        rendered = await service.render_message(item, session, contact)

        assert rendered.is_template is True
        assert rendered.template_name == "weekly_check_in"
        assert rendered.parameters == ["Luis", "completed"]

    @pytest.mark.unit
    async def test_llm_variable_uses_engine(
        self, db_session: AsyncSession, conversation_factory, followup_config_factory
    ):
        contact, session = await conversation_factory()
        await followup_config_factory(
            content="{{hook}}",
            variables_config=[{"key": "hook", "type": "llm", "prompt": "Invite back", "default": "Hola!"}],
        )
        engine = MagicMock()
        engine.generate_followup_variable = AsyncMock(return_value="¿Retomamos?")
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)

        rendered = await service.render_message(item, session, contact, engine)

        assert rendered.content == "¿Retomamos?"
        engine.generate_followup_variable.assert_awaited_once_with(session.id, "Invite back")

    @pytest.mark.unit
    async def test_llm_variable_falls_back_to_default(
        self, db_session: AsyncSession, conversation_factory, followup_config_factory
    ):
        contact, session = await conversation_factory()
        await followup_config_factory(
            content="{{hook}}",
            variables_config=[{"key": "hook", "type": "llm", "prompt": "Invite back", "default": "Hola!"}],
        )
        engine = MagicMock()
        engine.generate_followup_variable = AsyncMock(return_value=None)
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)

        assert (await service.render_message(item, session, contact, engine)).content == "Hola!"
        assert (await service.render_message(item, session, contact)).content == "Hola!"

    @pytest.mark.unit
    async def test_without_config_engine_generates(self, db_session: AsyncSession, conversation_factory):
        contact, session = await conversation_factory()
        engine = MagicMock()
        engine.generate_followup = AsyncMock(return_value="Hola Ana, ¿pudiste revisar la info?")
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)

        rendered = await service.render_message(item, session, contact, engine)

        assert rendered.content == "Hola Ana, ¿pudiste revisar la info?"

    @pytest.mark.unit
    async def test_without_config_or_engine_uses_default_text(
        self, db_session: AsyncSession, conversation_factory
    ):
        contact, session = await conversation_factory()
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", 1, SEQUENCE)

        rendered = await service.render_message(item, session, contact)

        assert rendered.content == FINAL_FOLLOWUP_MESSAGE

    @pytest.mark.unit
    async def test_inactive_config_is_ignored(
        self, db_session: AsyncSession, conversation_factory, followup_config_factory
    ):
        contact, session = await conversation_factory()
        config = await followup_config_factory(content="never sent")
        config.is_active = False
        await db_session.commit()
        service = FollowupService(db_session)
        item = await service.schedule_next(session.id, "qualifying", -1, SEQUENCE)

        rendered = await service.render_message(item, session, contact)

        assert rendered.content == default_followup_message(0)
