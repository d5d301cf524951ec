"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- FakeRedis in place of the shared Redis client
- Scripted LLM / embedding providers
- Test data factories (knowledge, examples, follow-up configs, buffered messages)
"""
import json
from datetime import datetime
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import Response
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.exceptions import LLMProviderError
from app.db.database import Base, get_db, utcnow
from app.db.models.contact import Contact
from app.db.models.conversation_session import ConversationSession
from app.db.models.conversation_example import ConversationExample, ExampleCategory
from app.db.models.followup_config import FollowupConfig, FollowupConfigType
from app.db.models.knowledge_entry import KnowledgeEntry
from app.domain.schemas import NormalizedMessage, SessionKey
from app.domain.services.conversation_engine import ConversationEngine, EngineDependencies
from app.domain.services.llm.base_provider import (
    BaseEmbeddingProvider,
    BaseLLMProvider,
    LLMRequest,
    LLMResponse,
    TokenUsage,
)
from app.domain.services.prompt_builder import BusinessProfile
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# No custom event_loop fixture: pytest-asyncio handles it with asyncio_mode=auto


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Mock External Services
# ============================================================================

def make_http_response(status_code: int = 200, payload: dict | None = None, text: str = "") -> MagicMock:
    response = MagicMock(spec=Response)
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = text or json.dumps(payload or {})
    return response


@pytest.fixture
def mock_http_client():
    """Patch httpx.AsyncClient; set ``.post.return_value`` per test"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=make_http_response(200, {}))
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)

        mock_client.return_value = mock_instance

        yield mock_instance


class ScriptedLLMProvider(BaseLLMProvider):
    """
    Returns the scripted outputs in order; an Exception entry is raised.
    The last entry repeats once the script runs out.
    """

    def __init__(self, outputs: list, model: str = "gemini-2.5-flash"):
        self.outputs = list(outputs)
        self.requests: list[LLMRequest] = []
        self._model = model

    @property
    def name(self) -> str:
        return "scripted"

    @property
    def model(self) -> str:
        return self._model

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def generate_response(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.outputs) - 1)
        output = self.outputs[index]
        if isinstance(output, Exception):
            raise output
        return LLMResponse(
            content=output,
            usage=TokenUsage(prompt_tokens=100, completion_tokens=20, total_tokens=120),
            model=self._model,
            provider="scripted",
        )


class StaticEmbeddingProvider(BaseEmbeddingProvider):

    def __init__(self, vector: list[float] | None = None, error: Exception | None = None):
        self.vector = vector or [1.0, 0.0, 0.0]
        self.error = error
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "static"

    @property
    def model(self) -> str:
        return "text-embedding-3-small"

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    async def generate_embedding(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.error:
            raise self.error
        return self.vector


def model_reply(*responses: str, **fields) -> str:
    """A well-formed fenced JSON reply as the model is asked to produce it"""
    return "```json\n" + json.dumps({"responses": list(responses), **fields}) + "\n```"


def llm_error(message: str = "upstream 503") -> LLMProviderError:
    return LLMProviderError("scripted", message)


@pytest.fixture
def llm_provider():
    return ScriptedLLMProvider([model_reply("¡Hola! ¿En qué te puedo ayudar?")])


@pytest.fixture
def embedding_provider():
    return StaticEmbeddingProvider()


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send_escalation_alert = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def engine_factory(db_session, embedding_provider, notifier):
    """Build a ConversationEngine around scripted providers, no retry delay"""
    def _create(llm_provider: BaseLLMProvider, **overrides) -> ConversationEngine:
        deps = EngineDependencies(
            llm_provider=llm_provider,
            embedding_provider=overrides.pop("embedding_provider", embedding_provider),
            media_service=overrides.pop("media_service", None),
            notifier=overrides.pop("notifier", notifier),
            usage_logger=overrides.pop("usage_logger", None),
            business=BusinessProfile(name="Parallelo", description="Trading accounts", language="Spanish"),
        )
        overrides.setdefault("retry_delay_seconds", 0)
        return ConversationEngine(db_session, deps, **overrides)

    return _create


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def session_key() -> SessionKey:
    return SessionKey(
        channel_type="whatsapp",
        channel_id="1098765432",
        channel_user_id="5215512345678",
    )


_message_counter = 0


def make_message(content: str | None = "Hola", **kwargs) -> NormalizedMessage:
    global _message_counter
    _message_counter += 1
    kwargs.setdefault("id", f"wamid.test{_message_counter}")
    kwargs.setdefault("timestamp", datetime(2026, 1, 15, 12, 0, 0))
    return NormalizedMessage(content=content, **kwargs)


@pytest.fixture
def conversation_factory(db_session: AsyncSession):
    """Contact + session pair for a channel identity"""
    async def _create(
        channel_user_id: str = "5215512345678",
        current_state: str = "initial",
        first_name: str | None = "Ana",
        channel_type: str = "whatsapp",
        **session_fields,
    ) -> tuple[Contact, ConversationSession]:
        contact = Contact(
            channel_type=channel_type,
            channel_user_id=channel_user_id,
            first_name=first_name,
            phone=channel_user_id,
        )
        db_session.add(contact)
        await db_session.flush()

        session_fields.setdefault("context", {})
        session = ConversationSession(
            contact_id=contact.id,
            channel_type=channel_type,
            channel_id="1098765432",
            channel_user_id=channel_user_id,
            current_state=current_state,
            **session_fields,
        )
        db_session.add(session)
        await db_session.commit()
        await db_session.refresh(contact)
        await db_session.refresh(session)
        return contact, session

    return _create


@pytest.fixture
def knowledge_factory(db_session: AsyncSession):
    async def _create(
        title: str = "What is a funded account?",
        answer: str = "A funded account lets you trade our capital.",
        category: str = "general",
        embedding: list[float] | None = None,
        is_active: bool = True,
    ) -> KnowledgeEntry:
        entry = KnowledgeEntry(
            title=title,
            answer=answer,
            category=category,
            embedding=embedding,
            is_active=is_active,
        )
        db_session.add(entry)
        await db_session.commit()
        await db_session.refresh(entry)
        return entry

    return _create


@pytest.fixture
def example_factory(db_session: AsyncSession):
    async def _create(
        example_id: str = "ex-001",
        primary_state: str = "initial",
        category: ExampleCategory = ExampleCategory.HAPPY_PATH,
        messages: list[dict] | None = None,
    ) -> ConversationExample:
        example = ConversationExample(
            example_id=example_id,
            scenario="New lead asks about accounts",
            category=category,
            outcome="registered",
            primary_state=primary_state,
            state_flow=[primary_state, "qualifying"],
            messages=messages or [
                {"role": "customer", "content": "Hola, info por favor", "state": primary_state},
                {"role": "agent", "content": "¡Hola! ¿Ya has operado antes?", "state": primary_state},
            ],
        )
        db_session.add(example)
        await db_session.commit()
        await db_session.refresh(example)
        return example

    return _create


@pytest.fixture
def followup_config_factory(db_session: AsyncSession):
    async def _create(
        name: str = "nudge_short",
        content: str = "Hola {{name}}!",
        config_type: FollowupConfigType = FollowupConfigType.TEXT,
        variables_config: list[dict] | None = None,
    ) -> FollowupConfig:
        config = FollowupConfig(
            name=name,
            content=content,
            config_type=config_type,
            variables_config=variables_config or [],
        )
        db_session.add(config)
        await db_session.commit()
        await db_session.refresh(config)
        return config

    return _create


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """In-memory stand-in for Redis with TTL bookkeeping"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if absent) and EX (seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = value
        self._ttls[key] = ttl

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis everywhere it was imported"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.state_machine.manager.get_redis", _get_fake_redis), \
         patch("app.domain.services.notification_service.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture
def now() -> datetime:
    return utcnow()
