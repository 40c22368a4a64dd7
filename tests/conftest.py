"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- HTTP test client with DB / session-factory / payment-gateway overrides
- Fake Redis (realtime pub/sub)
- Test data factories (users, generations, edits, models, packages, payments)
"""
import json
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.database import Base, get_db, get_session_factory, utcnow
from app.db.models.ai_model import AIModel, ModelStatus
from app.db.models.credit_purchase import CreditPurchase, CreditPurchaseStatus
from app.db.models.edit_history import EditHistory, EDIT_JOB_ID_META_KEY
from app.db.models.generation import Generation, GenerationKind
from app.db.models.media_record import MediaStatus, generate_id
from app.db.models.payment import Payment, PaymentStatus, PaymentType
from app.db.models.user import User, Plan, BillingCycle, SubscriptionStatus
from app.db.models.user_package import UserPackage, PackageStatus
from app.db.models.video_generation import VideoGeneration
from app.domain.services.payment_gateway_client import get_payment_gateway
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


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
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(db_session: AsyncSession):
    """
    factory לעיבוד ברקע שמחזיר את session הבדיקה.

    ב-ASGITransport ה-BackgroundTasks רצים לפני ש-client.post חוזר,
    כך שהבדיקה רואה את תוצאת העיבוד מיד אחרי הבקשה.
    """
    @asynccontextmanager
    async def _factory():
        yield db_session

    return _factory


@pytest.fixture
def mock_gateway():
    """Mock ל-AsaasClient (get_subscription / update_subscription_value)"""
    gateway = AsyncMock()
    gateway.get_subscription = AsyncMock(return_value={})
    gateway.update_subscription_value = AsyncMock(return_value={})
    return gateway


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, session_factory, mock_gateway):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payment_gateway] = lambda: mock_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Webhook secrets
# ============================================================================

TEST_ASAAS_TOKEN = "asaas-test-token"
TEST_ASTRIA_SECRET = "astria-test-secret"
# whsec_ + base64("replicate-test-signing-key")
TEST_REPLICATE_SECRET = "whsec_cmVwbGljYXRlLXRlc3Qtc2lnbmluZy1rZXk="
TEST_ADMIN_API_KEY = "admin-test-key"


@pytest.fixture(autouse=True)
def webhook_secrets():
    """סודות webhook ומפתח אדמין קבועים לכל הבדיקות"""
    with patch.object(settings, "ASAAS_WEBHOOK_TOKEN", TEST_ASAAS_TOKEN), \
         patch.object(settings, "ASTRIA_WEBHOOK_SECRET", TEST_ASTRIA_SECRET), \
         patch.object(settings, "REPLICATE_WEBHOOK_SECRET", TEST_REPLICATE_SECRET), \
         patch.object(settings, "REPLICATE_WEBHOOK_ALLOW_INVALID_SIGNATURE", False), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield


# ============================================================================
# Fake Redis
# ============================================================================


class FakeRedis:
    """תחליף ל-Redis לבדיקות — שומר את ההודעות שפורסמו לכל ערוץ."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.fail_publish = False

    async def ping(self) -> bool:
        return True

    async def publish(self, channel: str, message: str) -> int:
        if self.fail_publish:
            from redis.exceptions import ConnectionError as RedisConnectionError
            raise RedisConnectionError("redis down")
        self.published.append((channel, json.loads(message)))
        return 1

    def messages_of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [message for _, message in self.published if message["type"] == event_type]

    async def aclose(self) -> None:
        self.published.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Test Data Factories
# ============================================================================


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        id: str | None = None,
        email: str | None = None,
        asaas_customer_id: str | None = None,
        plan: Plan | None = None,
        billing_cycle: BillingCycle | None = None,
        subscription_status: SubscriptionStatus = SubscriptionStatus.NONE,
        subscription_id: str | None = None,
        credits_limit: int = 0,
        credits_used: int = 0,
        credits_balance: int = 0,
    ) -> User:
        user = User(
            id=id or generate_id(),
            email=email,
            asaas_customer_id=asaas_customer_id,
            plan=plan,
            billing_cycle=billing_cycle,
            subscription_status=subscription_status,
            subscription_id=subscription_id,
            credits_limit=credits_limit,
            credits_used=credits_used,
            credits_balance=credits_balance,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def generation_factory(db_session: AsyncSession):
    """Factory for creating test generations / upscales"""
    async def _create_generation(
        user_id: str,
        id: str | None = None,
        job_id: str | None = None,
        status: MediaStatus = MediaStatus.PROCESSING,
        credits_used: int = 10,
        credits_refunded: bool = False,
        kind: GenerationKind = GenerationKind.GENERATION,
        prompt: str | None = "retrato profissional",
        package_id: str | None = None,
    ) -> Generation:
        generation = Generation(
            id=id or generate_id(),
            user_id=user_id,
            job_id=job_id,
            status=status,
            credits_used=credits_used,
            credits_refunded=credits_refunded,
            kind=kind,
            prompt=prompt,
            package_id=package_id,
        )
        db_session.add(generation)
        await db_session.commit()
        await db_session.refresh(generation)
        return generation

    return _create_generation


@pytest.fixture
def edit_factory(db_session: AsyncSession):
    """Factory for creating test edits (job id lives in meta)"""
    async def _create_edit(
        user_id: str,
        job_id: str | None = None,
        status: MediaStatus = MediaStatus.PROCESSING,
        credits_used: int = 5,
        created_minutes_ago: int = 0,
    ) -> EditHistory:
        edit = EditHistory(
            user_id=user_id,
            status=status,
            operation="edit",
            credits_used=credits_used,
            meta={EDIT_JOB_ID_META_KEY: job_id} if job_id else {},
            created_at=utcnow() - timedelta(minutes=created_minutes_ago),
        )
        db_session.add(edit)
        await db_session.commit()
        await db_session.refresh(edit)
        return edit

    return _create_edit


@pytest.fixture
def model_factory(db_session: AsyncSession):
    """Factory for creating test AI models (training)"""
    async def _create_model(
        user_id: str,
        job_id: str | None = None,
        status: ModelStatus = ModelStatus.TRAINING,
        credits_used: int = 100,
        name: str = "Meu modelo",
    ) -> AIModel:
        model = AIModel(
            user_id=user_id,
            job_id=job_id,
            status=status,
            credits_used=credits_used,
            name=name,
        )
        db_session.add(model)
        await db_session.commit()
        await db_session.refresh(model)
        return model

    return _create_model


@pytest.fixture
def video_factory(db_session: AsyncSession):
    """Factory for creating test video generations"""
    async def _create_video(
        user_id: str,
        job_id: str | None = None,
        status: MediaStatus = MediaStatus.PROCESSING,
        credits_used: int = 50,
    ) -> VideoGeneration:
        video = VideoGeneration(
            user_id=user_id,
            job_id=job_id,
            status=status,
            credits_used=credits_used,
        )
        db_session.add(video)
        await db_session.commit()
        await db_session.refresh(video)
        return video

    return _create_video


@pytest.fixture
def package_factory(db_session: AsyncSession):
    """Factory for creating test user packages"""
    async def _create_package(
        user_id: str,
        status: PackageStatus = PackageStatus.GENERATING,
        created_minutes_ago: int = 0,
    ) -> UserPackage:
        package = UserPackage(
            user_id=user_id,
            status=status,
            created_at=utcnow() - timedelta(minutes=created_minutes_ago),
        )
        db_session.add(package)
        await db_session.commit()
        await db_session.refresh(package)
        return package

    return _create_package


@pytest.fixture
def payment_factory(db_session: AsyncSession):
    """Factory for creating test payment records"""
    async def _create_payment(
        user_id: str,
        type: PaymentType = PaymentType.SUBSCRIPTION,
        status: PaymentStatus = PaymentStatus.PENDING,
        value: Decimal = Decimal("89.00"),
        plan_type: Plan | None = None,
        billing_cycle: BillingCycle | None = None,
        asaas_payment_id: str | None = None,
        asaas_checkout_id: str | None = None,
        subscription_id: str | None = None,
        needs_price_update: bool = False,
        original_price: Decimal | None = None,
    ) -> Payment:
        payment = Payment(
            user_id=user_id,
            type=type,
            status=status,
            value=value,
            plan_type=plan_type,
            billing_cycle=billing_cycle,
            asaas_payment_id=asaas_payment_id,
            asaas_checkout_id=asaas_checkout_id,
            subscription_id=subscription_id,
            needs_price_update=needs_price_update,
            original_price=original_price,
        )
        db_session.add(payment)
        await db_session.commit()
        await db_session.refresh(payment)
        return payment

    return _create_payment


@pytest.fixture
def credit_purchase_factory(db_session: AsyncSession):
    """Factory for creating test credit purchases"""
    async def _create_purchase(
        user_id: str,
        credit_amount: int = 100,
        status: CreditPurchaseStatus = CreditPurchaseStatus.PENDING,
        asaas_payment_id: str | None = None,
        asaas_checkout_id: str | None = None,
        value: Decimal = Decimal("29.90"),
    ) -> CreditPurchase:
        purchase = CreditPurchase(
            user_id=user_id,
            credit_amount=credit_amount,
            status=status,
            asaas_payment_id=asaas_payment_id,
            asaas_checkout_id=asaas_checkout_id,
            value=value,
        )
        db_session.add(purchase)
        await db_session.commit()
        await db_session.refresh(purchase)
        return purchase

    return _create_purchase


# ============================================================================
# Sample Test Data
# ============================================================================


@pytest.fixture
async def sample_user(user_factory) -> User:
    """משתמש עם מנוי STARTER פעיל: 500 קרדיטים, 100 נוצלו"""
    return await user_factory(
        id="u1",
        email="u1@example.com",
        asaas_customer_id="cus_1",
        plan=Plan.STARTER,
        billing_cycle=BillingCycle.MONTHLY,
        subscription_status=SubscriptionStatus.ACTIVE,
        credits_limit=500,
        credits_used=100,
    )


# הערה: אין צורך ב-autouse fixture לניקוי WebhookEvent (idempotency) —
# כל בדיקה מקבלת DB in-memory חדש דרך async_engine (function-scoped).
