import os

# Set test environment
os.environ["DEBUG"] = "true"
os.environ["SESSION_SECRET"] = "test-session-secret-0123456789abcdef"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ADMIN_EMAILS"] = "admin@example.com"
os.environ["ADMIN_PHONE_NUMBER"] = "+966500000001"
os.environ["OTP_STORE_BACKEND"] = "memory"
for name in (
    "FIREBASE_PROJECT_ID",
    "FIREBASE_CLIENT_EMAIL",
    "FIREBASE_PRIVATE_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "LEGACY_OIDC_ISSUER_URL",
    "LEGACY_OIDC_CLIENT_ID",
):
    os.environ.pop(name, None)

from collections.abc import AsyncGenerator
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import get_settings
from app.database import Base, get_db
from app.main import app
from app.models import User
from app.services.otp_service import InMemoryOtpStore, OtpService, get_otp_service
from app.services.sms_service import SmsGateway, SmsResult, get_sms_gateway
from app.utils.token_codec import TokenCodec, get_token_codec

TEST_DATABASE_URL = "sqlite+aiosqlite://"


class RecordingSmsGateway(SmsGateway):
    """Keeps outgoing messages instead of calling the provider."""

    def __init__(self):
        super().__init__(get_settings())
        self.messages: list[tuple[str, str]] = []

    async def send(self, to: str, body: str) -> SmsResult:
        self.messages.append((to, body))
        return SmsResult(success=True, provider_message_id=f"SM{len(self.messages)}")

    def last_code(self) -> str:
        return self.messages[-1][1][-6:]


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def otp_store() -> InMemoryOtpStore:
    return InMemoryOtpStore()


@pytest.fixture
def sms_gateway() -> RecordingSmsGateway:
    return RecordingSmsGateway()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    otp_store: InMemoryOtpStore,
    sms_gateway: RecordingSmsGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database, OTP and SMS overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_otp_service] = lambda: OtpService(otp_store, get_settings())
    app.dependency_overrides[get_sms_gateway] = lambda: sms_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def codec() -> TokenCodec:
    return get_token_codec()


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a regular user with a unique id."""
    unique_id = uuid4().hex[:12]
    user = User(
        id=f"google_{unique_id}",
        email=f"test-{unique_id}@example.com",
        first_name="Test",
        last_name="User",
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def flagged_admin(db_session: AsyncSession) -> User:
    """A user made admin through the stored flag, not the allow-list."""
    user = User(
        id="google_flagged_admin",
        email="flagged@example.com",
        first_name="Flagged",
        last_name="Admin",
        is_admin=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(test_user: User, codec: TokenCodec) -> dict[str, str]:
    """Create authorization headers for authenticated requests."""
    token = codec.sign({"sub": test_user.id, "email": test_user.email})
    return bearer(token)


@pytest.fixture
def admin_email_headers(codec: TokenCodec) -> dict[str, str]:
    """Self-signed credential for an allow-listed email with no stored user."""
    token = codec.sign({"sub": "google_allowlisted", "email": "Admin@Example.com"})
    return bearer(token)


@pytest.fixture
def oidc_profile() -> dict[str, Any]:
    """Sample userinfo response from an OpenID Connect provider."""
    return {
        "sub": "1234567890",
        "email": "admin@example.com",
        "given_name": "Noura",
        "family_name": "Saleh",
        "picture": "https://example.com/avatar.png",
    }
