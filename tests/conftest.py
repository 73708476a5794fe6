import os
import tempfile
import uuid
from typing import AsyncGenerator

# Settings are read at import time; point them at a throwaway SQLite file first
_TEST_DB_DIR = tempfile.mkdtemp(prefix="roster-import-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/test.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
# SQLite allows a single writer at a time
os.environ.setdefault("BULK_UPLOAD_CONCURRENCY", "1")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.bulk_uploads.credentials import UsernameAllocator
from app.api.v1.bulk_uploads.store import SqlAlchemyRosterStore
from app.auth.models import User
from app.auth.security import create_access_token
from app.core.models import Tenant
from app.db.session import AsyncSessionLocal, Base, engine
from app.main import app

from memory_store import InMemoryRosterStore


@pytest.fixture()
async def setup_test_db() -> AsyncGenerator[None, None]:
    """Create all tables for one test, drop them afterwards."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
async def db_session(setup_test_db) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture()
async def tenant(db_session: AsyncSession) -> Tenant:
    tenant = Tenant(
        organization_code=f"SCH-{uuid.uuid4().hex[:4].upper()}",
        organization_name="Greenfield School",
    )
    db_session.add(tenant)
    await db_session.commit()
    return tenant


@pytest.fixture()
async def admin_user(db_session: AsyncSession, tenant: Tenant) -> User:
    user = User(
        tenant_id=tenant.id,
        first_name="Site",
        last_name="Admin",
        email="admin@greenfield.test",
        role="SUPER_ADMIN",
        source="SYSTEM",
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture()
def sql_store(setup_test_db) -> SqlAlchemyRosterStore:
    return SqlAlchemyRosterStore(AsyncSessionLocal)


@pytest.fixture()
def memory_store() -> InMemoryRosterStore:
    return InMemoryRosterStore()


@pytest.fixture()
def allocator() -> UsernameAllocator:
    """Fresh allocator per test so per-tenant locks never leak between event loops."""
    return UsernameAllocator(max_attempts=5)


def make_token(user: User) -> str:
    return create_access_token(
        subject={
            "sub": str(user.id),
            "user_id": str(user.id),
            "tenant_id": str(user.tenant_id),
            "role": user.role,
        }
    )


@pytest.fixture()
async def client(admin_user: User) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, authenticated as a tenant super admin."""
    headers = {"Authorization": f"Bearer {make_token(admin_user)}"}
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test", headers=headers
    ) as ac:
        yield ac
