import os
import tempfile

# the FastAPI app binds its engine at import time
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/api.db")

import pytest

from claimhub.db import Base, make_engine, make_sessionmaker
from claimhub.identity import IdentityProvider
from claimhub.store import DataStore

USER_A = "a" * 28
USER_B = "b" * 28
DEVICE_1 = "a1b2c3d4e5f60718293a4b5c6d7e8f90"
DEVICE_2 = "0f1e2d3c4b5a69788796a5b4c3d2e1f0"
DEVICE_3 = "ABCDEF0123456789abcdef0123456789"

PROVIDER_SECRET = "provider-secret"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'claimhub.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return DataStore(session_factory)


@pytest.fixture
def provider(session_factory):
    return IdentityProvider(session_factory, secret="test-secret", providers={"example.com": PROVIDER_SECRET})


async def add_device_info(store, device_id, **info):
    await store.set(f"devices/{device_id}/info", {"deviceId": device_id, "model": "crown", **info})
