import asyncio

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from dispatch_engine.core.config import settings
from dispatch_engine.core.identity import Role, encode_actor
from dispatch_engine.core.init_db import init_db
from dispatch_engine.main import create_app
from dispatch_engine.services.core import DispatchCore

# Bishkek city centre
BASE_LAT = 42.8746
BASE_LNG = 74.5698

ORDER_DETAILS = {
    "content": "Two boxes of documents",
    "dropoff_address": "Chui Avenue 120",
    "dropoff_lat": BASE_LAT,
    "dropoff_lng": BASE_LNG,
    "payment_method": "cash",
    "amount": 35000,
}


class Recorder:
    """Realtime subscriber that keeps everything it receives."""

    def __init__(self):
        self.events = []

    async def send(self, event):
        self.events.append(event)

    def of_type(self, kind):
        return [event for event in self.events if event["type"] == kind]


@pytest.fixture
def recorder():
    return Recorder


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def config():
    # Long timers by default so they never fire in the middle of a test
    return settings.model_copy(
        update={
            "DISPATCH_OFFER_TIMEOUT_SECONDS": 30.0,
            "DISPATCH_REQUERY_INITIAL_SECONDS": 30.0,
            "DISPATCH_REQUERY_MAX_SECONDS": 60.0,
            "RETRY_BASE_DELAY_SECONDS": 0.01,
        }
    )


@pytest.fixture
async def core(session_factory, config):
    core = DispatchCore(session_factory, config)
    await core.start()
    yield core
    await core.stop()


@pytest.fixture
def online_driver(core):
    """Puts a driver at ``offset`` degrees north of the base point and makes them available."""

    async def make(driver_id, offset=0.005, core_=None):
        target = core_ or core
        await target.presence.update_location(driver_id, BASE_LAT + offset, BASE_LNG)
        return await target.presence.set_status(driver_id, "available")

    return make


@pytest.fixture
def place_order(core):
    async def make(client_id="client-1", core_=None, **overrides):
        target = core_ or core
        order = await target.lifecycle.create_order(client_id, {**ORDER_DETAILS, **overrides})
        await target.scheduler.drain()
        return order

    return make


@pytest.fixture
def wait_for():
    async def wait(predicate, timeout=5.0, interval=0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await predicate():
                return
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return wait


def token_for(actor_id, role):
    return encode_actor(actor_id, role)


def auth(actor_id, role):
    return {"Authorization": f"Bearer {token_for(actor_id, role)}"}


@pytest.fixture
def headers():
    return {
        "client": auth("client-1", Role.CLIENT),
        "other_client": auth("client-2", Role.CLIENT),
        "driver": auth("d1", Role.DRIVER),
        "driver2": auth("d2", Role.DRIVER),
        "operator": auth("op-1", Role.OPERATOR),
    }


@pytest.fixture
async def api(core):
    app = create_app(core=core)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
