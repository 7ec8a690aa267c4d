import asyncio
from types import SimpleNamespace

import pytest

from dispatch_engine.core.config import settings
from dispatch_engine.core.errors import StaleOfferError, UnavailableError
from dispatch_engine.core.identity import Actor, Role
from dispatch_engine.models.dispatch_offer import DispatchOffer
from dispatch_engine.services.core import DispatchCore

CLIENT = Actor(id="client-1", role=Role.CLIENT)


@pytest.fixture
async def fast_core(session_factory, config):
    fast = DispatchCore(
        session_factory,
        config.model_copy(
            update={
                "DISPATCH_OFFER_TIMEOUT_SECONDS": 0.2,
                "DISPATCH_REQUERY_INITIAL_SECONDS": 30.0,
            }
        ),
    )
    await fast.start()
    yield fast
    await fast.stop()


async def current(core, order_id):
    return await core.lifecycle.get_order(order_id)


async def test_offers_nearest_available_driver(core, online_driver, place_order, session_factory):
    await online_driver("d1", offset=0.005)
    await online_driver("d2", offset=0.010)
    await online_driver("d3", offset=0.001)
    await core.presence.set_status("d3", "offline")

    order = await place_order()

    order = await current(core, order.id)
    assert order.status == "assigned"
    assert order.driver_id == "d1"
    assert core.scheduler.pending_timer(order.id) is not None
    async with session_factory() as session:
        offer = await session.get(DispatchOffer, order.id)
    # Nearest first, offline d3 never listed
    assert offer.candidates == ["d1", "d2"]
    assert offer.offered_driver_id == "d1"
    assert offer.current_index == 0


async def test_pickup_point_takes_precedence(core, online_driver, place_order):
    await online_driver("d1", offset=0.005)
    await online_driver("d2", offset=0.050)

    order = await place_order(pickup_lat=42.8746 + 0.050, pickup_lng=74.5698)

    assert (await current(core, order.id)).driver_id == "d2"


async def test_reject_moves_to_next_candidate(core, online_driver, place_order):
    await online_driver("d1", offset=0.005)
    await online_driver("d2", offset=0.010)
    order = await place_order()

    await core.lifecycle.reject_order(order.id, "d1")
    await core.scheduler.drain()

    order = await current(core, order.id)
    assert order.status == "assigned"
    assert order.driver_id == "d2"


async def test_exhausted_candidates_park_order(core, online_driver, place_order):
    await online_driver("d1")
    order = await place_order()

    await core.lifecycle.reject_order(order.id, "d1")
    await core.scheduler.drain()

    order = await current(core, order.id)
    assert order.status == "pending"
    assert order.driver_id is None
    assert core.scheduler.is_pooled(order.id)
    assert core.scheduler.pending_timer(order.id) is not None


async def test_no_drivers_parks_immediately(core, place_order):
    order = await place_order()

    assert core.scheduler.is_pooled(order.id)
    assert (await current(core, order.id)).status == "pending"


async def test_driver_becoming_available_requeries_pool(core, online_driver, place_order):
    await online_driver("d1")
    order = await place_order()
    await core.lifecycle.reject_order(order.id, "d1")
    await core.scheduler.drain()
    assert core.scheduler.is_pooled(order.id)

    await online_driver("d2", offset=0.02)
    await core.scheduler.drain()

    order = await current(core, order.id)
    assert order.status == "assigned"
    # d1 declined this order earlier and is not asked again
    assert order.driver_id == "d2"
    assert not core.scheduler.is_pooled(order.id)


async def test_driver_holds_one_offer_at_a_time(core, online_driver, place_order):
    await online_driver("d1", offset=0.005)
    await online_driver("d2", offset=0.010)

    first = await place_order()
    second = await place_order()

    assert (await current(core, first.id)).driver_id == "d1"
    assert (await current(core, second.id)).driver_id == "d2"


async def test_offer_times_out_and_moves_on(fast_core, online_driver, place_order, wait_for):
    await online_driver("d1", offset=0.005, core_=fast_core)
    await online_driver("d2", offset=0.010, core_=fast_core)
    order = await place_order(core_=fast_core)
    assert (await current(fast_core, order.id)).driver_id == "d1"

    async def offered_to_d2():
        return (await current(fast_core, order.id)).driver_id == "d2"

    await wait_for(offered_to_d2)

    # d1 missed the deadline
    with pytest.raises(StaleOfferError):
        await fast_core.lifecycle.accept_order(order.id, "d1")

    async def pooled():
        return fast_core.scheduler.is_pooled(order.id)

    await wait_for(pooled)
    order = await current(fast_core, order.id)
    assert order.status == "pending"
    assert order.assigned_at is not None


async def test_accept_clears_dispatch_state(core, online_driver, place_order, session_factory):
    await online_driver("d1")
    order = await place_order()

    await core.lifecycle.accept_order(order.id, "d1")

    assert core.scheduler.pending_timer(order.id) is None
    assert not core.presence.is_candidate("d1")
    async with session_factory() as session:
        assert await session.get(DispatchOffer, order.id) is None


async def test_cancel_stops_timer(core, online_driver, place_order, session_factory):
    await online_driver("d1")
    order = await place_order()
    assert core.scheduler.pending_timer(order.id) is not None

    await core.lifecycle.cancel_order(order.id, CLIENT)

    assert core.scheduler.pending_timer(order.id) is None
    assert not core.scheduler.is_pooled(order.id)
    async with session_factory() as session:
        assert await session.get(DispatchOffer, order.id) is None
    # The driver is free for other orders again
    second = await place_order()
    assert (await current(core, second.id)).driver_id == "d1"


async def test_cancel_pooled_order_stops_requery(core, place_order):
    order = await place_order()
    assert core.scheduler.is_pooled(order.id)

    await core.lifecycle.cancel_order(order.id, CLIENT)

    assert not core.scheduler.is_pooled(order.id)
    assert core.scheduler.pending_timer(order.id) is None


async def test_recover_restores_live_offer(core, online_driver, place_order, session_factory, config):
    await online_driver("d1")
    order = await place_order()
    await core.scheduler.stop()

    restarted = DispatchCore(session_factory, config)
    await restarted.start()
    try:
        assert restarted.scheduler.pending_timer(order.id) is not None
        await restarted.lifecycle.accept_order(order.id, "d1")
        assert restarted.scheduler.pending_timer(order.id) is None
    finally:
        await restarted.stop()


async def test_recover_dispatches_orphaned_pending_orders(core, place_order, session_factory, config):
    order = await place_order()
    await core.scheduler.stop()
    async with session_factory() as session:
        offer = await session.get(DispatchOffer, order.id)
        await session.delete(offer)
        await session.commit()

    restarted = DispatchCore(session_factory, config)
    await restarted.presence.update_location("d1", 42.8746, 74.5698)
    await restarted.presence.set_status("d1", "available")
    await restarted.start()
    try:
        await restarted.scheduler.drain()
        assert (await restarted.lifecycle.get_order(order.id)).driver_id == "d1"
    finally:
        await restarted.stop()


@pytest.fixture
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "RETRY_BASE_DELAY_SECONDS", 0.001)
    monkeypatch.setattr(settings, "RETRY_MAX_DELAY_SECONDS", 0.001)


async def test_candidate_lookup_outage_keeps_order_pooled(core, online_driver, place_order, fast_retries, monkeypatch):
    await online_driver("d1")
    calls = []

    def unavailable(*args, **kwargs):
        calls.append(1)
        raise UnavailableError("driver index unavailable")

    monkeypatch.setattr(core.geo_index, "nearest", unavailable)
    order = await place_order()

    assert len(calls) == settings.RETRY_ATTEMPTS
    order = await current(core, order.id)
    assert order.status == "pending"
    assert order.driver_id is None
    assert core.scheduler.is_pooled(order.id)
    assert core.scheduler.pending_timer(order.id) is not None

    # Lookups work again: the next availability signal dispatches the order
    monkeypatch.undo()
    await core.scheduler.driver_available("d1")
    await core.scheduler.drain()
    assert (await current(core, order.id)).driver_id == "d1"


async def test_assignment_outage_keeps_order_pooled(core, online_driver, place_order, fast_retries, monkeypatch, session_factory):
    await online_driver("d1")

    async def unavailable(order_id, driver_id):
        raise UnavailableError("order store unavailable", order_id=order_id)

    monkeypatch.setattr(core.lifecycle, "assign_candidate", unavailable)
    order = await place_order()

    order = await current(core, order.id)
    assert order.status == "pending"
    assert order.driver_id is None
    assert core.scheduler.is_pooled(order.id)
    assert core.scheduler.pending_timer(order.id) is not None
    async with session_factory() as session:
        offer = await session.get(DispatchOffer, order.id)
    assert offer.requery_attempts == 1
    assert offer.next_requery_at is not None
    # The failed attempt does not hold the driver
    assert core.presence.is_candidate("d1")


async def test_busy_driver_is_not_offered_another_order(core, online_driver, place_order):
    await online_driver("d1")
    first = await place_order()
    await core.lifecycle.accept_order(first.id, "d1")

    second = await place_order()
    await core.scheduler.driver_available("d9")
    await core.scheduler.drain()

    second = await current(core, second.id)
    assert second.status == "pending"
    assert second.driver_id is None
    assert core.scheduler.is_pooled(second.id)


async def test_candidate_busy_since_lookup_is_skipped(core, online_driver, place_order, monkeypatch):
    await online_driver("d1", offset=0.001)
    first = await place_order()
    await core.lifecycle.accept_order(first.id, "d1")
    await online_driver("d2", offset=0.010)

    # Stale view of the index: d1 still looks free and closest
    nearest = core.geo_index.nearest

    def stale_nearest(*args, **kwargs):
        return [SimpleNamespace(driver_id="d1")] + nearest(*args, **kwargs)

    monkeypatch.setattr(core.geo_index, "nearest", stale_nearest)
    monkeypatch.setattr(core.presence, "is_candidate", lambda driver_id: True)

    second = await place_order()

    second = await current(core, second.id)
    assert second.status == "assigned"
    assert second.driver_id == "d2"


async def test_accept_racing_requery_never_doubles_up_driver(core, online_driver, place_order):
    await online_driver("d1")
    first = await place_order()
    second = await place_order()
    # d1 holds the offer for the first order, the second waits in the pool
    assert core.scheduler.is_pooled(second.id)

    await asyncio.gather(
        core.lifecycle.accept_order(first.id, "d1"),
        core.scheduler.driver_available("d9"),
    )
    await core.scheduler.drain()

    assert (await current(core, first.id)).status == "accepted"
    second = await current(core, second.id)
    assert second.status == "pending"
    assert second.driver_id is None


async def test_driver_is_busy_before_offer_hold_is_released(core, online_driver, place_order, monkeypatch):
    await online_driver("d1")
    order = await place_order()
    calls = []
    mark_busy, offer_resolved = core.presence.mark_busy, core.scheduler.offer_resolved

    async def tracking_mark_busy(driver_id):
        calls.append("mark_busy")
        await mark_busy(driver_id)

    async def tracking_offer_resolved(order_id):
        calls.append("offer_resolved")
        await offer_resolved(order_id)

    monkeypatch.setattr(core.presence, "mark_busy", tracking_mark_busy)
    monkeypatch.setattr(core.scheduler, "offer_resolved", tracking_offer_resolved)

    await core.lifecycle.accept_order(order.id, "d1")

    assert calls == ["mark_busy", "offer_resolved"]


async def test_offer_is_pushed_to_driver(core, online_driver, place_order, recorder):
    inbox = recorder()
    await core.hub.register_actor("d1", "driver", "d1-conn", inbox)
    await online_driver("d1")

    order = await place_order()

    offers = inbox.of_type("order_offered")
    assert len(offers) == 1
    assert offers[0]["orderId"] == order.id
    assert offers[0]["data"]["order"]["status"] == "assigned"
    assert offers[0]["data"]["order"]["driverId"] == "d1"
    assert offers[0]["data"]["timeoutSeconds"] == 30.0
    assert offers[0]["data"]["deadline"]


async def test_expired_offer_is_withdrawn_and_passed_on(fast_core, online_driver, place_order, recorder, wait_for):
    first_inbox, second_inbox = recorder(), recorder()
    await fast_core.hub.register_actor("d1", "driver", "c1", first_inbox)
    await fast_core.hub.register_actor("d2", "driver", "c2", second_inbox)
    await online_driver("d1", offset=0.005, core_=fast_core)
    await online_driver("d2", offset=0.010, core_=fast_core)
    order = await place_order(core_=fast_core)

    async def offered_to_d2():
        return bool(second_inbox.of_type("order_offered"))

    await wait_for(offered_to_d2)

    withdrawn = first_inbox.of_type("offer_withdrawn")
    assert withdrawn[0]["data"] == {"orderId": order.id, "reason": "timeout"}
    assert second_inbox.of_type("order_offered")[0]["orderId"] == order.id


async def test_cancelled_offer_is_withdrawn(core, online_driver, place_order, recorder):
    inbox = recorder()
    await core.hub.register_actor("d1", "driver", "c1", inbox)
    await online_driver("d1")
    order = await place_order()

    await core.lifecycle.cancel_order(order.id, CLIENT)

    withdrawn = inbox.of_type("offer_withdrawn")
    assert withdrawn[0]["data"] == {"orderId": order.id, "reason": "order_closed"}


async def test_accepted_offer_is_not_withdrawn(core, online_driver, place_order, recorder):
    inbox = recorder()
    await core.hub.register_actor("d1", "driver", "c1", inbox)
    await online_driver("d1")
    order = await place_order()

    await core.lifecycle.accept_order(order.id, "d1")

    assert inbox.of_type("offer_withdrawn") == []
