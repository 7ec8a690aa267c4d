from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Dict, List, Optional, Set

from sqlalchemy import select

from dispatch_engine.core.config import Settings
from dispatch_engine.core.database import utcnow
from dispatch_engine.core.errors import AlreadyAssignedError, NotFoundError, StaleOfferError, UnavailableError
from dispatch_engine.core.locks import KeyedLocks
from dispatch_engine.core.retry import backoff_delay, retry_async, storage_errors
from dispatch_engine.models.dispatch_offer import DispatchOffer
from dispatch_engine.models.order import Order, OrderStatus
from dispatch_engine.services.geo_index import GeoIndex
from dispatch_engine.services.lifecycle import OrderLifecycleManager, serialize_order
from dispatch_engine.services.presence import PresenceTracker
from dispatch_engine.services.realtime import EventKind, RealtimeHub

logger = logging.getLogger(__name__)


class DispatchScheduler:
    """Finds candidate drivers for pending orders and walks the offer list.

    Per order there is at most one timer: either the deadline of the live
    offer or the next re-query of an order parked in the unassigned pool.
    Timers sleep without holding any lock and carry the order version
    (``epoch``) the offer was made at; the lifecycle manager refuses to
    expire an offer whose epoch is stale.
    """

    def __init__(
        self,
        session_factory,
        lifecycle: OrderLifecycleManager,
        presence: PresenceTracker,
        geo_index: GeoIndex,
        hub: RealtimeHub,
        config: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._presence = presence
        self._geo = geo_index
        self._hub = hub
        self._config = config

        self._order_locks = KeyedLocks()
        self._timers: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        # order id -> driver currently holding the offer, and the reverse
        self._offered: Dict[str, str] = {}
        self._offers_by_driver: Dict[str, str] = {}
        self._pooled: Set[str] = set()

        lifecycle.bind_scheduler(self)
        presence.add_availability_listener(self.driver_available)

    # ------------------------------------------------------------------
    # Hooks called by the lifecycle manager and presence tracker
    # ------------------------------------------------------------------

    async def order_created(self, order_id: str) -> None:
        self._spawn(self._start_dispatch(order_id), f"dispatch:{order_id}")

    async def candidate_declined(self, order_id: str, driver_id: str, reason: str = "rejected") -> None:
        """Explicit reject; the deadline timer is cancelled and the next candidate is tried."""
        self._cancel_timer(order_id)
        self._spawn(self._advance(order_id, driver_id, reason), f"advance:{order_id}")

    async def offer_resolved(self, order_id: str) -> None:
        """The offered driver accepted; the dispatch offer is no longer needed."""
        async with self._order_locks.hold(order_id):
            await self._discard(order_id)

    async def order_closed(self, order_id: str) -> None:
        """Cancelled or failed order: stop offering and stop re-querying."""
        async with self._order_locks.hold(order_id):
            driver_id = self._offered.get(order_id)
            await self._discard(order_id)
        if driver_id is not None:
            await self._withdraw(order_id, driver_id, "order_closed")

    async def driver_available(self, driver_id: str) -> None:
        """A driver became available: pooled orders are re-queried right away."""
        for order_id in list(self._pooled):
            self._cancel_timer(order_id)
            self._pooled.discard(order_id)
            self._spawn(self._start_dispatch(order_id), f"requery:{order_id}")

    # ------------------------------------------------------------------
    # Offer protocol
    # ------------------------------------------------------------------

    async def _start_dispatch(self, order_id: str) -> None:
        async with self._order_locks.hold(order_id):
            try:
                order = await retry_async(self._lifecycle.get_order, order_id)
            except NotFoundError:
                return
            except UnavailableError:
                await self._park(order_id, None)
                return
            if order.status != OrderStatus.PENDING.value:
                return

            offer = await self._load_offer(order_id)
            declined = list(offer.declined) if offer is not None else []
            try:
                candidates = await retry_async(self._find_candidates, order, declined)
            except UnavailableError:
                logger.warning("Candidate lookup for order %s failed, backing off", order_id)
                await self._park(order_id, offer)
                return

            if not candidates:
                await self._park(order_id, offer)
                return

            logger.info("Order %s candidates: %s", order_id, candidates)
            await self._save_offer(
                order_id,
                candidates=candidates,
                current_index=0,
                offered_driver_id=None,
                deadline=None,
                epoch=None,
                declined=declined,
                requery_attempts=0,
                next_requery_at=None,
            )
            self._pooled.discard(order_id)
            await self._offer_next(order_id)

    async def _find_candidates(self, order: Order, declined: List[str]) -> List[str]:
        point = order.search_point
        if point is None:
            return []
        excluded = set(declined) | set(self._offers_by_driver)
        nearby = self._geo.nearest(
            point[0],
            point[1],
            self._config.DISPATCH_CANDIDATE_COUNT,
            radius_km=self._config.DISPATCH_SEARCH_RADIUS_KM,
            exclude=excluded,
        )
        return [driver.driver_id for driver in nearby]

    async def _offer_next(self, order_id: str) -> None:
        """Offer the order to the next still-eligible candidate. Caller holds the order lock."""
        offer = await self._load_offer(order_id)
        if offer is None:
            return
        candidates = list(offer.candidates)
        index = offer.current_index

        while index < len(candidates):
            driver_id = candidates[index]
            if not self._is_offerable(driver_id, order_id):
                logger.debug("Skipping candidate %s for order %s", driver_id, order_id)
                index += 1
                continue
            try:
                order = await retry_async(self._lifecycle.assign_candidate, order_id, driver_id)
            except StaleOfferError:
                # Driver picked up another order since the candidate query
                logger.debug("Candidate %s for order %s is busy", driver_id, order_id)
                index += 1
                continue
            except (AlreadyAssignedError, NotFoundError):
                # Order left pending (cancelled or otherwise resolved)
                await self._discard(order_id)
                return
            except UnavailableError:
                await self._save_offer(order_id, current_index=index)
                await self._park(order_id, await self._load_offer(order_id))
                return

            timeout = self._config.DISPATCH_OFFER_TIMEOUT_SECONDS
            offer_deadline = utcnow() + timedelta(seconds=timeout)
            await self._save_offer(
                order_id,
                current_index=index,
                offered_driver_id=driver_id,
                deadline=offer_deadline,
                epoch=order.version,
            )
            self._offered[order_id] = driver_id
            self._offers_by_driver[driver_id] = order_id
            self._schedule_deadline(order_id, driver_id, order.version, timeout)
            logger.info("Order %s offered to driver %s (candidate %s/%s)", order_id, driver_id, index + 1, len(candidates))
            await self._hub.notify_actor(
                driver_id,
                EventKind.ORDER_OFFERED,
                {
                    "order": serialize_order(order),
                    "deadline": offer_deadline.isoformat(),
                    "timeoutSeconds": timeout,
                },
                order_id=order_id,
            )
            return

        logger.info("Order %s exhausted its %s candidates", order_id, len(candidates))
        await self._park(order_id, offer)

    async def _withdraw(self, order_id: str, driver_id: str, reason: str) -> None:
        await self._hub.notify_actor(
            driver_id,
            EventKind.OFFER_WITHDRAWN,
            {"orderId": order_id, "reason": reason},
            order_id=order_id,
        )

    def _is_offerable(self, driver_id: str, order_id: str) -> bool:
        holder = self._offers_by_driver.get(driver_id)
        if holder is not None and holder != order_id:
            return False
        return self._presence.is_candidate(driver_id)

    async def _advance(self, order_id: str, driver_id: str, reason: str) -> None:
        async with self._order_locks.hold(order_id):
            self._release_offer(order_id)
            offer = await self._load_offer(order_id)
            if offer is None:
                return
            declined = list(offer.declined)
            if driver_id not in declined:
                declined.append(driver_id)
            logger.info("Driver %s %s order %s", driver_id, reason, order_id)
            await self._save_offer(
                order_id,
                current_index=offer.current_index + 1,
                offered_driver_id=None,
                deadline=None,
                epoch=None,
                declined=declined,
            )
            await self._offer_next(order_id)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule_deadline(self, order_id: str, driver_id: str, epoch: int, delay: float) -> None:
        self._cancel_timer(order_id)
        self._timers[order_id] = asyncio.create_task(
            self._deadline(order_id, driver_id, epoch, max(0.0, delay)),
            name=f"deadline:{order_id}",
        )

    async def _deadline(self, order_id: str, driver_id: str, epoch: int, delay: float) -> None:
        await asyncio.sleep(delay)
        # From here on this task is no longer a cancellable timer
        if self._timers.get(order_id) is asyncio.current_task():
            self._timers.pop(order_id, None)
        try:
            expired = await retry_async(self._lifecycle.expire_offer, order_id, driver_id, epoch)
        except UnavailableError:
            logger.warning("Could not expire offer of order %s, retrying later", order_id)
            self._schedule_deadline(order_id, driver_id, epoch, self._config.DISPATCH_REQUERY_INITIAL_SECONDS)
            return
        if expired is None:
            # Accepted, rejected or cancelled in the meantime
            return
        await self._withdraw(order_id, driver_id, "timeout")
        self._spawn(self._advance(order_id, driver_id, "timed out on"), f"advance:{order_id}")

    async def _park(self, order_id: str, offer: Optional[DispatchOffer]) -> None:
        """Put the order in the unassigned pool and schedule a re-query with backoff."""
        attempts = (offer.requery_attempts if offer is not None else 0) + 1
        delay = backoff_delay(
            attempts - 1,
            self._config.DISPATCH_REQUERY_INITIAL_SECONDS,
            self._config.DISPATCH_REQUERY_MAX_SECONDS,
        )
        try:
            await self._save_offer(
                order_id,
                candidates=[],
                current_index=0,
                offered_driver_id=None,
                deadline=None,
                epoch=None,
                requery_attempts=attempts,
                next_requery_at=utcnow() + timedelta(seconds=delay),
            )
        except UnavailableError:
            logger.warning("Could not persist pool entry for order %s", order_id)
        self._release_offer(order_id)
        self._pooled.add(order_id)
        self._schedule_requery(order_id, delay)
        logger.info("Order %s searching, re-query in %.1fs (attempt %s)", order_id, delay, attempts)

    def _schedule_requery(self, order_id: str, delay: float) -> None:
        self._cancel_timer(order_id)
        self._timers[order_id] = asyncio.create_task(
            self._requery(order_id, max(0.0, delay)),
            name=f"requery:{order_id}",
        )

    async def _requery(self, order_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(order_id) is asyncio.current_task():
            self._timers.pop(order_id, None)
        self._pooled.discard(order_id)
        self._spawn(self._start_dispatch(order_id), f"requery:{order_id}")

    def _cancel_timer(self, order_id: str) -> None:
        task = self._timers.pop(order_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Offer persistence
    # ------------------------------------------------------------------

    async def _load_offer(self, order_id: str) -> Optional[DispatchOffer]:
        async with storage_errors("dispatch offer lookup"):
            async with self._session_factory() as session:
                return await session.get(DispatchOffer, order_id)

    async def _save_offer(self, order_id: str, **fields) -> DispatchOffer:
        async with storage_errors("dispatch offer save"):
            async with self._session_factory() as session:
                offer = await session.get(DispatchOffer, order_id)
                if offer is None:
                    offer = DispatchOffer(order_id=order_id, candidates=[], declined=[], current_index=0, requery_attempts=0)
                    session.add(offer)
                for name, value in fields.items():
                    setattr(offer, name, value)
                await session.commit()
                return offer

    async def _discard(self, order_id: str) -> None:
        """Drop timer, in-memory offer and persisted row. Caller holds the order lock."""
        self._cancel_timer(order_id)
        self._release_offer(order_id)
        self._pooled.discard(order_id)
        async with storage_errors("dispatch offer delete"):
            async with self._session_factory() as session:
                offer = await session.get(DispatchOffer, order_id)
                if offer is not None:
                    await session.delete(offer)
                    await session.commit()

    def _release_offer(self, order_id: str) -> None:
        driver_id = self._offered.pop(order_id, None)
        if driver_id is not None and self._offers_by_driver.get(driver_id) == order_id:
            self._offers_by_driver.pop(driver_id, None)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def recover(self) -> None:
        """Rebuild timers from persisted offers and pick up pending orders without one."""
        async with storage_errors("dispatch recovery"):
            async with self._session_factory() as session:
                offers = list((await session.execute(select(DispatchOffer))).scalars())
                pending = list(
                    (
                        await session.execute(
                            select(Order.id).where(Order.status == OrderStatus.PENDING.value)
                        )
                    ).scalars()
                )

        now = utcnow()
        known = set()
        for offer in offers:
            known.add(offer.order_id)
            if offer.offered_driver_id and offer.deadline is not None and offer.epoch is not None:
                self._offered[offer.order_id] = offer.offered_driver_id
                self._offers_by_driver[offer.offered_driver_id] = offer.order_id
                remaining = (offer.deadline - now).total_seconds()
                self._schedule_deadline(offer.order_id, offer.offered_driver_id, offer.epoch, remaining)
            elif offer.next_requery_at is not None and not offer.candidates:
                self._pooled.add(offer.order_id)
                self._schedule_requery(offer.order_id, (offer.next_requery_at - now).total_seconds())
            else:
                self._spawn(self._start_dispatch(offer.order_id), f"recover:{offer.order_id}")

        for order_id in pending:
            if order_id not in known:
                self._spawn(self._start_dispatch(order_id), f"recover:{order_id}")
        logger.info("Dispatch recovered %s offers, %s pending orders", len(offers), len(pending))

    async def drain(self) -> None:
        """Wait until no dispatch work is running (timers excluded)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._timers.values()) + list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._timers.values()), *list(self._tasks), return_exceptions=True)
        self._timers.clear()
        self._tasks.clear()

    def pending_timer(self, order_id: str) -> Optional[asyncio.Task]:
        return self._timers.get(order_id)

    def is_pooled(self, order_id: str) -> bool:
        return order_id in self._pooled

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _guard(coro: Awaitable[None], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Dispatch task %s failed", name)
