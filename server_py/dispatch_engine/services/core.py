from __future__ import annotations

import logging

from dispatch_engine.core.config import Settings, settings as default_settings
from dispatch_engine.services.conversation import ConversationLog
from dispatch_engine.services.dispatch import DispatchScheduler
from dispatch_engine.services.geo_index import GeoIndex
from dispatch_engine.services.lifecycle import OrderLifecycleManager
from dispatch_engine.services.presence import PresenceTracker
from dispatch_engine.services.realtime import RealtimeHub

logger = logging.getLogger(__name__)


class DispatchCore:
    """Wires the engine components around one session factory."""

    def __init__(self, session_factory, config: Settings = default_settings) -> None:
        self.config = config
        self.session_factory = session_factory
        self.hub = RealtimeHub(send_timeout=config.REALTIME_SEND_TIMEOUT_SECONDS)
        self.geo_index = GeoIndex(freshness_seconds=config.PRESENCE_FRESHNESS_SECONDS)
        self.presence = PresenceTracker(session_factory, self.geo_index, self.hub)
        self.lifecycle = OrderLifecycleManager(session_factory, self.hub, self.presence)
        self.conversation = ConversationLog(session_factory, self.hub)
        self.scheduler = DispatchScheduler(
            session_factory,
            self.lifecycle,
            self.presence,
            self.geo_index,
            self.hub,
            config,
        )

    async def start(self) -> None:
        await self.presence.warm_up()
        await self.scheduler.recover()
        logger.info("Dispatch core started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        logger.info("Dispatch core stopped")
