import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from shared.utils import settings, AppException
from checkout_service.intent_store import IntentStore
from checkout_service.models import IntentStatus
from checkout_service.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


class IntentSweeper:
    """Background pass over intents that no callback will settle.

    - ``Created`` intents older than the TTL are marked ``Failed`` (abandoned
      checkout; their cart was never touched).
    - ``Verified`` intents whose commit gave up are committed again.
    """

    def __init__(self, intent_store: IntentStore, engine: ReconciliationEngine,
                 ttl_minutes: int = settings.INTENT_TTL_MINUTES,
                 interval_seconds: float = settings.SWEEP_INTERVAL_SECONDS):
        self.intent_store = intent_store
        self.engine = engine
        self.ttl = timedelta(minutes=ttl_minutes)
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        expired = 0
        for intent in await self.intent_store.list_stale(now - self.ttl):
            async with self.engine.intent_lock(intent.intent_id):
                if await self.intent_store.transition(
                    intent.intent_id, IntentStatus.CREATED, IntentStatus.FAILED,
                    failure_reason="expired",
                ):
                    expired += 1
                    logger.info("Abandoned intent expired", extra={"intent_id": intent.intent_id})

        resumed = 0
        for intent in await self.intent_store.list_by_status(IntentStatus.VERIFIED):
            try:
                if await self.engine.resume_commit(intent.intent_id):
                    resumed += 1
            except AppException as e:
                logger.warning(f"Resumed commit failed: {e.detail}", extra={"intent_id": intent.intent_id})

        return {"expired": expired, "resumed": resumed}

    async def run(self):
        logger.info(f"Intent sweeper running every {self.interval}s")
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Intent sweep failed")
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
