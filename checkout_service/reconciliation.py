"""Payment callback reconciliation.

An intent moves ``Created -> Verified -> Committed``; ``Failed`` is absorbing
and reachable from ``Created`` or ``Verified``. Gateways deliver callbacks at
least once, so every step here must be safe to repeat:

- callbacks for one intent run one at a time under a per-intent lock, and
  the status writes are compare-and-set, so two workers cannot both commit;
- the commit writes orders keyed on the intent id and removes cart lines by
  their ids, so a commit interrupted halfway can be re-run without creating a
  second order set. Until the final ``Verified -> Committed`` write lands the
  intent stays ``Verified`` and a redelivered callback or the sweeper resumes it.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pymongo.errors import PyMongoError

from shared.utils import settings
from checkout_service.cart_store import CartStore
from checkout_service.errors import (
    CommitFailed, IntentAlreadyFailed, SignatureInvalid, UnknownIntent,
)
from checkout_service.gateway import PaymentGateway, callback_payload
from checkout_service.intent_store import IntentStore
from checkout_service.locks import KeyedLocks
from checkout_service.models import IntentStatus, OrderDB, PaymentIntentDB
from checkout_service.order_store import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class CallbackResult:
    intent_id: str
    status: str
    replayed: bool = False
    orders: List[OrderDB] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.replayed:
            return "Payment already processed"
        return "Payment successful, order placed"


class ReconciliationEngine:
    def __init__(self, intent_store: IntentStore, order_store: OrderStore,
                 cart_store: CartStore, gateway: PaymentGateway,
                 locks: Optional[KeyedLocks] = None,
                 max_attempts: int = settings.COMMIT_MAX_ATTEMPTS,
                 retry_delay: float = settings.COMMIT_RETRY_DELAY_SECONDS):
        self.intent_store = intent_store
        self.order_store = order_store
        self.cart_store = cart_store
        self.gateway = gateway
        self.locks = locks or KeyedLocks()
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def intent_lock(self, intent_id: str):
        return self.locks.hold(f"intent:{intent_id}")

    async def handle_callback(self, intent_id: str, gateway_payment_id: str, signature: str) -> CallbackResult:
        log_extra = {"intent_id": intent_id, "payment_id": gateway_payment_id}

        async with self.intent_lock(intent_id):
            intent = await self.intent_store.get(intent_id)
            if intent is None:
                logger.warning("Callback for unknown intent rejected", extra=log_extra)
                raise UnknownIntent(intent_id)

            if intent.status == IntentStatus.COMMITTED:
                logger.info("Duplicate callback for committed intent acknowledged", extra=log_extra)
                orders = await self.order_store.list_for_intent(intent_id)
                return CallbackResult(intent_id, intent.status, replayed=True, orders=orders)

            if intent.status == IntentStatus.FAILED:
                logger.warning(f"Callback for failed intent ({intent.failure_reason})", extra=log_extra)
                raise IntentAlreadyFailed(intent_id)

            payload = callback_payload(intent_id, gateway_payment_id)
            if not self.gateway.verify_callback(payload, signature):
                if intent.status == IntentStatus.CREATED:
                    await self.intent_store.transition(
                        intent_id, IntentStatus.CREATED, IntentStatus.FAILED,
                        failure_reason="signature_invalid",
                        gateway_payment_id=gateway_payment_id,
                    )
                    logger.error("Callback signature mismatch, intent failed", extra=log_extra)
                else:
                    # Payment already verified once; a bad copy must not undo it
                    logger.error("Callback signature mismatch on verified intent ignored", extra=log_extra)
                raise SignatureInvalid()

            if intent.status == IntentStatus.CREATED:
                moved = await self.intent_store.transition(
                    intent_id, IntentStatus.CREATED, IntentStatus.VERIFIED,
                    gateway_payment_id=gateway_payment_id,
                )
                if not moved:
                    # Another process got there first; act on what it left behind
                    return await self._settle_after_race(intent_id, log_extra)
                intent.status = IntentStatus.VERIFIED.value
                intent.gateway_payment_id = gateway_payment_id
            elif intent.gateway_payment_id and intent.gateway_payment_id != gateway_payment_id:
                logger.warning(
                    f"Verified intent resumed with a different payment id (kept {intent.gateway_payment_id})",
                    extra=log_extra
                )

            return await self._commit(intent)

    async def resume_commit(self, intent_id: str) -> Optional[CallbackResult]:
        """Finish the commit of an intent left ``Verified`` by an earlier failure."""
        async with self.intent_lock(intent_id):
            intent = await self.intent_store.get(intent_id)
            if intent is None or intent.status != IntentStatus.VERIFIED:
                return None
            return await self._commit(intent)

    async def _settle_after_race(self, intent_id: str, log_extra: dict) -> CallbackResult:
        intent = await self.intent_store.get(intent_id)
        if intent.status == IntentStatus.COMMITTED:
            orders = await self.order_store.list_for_intent(intent_id)
            return CallbackResult(intent_id, intent.status, replayed=True, orders=orders)
        if intent.status == IntentStatus.FAILED:
            raise IntentAlreadyFailed(intent_id)
        logger.info("Intent verified concurrently, committing", extra=log_extra)
        return await self._commit(intent)

    async def _commit(self, intent: PaymentIntentDB) -> CallbackResult:
        intent_id = intent.intent_id
        payment_id = intent.gateway_payment_id
        cart_item_ids = [line.cart_item_id for line in intent.line_items]

        for attempt in range(1, self.max_attempts + 1):
            extra = {"intent_id": intent_id, "buyer_id": intent.buyer_id, "attempt": attempt}
            try:
                await self.intent_store.record_commit_attempt(intent_id)
                orders = await self.order_store.write_orders(intent, payment_id)
                removed = await self.cart_store.remove_items(intent.buyer_id, cart_item_ids)
                committed = await self.intent_store.transition(
                    intent_id, IntentStatus.VERIFIED, IntentStatus.COMMITTED
                )
            except PyMongoError:
                logger.exception("Commit attempt failed", extra=extra)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue

            if not committed:
                current = await self.intent_store.get(intent_id)
                if current is None or current.status != IntentStatus.COMMITTED:
                    # Verified intents are only failed by hand; nothing to finish here
                    logger.error(f"Intent left Verified in state {current and current.status}", extra=extra)
                    raise IntentAlreadyFailed(intent_id)
            logger.info(
                f"Committed {len(orders)} order(s), removed {removed} cart item(s)",
                extra=extra
            )
            return CallbackResult(intent_id, IntentStatus.COMMITTED.value, orders=orders)

        logger.error("Commit gave up, intent stays Verified", extra={"intent_id": intent_id})
        raise CommitFailed(intent_id)
