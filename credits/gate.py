"""
Credit Gate — check-then-reserve guard in front of paid generation queues.

Credits are reserved at dispatch time, never inside a handler, so retried
handlers cannot charge twice. A paid job that reaches the terminal failed
state gets its reservation refunded exactly once (worker failure hook).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from credits.store import CreditStore
from job_queue.dispatch import Dispatcher, DispatchResult
from job_queue.errors import CreditExhaustedError
from job_queue.registry import Queues
from models.schemas import CreditType, Job

logger = structlog.get_logger()

QUEUE_CREDIT_TYPES: dict[str, CreditType] = {
    Queues.LOGO_GENERATION: CreditType.LOGO,
    Queues.MOCKUP_GENERATION: CreditType.MOCKUP,
    Queues.BUNDLE_COMPOSITION: CreditType.MOCKUP,
    Queues.VIDEO_GENERATION: CreditType.VIDEO,
    Queues.BRAND_WIZARD: CreditType.GENERATION,
}

RESERVATION_META_KEY = "credit_reservation"


@dataclass(frozen=True)
class CreditCheck:
    ok: bool
    remaining: int = 0
    reason: Optional[str] = None


class CreditGate:
    """
    Usage:
        gate = CreditGate(store)
        check = await gate.check_and_reserve(user_id, 1, CreditType.LOGO)
        result = await gate.dispatch_paid(dispatcher, "logo-generation", payload)
    """

    def __init__(self, store: CreditStore, broker=None):
        self.store = store
        self.broker = broker     # for at-most-once refunds

    async def check_and_reserve(
        self, user_id: str, cost: int, credit_type: CreditType | str = CreditType.GENERATION,
    ) -> CreditCheck:
        if cost <= 0:
            raise ValueError("Credit cost must be positive")
        credit_type = CreditType(credit_type).value
        ok, remaining = await self.store.reserve(user_id, credit_type, cost)
        if not ok:
            logger.info("credit_check_refused", user_id=user_id, credit_type=credit_type,
                        cost=cost, remaining=remaining)
            return CreditCheck(
                ok=False, remaining=remaining,
                reason=f"Not enough {credit_type} credits ({remaining} left, {cost} needed)",
            )
        logger.info("credits_reserved", user_id=user_id, credit_type=credit_type,
                    cost=cost, remaining=remaining)
        return CreditCheck(ok=True, remaining=remaining)

    async def refund(self, user_id: str, cost: int,
                     credit_type: CreditType | str = CreditType.GENERATION, reason: str = "") -> int:
        credit_type = CreditType(credit_type).value
        balance = await self.store.refund(user_id, credit_type, cost)
        logger.info("credits_refunded", user_id=user_id, credit_type=credit_type,
                    cost=cost, balance_after=balance, reason=reason)
        return balance

    @staticmethod
    def cost_for(queue_name: str, payload: dict[str, Any]) -> int:
        if queue_name == Queues.BRAND_WIZARD:
            return int(payload.get("credit_cost", 1))
        return 1

    async def dispatch_paid(
        self,
        dispatcher: Dispatcher,
        queue_name: str,
        payload: dict[str, Any],
        cost: Optional[int] = None,
        **options,
    ) -> DispatchResult:
        """
        Validate, reserve credits, then dispatch. Raises CreditExhaustedError
        before anything is enqueued; refunds if the dispatch itself fails.

        Balances are keyed on the normalized user id, so every spelling of
        one UUID draws from the same balance.
        """
        credit_type = QUEUE_CREDIT_TYPES.get(queue_name)
        if credit_type is None:
            return await dispatcher.dispatch(queue_name, payload, **options)

        dispatcher.registry.lookup(queue_name)
        payload = dispatcher.validator.validate(queue_name, payload)
        user_id = payload["user_id"]
        cost = cost if cost is not None else self.cost_for(queue_name, payload)
        check = await self.check_and_reserve(user_id, cost, credit_type)
        if not check.ok:
            raise CreditExhaustedError(user_id, credit_type.value, check.remaining, check.reason)

        meta = dict(options.pop("meta", None) or {})
        meta[RESERVATION_META_KEY] = {"user_id": user_id, "credit_type": credit_type.value, "amount": cost}
        try:
            result = await dispatcher.dispatch(queue_name, payload, meta=meta, **options)
        except Exception:
            await self.refund(user_id, cost, credit_type, reason="dispatch_failed")
            raise

        if result.deduplicated:
            # the existing job already holds a reservation
            await self.refund(user_id, cost, credit_type, reason="duplicate_job")
        return result

    async def refund_failed_job(self, job: Job) -> None:
        """Worker failure hook: give back the reservation of a terminally failed job."""
        reservation = job.meta.get(RESERVATION_META_KEY)
        if not reservation:
            return
        if self.broker is not None and not await self.broker.claim_side_effect(job.id, "credit_refund"):
            return
        await self.refund(
            reservation["user_id"], int(reservation["amount"]),
            reservation["credit_type"], reason=f"job_failed:{job.id}",
        )
