import asyncio
import logging
import math
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Set

from .errors import (
    AttemptsExhausted,
    IdempotencyKeyMismatch,
    InvalidAmount,
    InvalidIdempotencyKey,
    PaymentError,
    RequestInFlight,
)
from .models import CreateOrderRequest, PaymentOrderRecord, RelayConfig
from .provider import ProviderClient
from .signing import merchant_trade_no, sha256_json
from .store import ClaimOutcome

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def normalize_amount(amount) -> Decimal:
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        raise InvalidAmount()
    if isinstance(amount, float) and not math.isfinite(amount):
        raise InvalidAmount()
    try:
        # str() first so 49.99 stays 49.99 instead of its binary expansion
        value = Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount()
    if not value.is_finite() or value <= 0:
        raise InvalidAmount()
    return value


class PaymentOrderRelay:
    """Creates at most one provider order per idempotency key."""

    def __init__(self, config: RelayConfig, store, provider: Optional[ProviderClient] = None):
        self._config = config
        self._store = store
        self._provider = provider or ProviderClient(config)
        self._attempts: Set[asyncio.Task] = set()

    async def create_order(self, request: CreateOrderRequest) -> str:
        amount = normalize_amount(request.amount)
        key = request.idempotency_key
        if not key or not key.strip():
            raise InvalidIdempotencyKey()
        currency = request.currency.upper()

        claim = await self._call_store(
            self._store.claim,
            idempotency_key=key,
            merchant_trade_no=merchant_trade_no(key),
            request_hash=sha256_json({"amount": str(amount), "currency": currency}),
            amount=str(amount),
            currency=currency,
            in_flight_window=timedelta(seconds=self._config.in_flight_window_seconds),
            max_attempts=self._config.max_attempts,
        )
        record = claim.record

        if claim.outcome is ClaimOutcome.CACHED:
            logger.info("order %s already succeeded, returning cached pay URL", record.merchant_trade_no)
            return record.pay_url
        if claim.outcome is ClaimOutcome.IN_FLIGHT:
            raise RequestInFlight()
        if claim.outcome is ClaimOutcome.MISMATCH:
            logger.warning("idempotency key reused with a different body for order %s", record.merchant_trade_no)
            raise IdempotencyKeyMismatch()
        if claim.outcome is ClaimOutcome.EXHAUSTED:
            logger.warning("order %s out of attempts (%s)", record.merchant_trade_no, record.attempts)
            raise AttemptsExhausted()

        logger.info("order %s attempt %s started", record.merchant_trade_no, record.attempts)
        # The attempt outlives a cancelled caller so the record still reaches
        # SUCCEEDED or FAILED once the provider answers or times out.
        task = asyncio.ensure_future(self._attempt(record, amount))
        self._attempts.add(task)
        task.add_done_callback(self._forget)
        return await asyncio.shield(task)

    def _forget(self, task: asyncio.Task):
        self._attempts.discard(task)
        # Nobody awaits the task once its caller is gone.
        if not task.cancelled():
            task.exception()

    async def _call_store(self, fn, *args, **kwargs):
        if self._store.blocking:
            return await asyncio.to_thread(fn, *args, **kwargs)
        return fn(*args, **kwargs)

    async def _attempt(self, record: PaymentOrderRecord, amount: Decimal) -> str:
        key, attempt = record.idempotency_key, record.attempts
        try:
            pay_url = await self._provider.create_order(record.merchant_trade_no, amount, record.currency)
        except PaymentError as e:
            await self._call_store(self._store.mark_failed, key, getattr(e, "reason", e.code), attempt)
            logger.info("order %s failed: %s", record.merchant_trade_no, e.code)
            raise
        except Exception:
            await self._call_store(self._store.mark_failed, key, "internal_error", attempt)
            logger.exception("order %s failed unexpectedly", record.merchant_trade_no)
            raise

        await self._call_store(self._store.mark_succeeded, key, pay_url, attempt)
        logger.info("order %s succeeded", record.merchant_trade_no)
        return pay_url

    def get_order(self, idempotency_key: str) -> Optional[PaymentOrderRecord]:
        return self._store.get(idempotency_key)
