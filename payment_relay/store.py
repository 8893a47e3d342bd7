"""Idempotency record stores.

Both stores expose the same four operations. `claim` is the only one that can
create or reopen a record, and it does the look-up and the write as a single
step so two requests carrying the same key cannot both reach the provider.
"""
import enum
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, NamedTuple, Optional

from .db import get_conn, init_schema
from .models import PaymentOrderRecord
from .settings import DATABASE_URL

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClaimOutcome(str, enum.Enum):
    CLAIMED = "CLAIMED"      # caller owns a fresh provider attempt
    CACHED = "CACHED"        # already SUCCEEDED
    IN_FLIGHT = "IN_FLIGHT"
    MISMATCH = "MISMATCH"    # same key, different amount/currency
    EXHAUSTED = "EXHAUSTED"


class Claim(NamedTuple):
    outcome: ClaimOutcome
    record: PaymentOrderRecord


def resolve_claim(
    existing: PaymentOrderRecord,
    request_hash: str,
    now: datetime,
    in_flight_window: timedelta,
    max_attempts: int,
) -> ClaimOutcome:
    if existing.request_hash != request_hash:
        return ClaimOutcome.MISMATCH
    if existing.status == "SUCCEEDED":
        return ClaimOutcome.CACHED
    if existing.status == "PENDING" and now - existing.last_attempt_at < in_flight_window:
        return ClaimOutcome.IN_FLIGHT
    # FAILED, or PENDING left behind by a process that never finished it
    if existing.attempts >= max_attempts:
        return ClaimOutcome.EXHAUSTED
    return ClaimOutcome.CLAIMED


class InMemoryOrderStore:
    blocking = False

    def __init__(self, clock=utcnow):
        self._clock = clock
        self._records: Dict[str, PaymentOrderRecord] = {}
        self._lock = threading.Lock()

    def claim(
        self,
        *,
        idempotency_key: str,
        merchant_trade_no: str,
        request_hash: str,
        amount: str,
        currency: str,
        in_flight_window: timedelta,
        max_attempts: int,
    ) -> Claim:
        with self._lock:
            now = self._clock()
            existing = self._records.get(idempotency_key)
            if existing is None:
                record = PaymentOrderRecord(
                    idempotency_key=idempotency_key,
                    merchant_trade_no=merchant_trade_no,
                    request_hash=request_hash,
                    amount=amount,
                    currency=currency,
                    status="PENDING",
                    created_at=now,
                    last_attempt_at=now,
                )
                self._records[idempotency_key] = record
                return Claim(ClaimOutcome.CLAIMED, record)

            outcome = resolve_claim(existing, request_hash, now, in_flight_window, max_attempts)
            if outcome is ClaimOutcome.CLAIMED:
                existing = existing.model_copy(update={
                    "status": "PENDING",
                    "attempts": existing.attempts + 1,
                    "pay_url": None,
                    "last_error": None,
                    "last_attempt_at": now,
                })
                self._records[idempotency_key] = existing
            return Claim(outcome, existing)

    def mark_succeeded(self, idempotency_key: str, pay_url: str, attempt: int) -> PaymentOrderRecord:
        return self._finish(idempotency_key, attempt, {"status": "SUCCEEDED", "pay_url": pay_url})

    def mark_failed(self, idempotency_key: str, error_code: str, attempt: int) -> PaymentOrderRecord:
        return self._finish(idempotency_key, attempt, {"status": "FAILED", "last_error": error_code})

    def get(self, idempotency_key: str) -> Optional[PaymentOrderRecord]:
        with self._lock:
            return self._records.get(idempotency_key)

    def _finish(self, idempotency_key: str, attempt: int, update: dict) -> PaymentOrderRecord:
        with self._lock:
            record = self._records[idempotency_key]
            # A reclaimed record belongs to the newer attempt.
            if record.status != "PENDING" or record.attempts != attempt:
                logger.warning(
                    "ignoring %s from attempt %s for order %s now %s on attempt %s",
                    update["status"], attempt, record.merchant_trade_no, record.status, record.attempts,
                )
                return record
            record = record.model_copy(update=update)
            self._records[idempotency_key] = record
            return record


def _record(row: dict) -> PaymentOrderRecord:
    return PaymentOrderRecord(
        idempotency_key=row["idem_key"],
        merchant_trade_no=row["merchant_trade_no"],
        request_hash=row["request_hash"],
        amount=row["amount"],
        currency=row["currency"],
        status=row["status"],
        pay_url=row["pay_url"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        last_attempt_at=row["last_attempt_at"],
    )


class PostgresOrderStore:
    """Shared store for relays running as more than one process."""

    blocking = True

    def __init__(self, dsn: str = DATABASE_URL, clock=utcnow):
        self._dsn = dsn
        self._clock = clock

    def init_schema(self):
        init_schema(self._dsn)

    def claim(
        self,
        *,
        idempotency_key: str,
        merchant_trade_no: str,
        request_hash: str,
        amount: str,
        currency: str,
        in_flight_window: timedelta,
        max_attempts: int,
    ) -> Claim:
        now = self._clock()
        with get_conn(self._dsn) as conn:
            row = conn.execute(
                "INSERT INTO payment_orders(idem_key, merchant_trade_no, request_hash, amount, currency, "
                "status, attempts, created_at, last_attempt_at) "
                "VALUES (%s, %s, %s, %s, %s, 'PENDING', 1, %s, %s) "
                "ON CONFLICT (idem_key) DO NOTHING RETURNING *",
                (idempotency_key, merchant_trade_no, request_hash, amount, currency, now, now),
            ).fetchone()
            if row:
                return Claim(ClaimOutcome.CLAIMED, _record(row))

            # Row lock holds until get_conn commits.
            row = conn.execute(
                "SELECT * FROM payment_orders WHERE idem_key = %s FOR UPDATE",
                (idempotency_key,),
            ).fetchone()
            existing = _record(row)
            outcome = resolve_claim(existing, request_hash, now, in_flight_window, max_attempts)
            if outcome is ClaimOutcome.CLAIMED:
                row = conn.execute(
                    "UPDATE payment_orders SET status = 'PENDING', attempts = attempts + 1, "
                    "pay_url = NULL, last_error = NULL, last_attempt_at = %s "
                    "WHERE idem_key = %s RETURNING *",
                    (now, idempotency_key),
                ).fetchone()
                existing = _record(row)
            return Claim(outcome, existing)

    def mark_succeeded(self, idempotency_key: str, pay_url: str, attempt: int) -> PaymentOrderRecord:
        return self._finish(
            idempotency_key,
            "UPDATE payment_orders SET status = 'SUCCEEDED', pay_url = %s "
            "WHERE idem_key = %s AND status = 'PENDING' AND attempts = %s RETURNING *",
            (pay_url, idempotency_key, attempt),
        )

    def mark_failed(self, idempotency_key: str, error_code: str, attempt: int) -> PaymentOrderRecord:
        return self._finish(
            idempotency_key,
            "UPDATE payment_orders SET status = 'FAILED', last_error = %s "
            "WHERE idem_key = %s AND status = 'PENDING' AND attempts = %s RETURNING *",
            (error_code, idempotency_key, attempt),
        )

    def get(self, idempotency_key: str) -> Optional[PaymentOrderRecord]:
        with get_conn(self._dsn) as conn:
            row = conn.execute(
                "SELECT * FROM payment_orders WHERE idem_key = %s",
                (idempotency_key,),
            ).fetchone()
        return _record(row) if row else None

    def _finish(self, idempotency_key: str, sql: str, params: tuple) -> PaymentOrderRecord:
        with get_conn(self._dsn) as conn:
            row = conn.execute(sql, params).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM payment_orders WHERE idem_key = %s",
                    (idempotency_key,),
                ).fetchone()
                logger.warning(
                    "ignoring update for order %s now %s on attempt %s",
                    row["merchant_trade_no"], row["status"], row["attempts"],
                )
        return _record(row)
