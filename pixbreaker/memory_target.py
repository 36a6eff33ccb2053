"""In-memory payment target with optional fault injection."""

from __future__ import annotations

import hashlib
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .types import (
    CreatePaymentRequest,
    Payment,
    PaymentStatus,
    TargetError,
    TargetSnapshot,
    WebhookEvent,
)

_TERMINAL_LOCKED = frozenset(
    {
        PaymentStatus.SETTLED,
        PaymentStatus.REJECTED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
    }
)

_ALLOWED_TRANSITIONS = {
    PaymentStatus.CREATED: frozenset(
        {PaymentStatus.SUBMISSION_PENDING, PaymentStatus.SUBMITTED}
    ),
    PaymentStatus.SUBMISSION_PENDING: frozenset(
        {PaymentStatus.SUBMITTED, PaymentStatus.REJECTED, PaymentStatus.FAILED}
    ),
    PaymentStatus.SUBMITTED: frozenset(
        {
            PaymentStatus.CONFIRMED,
            PaymentStatus.SETTLED,
            PaymentStatus.REJECTED,
            PaymentStatus.FAILED,
        }
    ),
    PaymentStatus.CONFIRMED: frozenset({PaymentStatus.SETTLED}),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def hash_request(request: CreatePaymentRequest) -> str:
    """SHA-256 fingerprint of the payload fields that define a payment."""
    text = (
        f"{request.merchant_id}|{request.idempotency_key}|{request.amount_cents}"
        f"|{request.pix_key}|{request.description}"
    )
    return hashlib.sha256(text.encode()).hexdigest()


def idem_key(merchant_id: str, key: str) -> str:
    return f"{merchant_id}::{key}"


def transition_payment(payment: Optional[Payment], next_status: PaymentStatus) -> None:
    """Move a payment to the next status, enforcing the state machine."""
    if payment is None:
        raise TargetError("nil payment")
    current = payment.status
    if current == next_status:
        return
    if current.is_terminal() and not next_status.is_terminal():
        raise TargetError("terminal state regression blocked")
    if current in _TERMINAL_LOCKED:
        raise TargetError(f"cannot transition terminal {current} -> {next_status}")
    allowed = _ALLOWED_TRANSITIONS.get(current)
    if allowed is None:
        raise TargetError(f"unknown state {current}")
    if next_status not in allowed:
        raise TargetError(f"invalid transition {current} -> {next_status}")
    payment.status = next_status
    payment.version += 1
    payment.updated_at = _now()


@dataclass(frozen=True)
class MemoryTargetConfig:
    demo_bugs: bool = False
    seed: int = 0


class MemoryTarget:
    """Thread-safe in-memory payment system.

    With ``demo_bugs`` enabled it occasionally skips idempotency on create and
    stops protecting terminal states and webhook deduplication.
    """

    def __init__(self, config: Optional[MemoryTargetConfig] = None) -> None:
        config = config or MemoryTargetConfig()
        self._lock = threading.Lock()
        self._rng = random.Random(config.seed)
        self._demo_bugs = config.demo_bugs
        self._clear()

    def _clear(self) -> None:
        self._next_id = 0
        self._payments: dict[str, Payment] = {}
        self._idem: dict[str, str] = {}
        self._webhook_seen: set[str] = set()
        self._outbox: list[str] = []
        self._processed: set[str] = set()

    def _new_payment(
        self, request: CreatePaymentRequest, digest: str, status: PaymentStatus
    ) -> Payment:
        self._next_id += 1
        payment_id = f"pay-{self._next_id}"
        now = _now()
        return Payment(
            id=payment_id,
            merchant_id=request.merchant_id,
            idempotency_key=request.idempotency_key,
            idempotency_hash=digest,
            amount_cents=request.amount_cents,
            pix_key=request.pix_key,
            description=request.description,
            status=status,
            provider_ref=f"prov-{payment_id}",
            version=1,
            created_at=now,
            updated_at=now,
        )

    def create_payment(self, request: CreatePaymentRequest) -> Payment:
        if (
            not request.merchant_id
            or not request.idempotency_key
            or request.amount_cents <= 0
            or not request.pix_key
        ):
            raise TargetError("invalid payment request")
        digest = hash_request(request)

        with self._lock:
            if self._demo_bugs and self._rng.randrange(20) == 0:
                payment = self._new_payment(request, digest, PaymentStatus.CREATED)
                self._payments[payment.id] = payment
                return payment.copy()

            key = idem_key(request.merchant_id, request.idempotency_key)
            existing_id = self._idem.get(key)
            if existing_id is not None:
                existing = self._payments.get(existing_id)
                if existing is None:
                    raise TargetError("idempotency reference missing")
                if existing.idempotency_hash != digest:
                    raise TargetError("idempotency key reused with divergent payload")
                return existing.copy()

            payment = self._new_payment(
                request, digest, PaymentStatus.SUBMISSION_PENDING
            )
            transition_payment(payment, PaymentStatus.SUBMITTED)
            self._payments[payment.id] = payment
            self._idem[key] = payment.id
            self._outbox.append(payment.id)
            return payment.copy()

    def get_payment(self, payment_id: str) -> Payment:
        with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise TargetError("payment not found")
            return payment.copy()

    def handle_webhook(self, event: WebhookEvent) -> None:
        if not event.event_id or not event.provider_ref:
            raise TargetError("invalid webhook event")
        with self._lock:
            if event.event_id in self._webhook_seen and not self._demo_bugs:
                return
            self._webhook_seen.add(event.event_id)

            payment = next(
                (p for p in self._payments.values() if p.provider_ref == event.provider_ref),
                None,
            )
            if payment is None:
                raise TargetError("provider reference not found")
            if payment.status.is_terminal() and not self._demo_bugs:
                return
            transition_payment(payment, event.payment_status)

    def reconcile(self, payment_id: str) -> None:
        with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise TargetError("payment not found")
            if payment.status.is_terminal() and not self._demo_bugs:
                return
            transition_payment(payment, PaymentStatus.SETTLED)

    def reset(self) -> None:
        with self._lock:
            self._clear()

    def snapshot(self) -> TargetSnapshot:
        with self._lock:
            return TargetSnapshot(
                payments=len(self._payments),
                webhooks_seen=len(self._webhook_seen),
                outbox_queued=len(self._outbox),
                outbox_processed=len(self._processed),
            )