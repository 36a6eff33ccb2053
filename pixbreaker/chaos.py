"""Chaos scenarios that stress a target with floods, collisions and backlogs."""

from __future__ import annotations

import random
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from .types import (
    AttackResult,
    CreatePaymentRequest,
    PaymentStatus,
    Target,
    WebhookEvent,
)

_MAX_THREADS = 64


class _ScenarioFailed(Exception):
    """Raised by a scenario when the target broke an invariant."""


@dataclass(frozen=True)
class ChaosScenario:
    """A named stress scenario; ``run`` raises when the target misbehaves."""

    name: str
    concurrency: int
    duration: float
    run: Callable[[Target], None]


def _fan_out(fn: Callable[[], Any], count: int) -> list[Any]:
    """Call ``fn`` ``count`` times concurrently; return the successful results."""
    with ThreadPoolExecutor(max_workers=min(count, _MAX_THREADS)) as pool:
        futures = [pool.submit(fn) for _ in range(count)]
    return [f.result() for f in futures if f.exception() is None]


def _duplicate_webhook_flood(target: Target) -> None:
    request = CreatePaymentRequest(
        merchant_id="chaos",
        idempotency_key="chaos-flood-1",
        amount_cents=999,
        pix_key="flood@example.com",
    )
    payment = target.create_payment(request)
    event = WebhookEvent(
        event_id=f"chaos-ev-{random.getrandbits(63)}",
        provider_ref=payment.provider_ref,
        payment_status=PaymentStatus.SETTLED,
        occurred_at=datetime.now(timezone.utc),
    )
    _fan_out(lambda: target.handle_webhook(event), 1000)

    current = target.get_payment(payment.id)
    if current.status != PaymentStatus.SETTLED:
        raise _ScenarioFailed(f"expected SETTLED, got {current.status}")


def _idempotency_collision_storm(target: Target) -> None:
    request = CreatePaymentRequest(
        merchant_id="chaos",
        idempotency_key="chaos-collision",
        amount_cents=500,
        pix_key="collision@example.com",
    )
    payments = _fan_out(lambda: target.create_payment(request), 500)
    unique = len({p.id for p in payments})
    if unique > 1:
        raise _ScenarioFailed(f"duplicate payments: {unique}")


def _reconciliation_backlog(target: Target) -> None:
    for i in range(50):
        request = CreatePaymentRequest(
            merchant_id="chaos",
            idempotency_key=f"chaos-backlog-{i}",
            amount_cents=100 + i,
            pix_key=f"backlog{i}@example.com",
        )
        payment = target.create_payment(request)
        target.reconcile(payment.id)


CHAOS_SCENARIOS: tuple[ChaosScenario, ...] = (
    ChaosScenario("duplicate_webhook_flood", 50, 30.0, _duplicate_webhook_flood),
    ChaosScenario("idempotency_collision_storm", 1000, 15.0, _idempotency_collision_storm),
    ChaosScenario("reconciliation_backlog", 10, 60.0, _reconciliation_backlog),
)


def run_chaos_suite(target: Target) -> list[AttackResult]:
    """Run every chaos scenario against ``target`` and report each outcome."""
    results: list[AttackResult] = []
    for scenario in CHAOS_SCENARIOS:
        start = time.monotonic()
        failure: Exception | None = None
        try:
            scenario.run(target)
        except Exception as exc:
            failure = exc
        elapsed = time.monotonic() - start

        result = AttackResult(
            category="CHAOS",
            scenario=scenario.name,
            expected_behavior="system survives without corruption",
            notes=f"duration={elapsed:.3f}s concurrency={scenario.concurrency}",
        )
        if failure is not None:
            result.result = "FAIL"
            result.observed_behavior = str(failure)
        else:
            result.result = "PASS"
            result.observed_behavior = f"completed in {elapsed:.3f}s"
        results.append(result)
    return results