# pixbreaker

A harness that attacks a payment API and reports whether its financial
invariants hold. `Harness.run()` performs:

- **concurrent creation** of the same payment (same merchant, idempotency key
  and payload), expecting exactly one payment ID;
- **webhook replay**, with duplicate and out-of-order deliveries, expecting a
  terminal status never to change;
- **reconciliation** of an existing payment, expecting no terminal-status
  overwrite;
- **crash recovery** against targets that also offer `reset()` and
  `snapshot()`; other targets get an `UNCERTAIN` result for this attack.

The result is a `Report` with a summary, invariants, per-attack results,
critical breaks and a final verdict. The verdict is `UNSAFE` (score 0) when a
critical break was found; otherwise `DEGRADED` (score 72) while any invariant
is still `UNCERTAIN`. Persistence atomicity is always reported as uncertain,
so a run without breaks ends as `DEGRADED`.

## Installation

```
pip install .
```

## Command line

Run against the built-in in-memory target:

```
pixbreaker --mode memory --out report.json
```

Inject faults into the in-memory target so that breaks can be seen:

```
pixbreaker --mode memory --demo-bugs --seed 42
```

Run against a live HTTP service that exposes `POST /payments`,
`GET /payments/{id}`, `POST /payments/{id}/reconcile` and `POST /webhooks/pix`:

```
pixbreaker --mode http --base-url http://localhost:8080
```

Other options: `--concurrency` (default 100), `--replays` (25),
`--webhook-duplicates` (10), `--merchant-id` (`merchant-001`),
`--idempotency-key` (`idem-001`), `--amount-cents` (1234). Without `--seed`
the current time is used. The report is written as indented JSON to `--out`
(default `report.json`).

Exit status: 0 on success, 1 when the verdict is `UNSAFE` or the report cannot
be written, 2 for an unknown `--mode`, a missing `--base-url` in http mode, or
invalid arguments.

## Library use

```python
from pixbreaker.harness import Harness, HarnessConfig
from pixbreaker.memory_target import MemoryTarget, MemoryTargetConfig

target = MemoryTarget(MemoryTargetConfig(seed=42))
harness = Harness(target, HarnessConfig(seed=42, concurrency=50, replays=5,
                                        webhook_duplicates=3))
report = harness.run()
print(report.final_verdict.status)
print(report.to_dict()["summary"])
```

### Targets

Any object with `create_payment`, `get_payment`, `handle_webhook` and
`reconcile` (the `pixbreaker.types.Target` protocol) can be attacked. Failures
are raised as `pixbreaker.types.TargetError`.

- `pixbreaker.memory_target.MemoryTarget` is a thread-safe in-memory payment
  system with idempotent creation, webhook deduplication and a status state
  machine (`transition_payment`). With `MemoryTargetConfig(demo_bugs=True)` it
  sometimes skips idempotency on create and stops protecting terminal states
  and webhook deduplication.
- `pixbreaker.http_target.HTTPTarget(base_url, timeout=15.0)` speaks JSON to a
  running service using the standard library only.

### Chaos suite

`pixbreaker.chaos.run_chaos_suite(target)` runs the scenarios in
`CHAOS_SCENARIOS` — a flood of 1000 copies of one webhook, 500 concurrent
creates with one idempotency key, and a backlog of 50 create-and-reconcile
calls — and returns one `AttackResult` per scenario.

### Retry and circuit breaker

- `pixbreaker.retry.classify_error(err)` sorts an error by its message into a
  `RetryClass`. `retry_with_backoff(config, operation)` retries with
  exponential backoff and jitter, stops at once on permanent errors, pauses
  longer on overload errors, draws on a shared `RetryBudget` (100 retries per
  minute), and raises `RetryError` when it gives up.
- `pixbreaker.circuit_breaker.CircuitBreaker(threshold, reset_timeout)` opens
  after `threshold` consecutive failures, refuses calls with
  `CircuitOpenError` while open, and lets up to three probe calls through once
  `reset_timeout` seconds have passed.

## What this package does not do

It contains no payment service, database or background workers of its own.
HTTP mode needs an already running service; the in-memory target is the only
system included, and its state lives only as long as the process.

## Tests

```
pip install .[test]
pytest
```