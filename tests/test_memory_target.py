from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from pixbreaker.memory_target import (
    MemoryTarget,
    MemoryTargetConfig,
    hash_request,
    idem_key,
    transition_payment,
)
from pixbreaker.types import (
    CrashableTarget,
    CreatePaymentRequest,
    PaymentStatus,
    Target,
    TargetError,
    WebhookEvent,
)

PIX = "pix@example.com"


def _target(seed=42, demo_bugs=False):
    return MemoryTarget(MemoryTargetConfig(demo_bugs=demo_bugs, seed=seed))


def _req(key, amount=1000, merchant="m1", pix=PIX):
    return CreatePaymentRequest(merchant, key, amount, pix)


def _event(event_id, ref, status):
    return WebhookEvent(event_id, ref, status, datetime.now(timezone.utc))


def _try_create(target, req):
    try:
        return target.create_payment(req).id
    except TargetError:
        return None


def _use_as_target(target: Target, req):
    return target.create_payment(req)


def _crash(target: CrashableTarget):
    before = target.snapshot()
    target.reset()
    return before, target.snapshot()


def test_satisfies_protocols():
    target = _target()
    assert isinstance(target, Target)
    assert isinstance(target, CrashableTarget)
    p = _use_as_target(target, _req("proto-1", 100))
    assert p.id == "pay-1"
    before, after = _crash(target)
    assert before.payments == 1
    assert after.payments == 0


def test_split_brain_leader_isolation():
    t1, t2 = _target(1), _target(2)
    req = _req("split-iso-1", 5555)
    with ThreadPoolExecutor(max_workers=16) as pool:
        f1 = [pool.submit(_try_create, t1, req) for _ in range(50)]
        f2 = [pool.submit(_try_create, t2, req) for _ in range(50)]
        ids = {"1-" + f.result() for f in f1 if f.result()}
        ids |= {"2-" + f.result() for f in f2 if f.result()}
    assert len(ids) == 2


def test_lease_expiration_recovery():
    target = _target()
    req = _req("lease-rec-1", 7777)
    target.create_payment(req)
    target.reset()
    p2 = target.create_payment(req)
    assert p2.id == "pay-1"


def test_retry_amplification_prevention():
    target = _target()
    for i in range(200):
        target.create_payment(_req(f"amp-{i}", 100 + i, pix=f"user{i}@example.com"))
    assert target.snapshot().payments == 200


def test_workload_contention_isolation():
    target = _target()

    def plain(idx):
        target.create_payment(_req(f"cont-{idx}", 100 + idx))

    def with_webhook(idx):
        p = target.create_payment(_req(f"cont-wh-{idx}", 100 + idx))
        target.handle_webhook(_event(f"cont-ev-{idx}", p.provider_ref, PaymentStatus.SETTLED))
        return target.get_payment(p.id).status

    with ThreadPoolExecutor(max_workers=10) as pool:
        plain_futures = [pool.submit(plain, i) for i in range(25)]
        hook_futures = [pool.submit(with_webhook, i) for i in range(25)]
        for f in plain_futures:
            f.result()
        statuses = [f.result() for f in hook_futures]
    assert statuses == [PaymentStatus.SETTLED] * 25
    assert target.snapshot().payments == 50


def test_orphan_recovery():
    target = _target()
    req = _req("orphan-1", 9999)
    target.create_payment(req)
    target.reset()
    assert target.create_payment(req).id == "pay-1"


def test_psp_instability_graceful_degradation():
    target = _target(demo_bugs=True)
    for i in range(50):
        target.create_payment(_req(f"psp-inst-{i}", 100 + i))
    assert target.snapshot().payments == 50


def test_concurrency_idempotency():
    target = _target()
    req = _req("idem-concurrency-001", 1000, merchant="merchant-001")
    with ThreadPoolExecutor(max_workers=20) as pool:
        ids = {i for i in pool.map(lambda _: _try_create(target, req), range(100)) if i}
    assert len(ids) == 1


def test_concurrency_divergent_payload():
    target = _target()
    p1 = target.create_payment(_req("key-1", 1000))
    with pytest.raises(TargetError, match="divergent payload"):
        target.create_payment(_req("key-1", 2000))
    assert p1.id == "pay-1"
    assert target.snapshot().payments == 1


def test_state_transition_consistency():
    target = _target()
    req = _req("state-001", 900)
    p = target.create_payment(req)
    assert p.status is PaymentStatus.SUBMITTED
    p2 = target.create_payment(req)
    assert p2.id == p.id
    assert p2.status == p.status


def test_terminal_state_immutability():
    target = _target()
    p = target.create_payment(_req("terminal-001", 1100))
    target.reconcile(p.id)
    after = target.get_payment(p.id)
    assert after.status is PaymentStatus.SETTLED
    assert after.status.is_terminal()


def test_webhook_durability_after_ack():
    target = _target()
    p = target.create_payment(_req("dur-ack-1", 1500))
    target.handle_webhook(_event("evt-ack-1", p.provider_ref, PaymentStatus.SETTLED))
    assert target.get_payment(p.id).status is PaymentStatus.SETTLED


def test_replay_determinism():
    target = _target()
    req = _req("replay-det-1", 2000)
    p1 = target.create_payment(req)
    p2 = target.create_payment(req)
    assert (p1.id, p1.status) == (p2.id, p2.status)


def test_leader_split_brain_isolation():
    t1, t2 = _target(1), _target(2)
    p1 = t1.create_payment(_req("leader-1", 1000))
    p2 = t2.create_payment(_req("leader-2", 2000, merchant="m2"))
    assert t1.snapshot().payments == 1
    assert t2.snapshot().payments == 1
    t1.handle_webhook(_event("evt-split-1", p1.provider_ref, PaymentStatus.SETTLED))
    assert t1.get_payment(p1.id).status is PaymentStatus.SETTLED
    assert t2.get_payment(p2.id).status is PaymentStatus.SUBMITTED


def test_refund_consistency():
    target = _target()
    p = target.create_payment(_req("ref-cons-1", 3000))
    target.handle_webhook(_event("evt-ref-1", p.provider_ref, PaymentStatus.SETTLED))
    assert target.get_payment(p.id).status is PaymentStatus.SETTLED


def test_outbox_message_written():
    target = _target()
    target.create_payment(_req("outbox-001", 100))
    snap = target.snapshot()
    assert snap.payments == 1
    assert snap.outbox_queued == 1


def test_outbox_no_duplicates():
    target = _target()
    req = _req("outbox-nodup-001", 200)
    target.create_payment(req)
    target.create_payment(req)
    snap = target.snapshot()
    assert snap.payments == 1
    assert snap.outbox_queued == 1


def test_psp_failure_does_not_corrupt_state():
    target = _target(demo_bugs=True)
    p = target.create_payment(_req("psp-fail-001", 1200))
    assert p.id
    assert target.get_payment(p.id).id == p.id


@pytest.mark.parametrize(
    "req",
    [
        CreatePaymentRequest("", "k1", 100, "x"),
        CreatePaymentRequest("m1", "k2", 0, "x"),
        CreatePaymentRequest("m1", "k3", 100, ""),
    ],
)
def test_invalid_payment_rejected(req):
    target = _target()
    with pytest.raises(TargetError, match="invalid payment request"):
        target.create_payment(req)
    assert target.snapshot().payments == 0


def test_crash_recovery_no_state_growth():
    target = _target()
    target.create_payment(_req("crash-001", 600))
    snap1 = target.snapshot()
    target.reset()
    snap2 = target.snapshot()
    assert snap1.payments == 1
    assert snap2.payments == 0
    assert snap1.outbox_queued == 1


def test_recovery_preserves_invariants():
    target = _target()
    req = _req("recovery-001", 700)
    p1 = target.create_payment(req)
    target.reset()
    p2 = target.create_payment(req)
    assert p1.id == p2.id


def test_leader_split_brain_idempotent_retry():
    t1, t2 = _target(1), _target(2)
    req1 = _req("split-leader-1", 1000)
    p1 = t1.create_payment(req1)
    p2 = t2.create_payment(_req("split-leader-2", 2000, merchant="m2"))
    assert p1.id and p2.id
    assert t1.create_payment(req1).id == p1.id
    assert t1.snapshot().payments == 1
    assert t2.snapshot().payments == 1


def test_retry_budget_exhaustion():
    target = _target()
    for i in range(200):
        target.create_payment(_req("budget-" + chr(i), 100 + i))
    assert target.snapshot().payments == 200


def test_queue_fairness():
    target = _target()
    for i in range(50):
        p = target.create_payment(_req(f"fair-{i}", 100 + i))
        assert p.id
    assert target.snapshot().payments == 50


def test_replay_idempotency():
    target = _target()
    req = _req("replay-001", 500)
    p1 = target.create_payment(req)
    p2 = target.create_payment(req)
    assert p1.id == p2.id
    assert p1.status == p2.status


def test_replay_after_crash():
    target = _target()
    req = _req("crash-replay-001", 750)
    p1 = target.create_payment(req)
    target.reset()
    assert target.create_payment(req).id == p1.id


def test_transaction_rollback():
    target = _target()
    with pytest.raises(TargetError):
        target.create_payment(CreatePaymentRequest("", "bad-001", 0, ""))
    snap = target.snapshot()
    assert snap.payments == 0
    assert snap.outbox_queued == 0


def test_partial_failure_cleanup():
    target = _target()
    target.create_payment(_req("partial-001", 800))
    snap = target.snapshot()
    assert snap.payments == 1
    assert snap.outbox_queued == 1


def test_webhook_deduplication():
    target = _target()
    p = target.create_payment(_req("wh-001", 300))
    ev = _event("evt-001", p.provider_ref, PaymentStatus.SETTLED)
    target.handle_webhook(ev)
    target.handle_webhook(ev)
    after = target.get_payment(p.id)
    assert after.status is PaymentStatus.SETTLED
    assert after.version == 3
    assert target.snapshot().webhooks_seen == 1


def test_webhook_out_of_order():
    target = _target()
    p = target.create_payment(_req("wh-ooo-001", 400))
    target.handle_webhook(_event("evt-settled", p.provider_ref, PaymentStatus.SETTLED))
    late = WebhookEvent(
        "evt-submitted",
        p.provider_ref,
        PaymentStatus.SUBMITTED,
        datetime.now(timezone.utc) - timedelta(hours=1),
    )
    target.handle_webhook(late)
    assert target.get_payment(p.id).status is PaymentStatus.SETTLED


def test_webhook_after_cancel():
    target = _target()
    p = target.create_payment(_req("wh-cancel-001", 500))
    target.reconcile(p.id)
    target.handle_webhook(_event("evt-late", p.provider_ref, PaymentStatus.FAILED))
    assert target.get_payment(p.id).status is PaymentStatus.SETTLED


def test_webhook_validation_and_unknown_reference():
    target = _target()
    with pytest.raises(TargetError, match="invalid webhook event"):
        target.handle_webhook(_event("", "prov", PaymentStatus.SETTLED))
    with pytest.raises(TargetError, match="provider reference not found"):
        target.handle_webhook(_event("evt-x", "prov-missing", PaymentStatus.SETTLED))


def test_missing_payment_errors():
    target = _target()
    with pytest.raises(TargetError, match="payment not found"):
        target.get_payment("pay-404")
    with pytest.raises(TargetError, match="payment not found"):
        target.reconcile("pay-404")


def test_returned_payment_is_a_copy():
    target = _target()
    p = target.create_payment(_req("copy-1", 100))
    p.status = PaymentStatus.FAILED
    assert target.get_payment(p.id).status is PaymentStatus.SUBMITTED


def test_demo_bugs_allow_duplicate_creation():
    target = _target(demo_bugs=True)
    req = _req("dup-bug", 100)
    ids = {target.create_payment(req).id for _ in range(200)}
    assert len(ids) > 1


def test_demo_bugs_expose_terminal_mutation_errors():
    target = _target(seed=7, demo_bugs=True)
    p = None
    while p is None or p.status is not PaymentStatus.SUBMITTED:
        p = target.create_payment(_req(f"bug-{target.snapshot().payments}", 100))
    target.reconcile(p.id)
    with pytest.raises(TargetError, match="cannot transition terminal"):
        target.handle_webhook(_event("evt-fail", p.provider_ref, PaymentStatus.FAILED))


def test_hash_request_depends_on_payload():
    a = hash_request(_req("k", 100))
    assert a == hash_request(_req("k", 100))
    assert a != hash_request(_req("k", 101))
    assert len(a) == 64


def test_idem_key_format():
    assert idem_key("m1", "k1") == "m1::k1"


def _payment(status):
    target = _target()
    p = target.create_payment(_req("t", 100))
    p.status = status
    return p


def test_transition_increments_version():
    p = _payment(PaymentStatus.SUBMITTED)
    version = p.version
    transition_payment(p, PaymentStatus.CONFIRMED)
    assert p.status is PaymentStatus.CONFIRMED
    assert p.version == version + 1
    transition_payment(p, PaymentStatus.SETTLED)
    assert p.status is PaymentStatus.SETTLED


def test_transition_same_status_is_noop():
    p = _payment(PaymentStatus.SETTLED)
    version = p.version
    transition_payment(p, PaymentStatus.SETTLED)
    assert p.version == version


@pytest.mark.parametrize(
    "current,nxt,message",
    [
        (PaymentStatus.SETTLED, PaymentStatus.SUBMITTED, "terminal state regression blocked"),
        (PaymentStatus.SETTLED, PaymentStatus.FAILED, "cannot transition terminal SETTLED -> FAILED"),
        (PaymentStatus.CREATED, PaymentStatus.SETTLED, "invalid transition CREATED -> SETTLED"),
        (PaymentStatus.CONFIRMED, PaymentStatus.FAILED, "invalid transition CONFIRMED -> FAILED"),
    ],
)
def test_transition_rejections(current, nxt, message):
    p = _payment(current)
    with pytest.raises(TargetError, match=message):
        transition_payment(p, nxt)
    assert p.status is current


def test_transition_none_payment():
    with pytest.raises(TargetError, match="nil payment"):
        transition_payment(None, PaymentStatus.SETTLED)