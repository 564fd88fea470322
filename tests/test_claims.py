import threading
from datetime import timedelta

from sqlalchemy import select

from outreach_queue.models import Record, RecordStatus, utcnow
from outreach_queue.schemas import GeneratedContent
from outreach_queue.store import RecordStore

def _records(session_factory):
    with session_factory() as s:
        return list(s.scalars(select(Record).order_by(Record.created_at)))

def test_only_one_of_two_competing_claims_wins(session_factory, seed_job):
    seed_job(1)
    with session_factory() as a, session_factory() as b:
        store_a, store_b = RecordStore(a), RecordStore(b)
        seen_a = store_a.pending_candidates(1)
        seen_b = store_b.pending_candidates(1)
        assert seen_a == seen_b

        won = store_a.claim(seen_a[0], lease_seconds=60)
        lost = store_b.claim(seen_b[0], lease_seconds=60)

    assert won is not None
    assert won.attempt_count == 1
    assert lost is None

    (rec,) = _records(session_factory)
    assert rec.status == RecordStatus.claimed
    assert rec.attempt_count == 1
    assert rec.claimed_at is not None
    assert rec.lease_expires_at is not None

def test_concurrent_claims_on_same_record_from_threads(session_factory, seed_job):
    seed_job(1)
    (record_id,) = [r.id for r in _records(session_factory)]

    barrier = threading.Barrier(2)
    lock = threading.Lock()
    results = []

    def worker():
        with session_factory() as s:
            barrier.wait()
            claimed = RecordStore(s).claim(record_id, lease_seconds=60)
        with lock:
            results.append(claimed)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(results) == 2
    assert sum(1 for r in results if r is not None) == 1
    (rec,) = _records(session_factory)
    assert rec.attempt_count == 1

def test_pending_candidates_are_oldest_first_and_bounded(session_factory, seed_job):
    first = seed_job(3)
    seed_job(3)
    with session_factory() as s:
        ids = RecordStore(s).pending_candidates(4)
    recs = _records(session_factory)
    assert ids == [r.id for r in recs[:4]]
    assert {r.job_id for r in recs[:3]} == {first}

def test_expired_lease_returns_record_to_pending(session_factory, seed_job):
    seed_job(1)
    long_ago = utcnow() - timedelta(minutes=30)
    with session_factory() as s:
        store = RecordStore(s)
        (record_id,) = store.pending_candidates(1)
        store.claim(record_id, lease_seconds=60, now=long_ago)
        recovered = store.recover_expired(max_attempts=3)

    assert [(r.id, r.status) for r in recovered] == [(record_id, RecordStatus.pending)]
    (rec,) = _records(session_factory)
    assert rec.status == RecordStatus.pending
    assert rec.attempt_count == 1
    assert rec.last_error == "lease expired"
    assert rec.claimed_at is None

def test_expired_lease_without_attempts_left_fails_record(session_factory, seed_job):
    seed_job(1)
    with session_factory() as s:
        store = RecordStore(s)
        (record_id,) = store.pending_candidates(1)
        store.claim(record_id, lease_seconds=60, now=utcnow() - timedelta(minutes=30))
        recovered = store.recover_expired(max_attempts=1)

    assert recovered[0].status == RecordStatus.failed
    (rec,) = _records(session_factory)
    assert rec.status == RecordStatus.failed
    assert rec.last_error.startswith("attempts exhausted (1/1)")

def test_live_lease_is_not_recovered(session_factory, seed_job):
    seed_job(1)
    with session_factory() as s:
        store = RecordStore(s)
        (record_id,) = store.pending_candidates(1)
        store.claim(record_id, lease_seconds=600)
        assert store.recover_expired(max_attempts=3) == []

def test_stale_claim_holder_cannot_overwrite_newer_claim(session_factory, seed_job):
    seed_job(1)
    content = GeneratedContent(message1="a", message2="b", message3="c", tone="executive")
    with session_factory() as s:
        store = RecordStore(s)
        (record_id,) = store.pending_candidates(1)
        stale = store.claim(record_id, lease_seconds=60, now=utcnow() - timedelta(minutes=30))
        store.recover_expired(max_attempts=3)
        fresh = store.claim(record_id, lease_seconds=60)

        assert store.complete(stale, content, processing_time_ms=10) is False
        assert store.complete(fresh, content, processing_time_ms=10) is True

    (rec,) = _records(session_factory)
    assert rec.status == RecordStatus.completed
    assert rec.attempt_count == 2
    assert rec.message1 == "a"
    assert rec.tone == "executive"
