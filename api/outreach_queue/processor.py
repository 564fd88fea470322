"""One processing cycle: recover leases, claim a batch, generate, reconcile.

``run_cycle`` is safe to invoke from overlapping timers or several processes
at once. The only coordination point is the conditional claim in
``RecordStore.claim``; everything after it works on records this cycle owns.
"""
import enum
import logging
import time
import uuid
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable

import redis
from sqlalchemy.orm import Session, sessionmaker

from .generator import GenerationError, GenerationService
from .models import RecordStatus, utcnow
from .reconcile import JobReconciler
from .schemas import CycleResult
from .store import ClaimedRecord, JobStore, RecordStore

log = logging.getLogger("processor")

class Outcome(str, enum.Enum):
    completed = "completed"
    retried = "retried"
    failed = "failed"
    lost = "lost"

class BatchProcessor:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        generation: GenerationService,
        lease_seconds: int = 300,
        cycle_deadline_seconds: float = 240.0,
        concurrency: int = 5,
        dead_letter: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.generation = generation
        self.lease_seconds = lease_seconds
        self.cycle_deadline_seconds = cycle_deadline_seconds
        self.concurrency = max(1, concurrency)
        self.dead_letter = dead_letter
        self.clock = clock

    def run_cycle(self, batch_size: int, max_attempts: int) -> CycleResult:
        cycle_id = uuid.uuid4().hex[:12]
        started = time.monotonic()
        touched_jobs: set[str] = set()
        recovered_failed = 0

        with self.session_factory() as db:
            records = RecordStore(db)

            recovered = records.recover_expired(max_attempts, now=self.clock())
            for r in recovered:
                touched_jobs.add(r.job_id)
                if r.status == RecordStatus.failed:
                    recovered_failed += 1
                    self._dead_letter(r.id)

            claimed: list[ClaimedRecord] = []
            for record_id in records.pending_candidates(batch_size):
                c = records.claim(record_id, self.lease_seconds, now=self.clock())
                if c is None:
                    log.info(
                        "record claimed by another cycle, skipping",
                        extra={"cycle_id": cycle_id, "record_id": record_id, "event": "claim_skipped"},
                    )
                    continue
                claimed.append(c)

            # jobs whose records all settled without a reconcile (crash, deadline)
            touched_jobs.update(JobStore(db).unsettled_ids())

        if claimed:
            log.info(
                f"claimed {len(claimed)} records",
                extra={"cycle_id": cycle_id, "event": "batch_claimed"},
            )
        outcomes = self._process_batch(claimed, max_attempts, cycle_id, started)
        touched_jobs.update(c.job_id for c in claimed)

        with self.session_factory() as db:
            reconciler = JobReconciler(db)
            for job_id in sorted(touched_jobs):
                reconciler.reconcile(job_id)

        result = CycleResult(
            jobs_processed=len(touched_jobs),
            records_processed=sum(1 for o in outcomes if o != Outcome.lost),
            records_failed=outcomes.count(Outcome.failed) + recovered_failed,
            records_retried=outcomes.count(Outcome.retried),
            records_recovered=len(recovered),
            timestamp=utcnow(),
        )
        log.info(
            f"cycle finished: {result.records_processed} records from {result.jobs_processed} jobs "
            f"({result.records_failed} failed, {result.records_retried} retried)",
            extra={"cycle_id": cycle_id, "event": "cycle_finished"},
        )
        return result

    def _process_batch(
        self,
        claimed: list[ClaimedRecord],
        max_attempts: int,
        cycle_id: str,
        started: float,
    ) -> list[Outcome]:
        if not claimed:
            return []

        pool = ThreadPoolExecutor(
            max_workers=min(self.concurrency, len(claimed)),
            thread_name_prefix=f"cycle-{cycle_id}",
        )
        futures = [pool.submit(self._process_record, c, max_attempts, cycle_id) for c in claimed]
        remaining = max(0.0, self.cycle_deadline_seconds - (time.monotonic() - started))
        done, not_done = wait(futures, timeout=remaining, return_when=FIRST_EXCEPTION)
        pool.shutdown(wait=False, cancel_futures=True)

        for f in done:
            if f.exception() is not None:
                # store failure: abort, committed claims stay claimed until their lease lapses
                log.error(
                    "cycle aborted by infrastructure error",
                    extra={"cycle_id": cycle_id, "event": "cycle_aborted"},
                )
                raise f.exception()

        if not_done:
            log.warning(
                f"cycle deadline reached, {len(not_done)} records left claimed for lease recovery",
                extra={"cycle_id": cycle_id, "event": "cycle_deadline"},
            )
        return [f.result() for f in done]

    def _process_record(self, claimed: ClaimedRecord, max_attempts: int, cycle_id: str) -> Outcome:
        extra = {"cycle_id": cycle_id, "record_id": claimed.id, "job_id": claimed.job_id}
        started = time.monotonic()

        try:
            content = self.generation.generate(claimed)
        except GenerationError as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            with self.session_factory() as db:
                records = RecordStore(db)

                if e.retryable and claimed.attempt_count < max_attempts:
                    if not records.release(claimed, str(e), elapsed_ms):
                        return Outcome.lost
                    log.warning(
                        f"record failed, retry on a later cycle ({claimed.attempt_count}/{max_attempts})",
                        extra={**extra, "event": "record_retry_scheduled"},
                        exc_info=True,
                    )
                    return Outcome.retried

                error = str(e)
                if e.retryable:
                    error = f"attempts exhausted ({claimed.attempt_count}/{max_attempts}): {e}"
                if not records.fail(claimed, error, elapsed_ms):
                    return Outcome.lost

            self._dead_letter(claimed.id)
            log.error("record moved to dlq", extra={**extra, "event": "record_dlq"}, exc_info=True)
            return Outcome.failed

        elapsed_ms = int((time.monotonic() - started) * 1000)
        with self.session_factory() as db:
            if not RecordStore(db).complete(claimed, content, elapsed_ms):
                return Outcome.lost
        log.info(
            f"record completed in {elapsed_ms}ms",
            extra={**extra, "event": "record_completed"},
        )
        return Outcome.completed

    def _dead_letter(self, record_id: str) -> None:
        if self.dead_letter is None:
            return
        try:
            self.dead_letter(record_id)
        except redis.RedisError:
            # the failed status is already committed; the list is only an operator view
            log.error(
                "dead-letter push failed, record stays failed in the store",
                extra={"record_id": record_id, "event": "dlq_push_failed"},
                exc_info=True,
            )
