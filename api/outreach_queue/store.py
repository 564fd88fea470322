import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from .models import Job, JobStatus, Record, RecordStatus, utcnow
from .schemas import ContactIn, GeneratedContent, RecordCorrection

log = logging.getLogger("store")

@dataclass(frozen=True)
class ClaimedRecord:
    """Snapshot of a record taken right after a successful claim.

    ``attempt_count`` doubles as the claim token: finalizing writes only
    apply while the row is still claimed with this exact count.
    """

    id: str
    job_id: str
    attempt_count: int
    company_name: str
    profile_url: str | None
    first_name: str
    last_name: str
    title: str | None

    @classmethod
    def from_record(cls, row: Record) -> "ClaimedRecord":
        return cls(
            id=row.id,
            job_id=row.job_id,
            attempt_count=row.attempt_count,
            company_name=row.company_name,
            profile_url=row.profile_url,
            first_name=row.first_name,
            last_name=row.last_name,
            title=row.title,
        )

@dataclass(frozen=True)
class RecoveredRecord:
    id: str
    job_id: str
    status: RecordStatus

class RecordStore:
    def __init__(self, db: Session):
        self.db = db

    def pending_candidates(self, limit: int) -> list[str]:
        stmt = (
            select(Record.id)
            .where(Record.status == RecordStatus.pending)
            .order_by(Record.created_at, Record.id)
            .limit(limit)
        )
        ids = list(self.db.scalars(stmt))
        # end the read transaction before claiming
        self.db.commit()
        return ids

    def claim(self, record_id: str, lease_seconds: int, now: datetime | None = None) -> ClaimedRecord | None:
        """Compare-and-set pending -> claimed. Returns None when another claimer won."""
        now = now or utcnow()
        result = self.db.execute(
            update(Record)
            .where(Record.id == record_id, Record.status == RecordStatus.pending)
            .values(
                status=RecordStatus.claimed,
                claimed_at=now,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                attempt_count=Record.attempt_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            return None

        return ClaimedRecord.from_record(self.db.get(Record, record_id, populate_existing=True))

    def _finalize(self, claimed: ClaimedRecord, **values) -> bool:
        result = self.db.execute(
            update(Record)
            .where(
                Record.id == claimed.id,
                Record.status == RecordStatus.claimed,
                Record.attempt_count == claimed.attempt_count,
            )
            .values(claimed_at=None, lease_expires_at=None, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            log.warning(
                "claim lost before finalize, result discarded",
                extra={"record_id": claimed.id, "job_id": claimed.job_id, "event": "claim_lost"},
            )
            return False
        return True

    def complete(self, claimed: ClaimedRecord, content: GeneratedContent, processing_time_ms: int) -> bool:
        return self._finalize(
            claimed,
            status=RecordStatus.completed,
            message1=content.message1,
            message2=content.message2,
            message3=content.message3,
            tone=content.tone,
            last_error=None,
            processing_time_ms=processing_time_ms,
        )

    def release(self, claimed: ClaimedRecord, error: str, processing_time_ms: int) -> bool:
        return self._finalize(
            claimed,
            status=RecordStatus.pending,
            last_error=error,
            processing_time_ms=processing_time_ms,
        )

    def fail(self, claimed: ClaimedRecord, error: str, processing_time_ms: int) -> bool:
        return self._finalize(
            claimed,
            status=RecordStatus.failed,
            last_error=error,
            processing_time_ms=processing_time_ms,
        )

    def recover_expired(self, max_attempts: int, now: datetime | None = None) -> list[RecoveredRecord]:
        """Return claimed records with a lapsed lease to pending, or fail them when out of attempts."""
        now = now or utcnow()
        rows = self.db.execute(
            select(Record.id, Record.job_id, Record.attempt_count).where(
                Record.status == RecordStatus.claimed,
                Record.lease_expires_at < now,
            )
        ).all()
        self.db.commit()

        recovered = []
        for record_id, job_id, attempts in rows:
            exhausted = attempts >= max_attempts
            new_status = RecordStatus.failed if exhausted else RecordStatus.pending
            error = (
                f"attempts exhausted ({attempts}/{max_attempts}): lease expired"
                if exhausted
                else "lease expired"
            )
            result = self.db.execute(
                update(Record)
                .where(
                    Record.id == record_id,
                    Record.status == RecordStatus.claimed,
                    Record.attempt_count == attempts,
                    Record.lease_expires_at < now,
                )
                .values(
                    status=new_status,
                    claimed_at=None,
                    lease_expires_at=None,
                    last_error=error,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if result.rowcount == 1:
                recovered.append(RecoveredRecord(id=record_id, job_id=job_id, status=new_status))
                log.warning(
                    "expired claim recovered",
                    extra={"record_id": record_id, "job_id": job_id, "event": "lease_recovered"},
                )
        return recovered

    def count_by_status(self, job_id: str) -> dict[RecordStatus, int]:
        rows = self.db.execute(
            select(Record.status, func.count()).where(Record.job_id == job_id).group_by(Record.status)
        ).all()
        counts = {status: 0 for status in RecordStatus}
        for status, n in rows:
            counts[RecordStatus(status)] = n
        return counts

    def attempted_count(self, job_id: str) -> int:
        """Records of the job that have been claimed at least once."""
        return self.db.scalar(
            select(func.count()).select_from(Record).where(Record.job_id == job_id, Record.attempt_count > 0)
        )

    def get(self, record_id: str) -> Record | None:
        return self.db.get(Record, record_id)

    def list_for_job(self, job_id: str) -> list[Record]:
        stmt = select(Record).where(Record.job_id == job_id).order_by(Record.created_at, Record.id)
        return list(self.db.scalars(stmt))

    def correct(self, record: Record, correction: RecordCorrection) -> Record:
        """Owner edit of a completed record's outputs. Status is left alone."""
        for field, value in correction.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(record, field, value)
        record.updated_at = utcnow()
        self.db.commit()
        return record

class JobStore:
    def __init__(self, db: Session):
        self.db = db

    def create(self, owner_id: str, contacts: list[ContactIn], filename: str | None = None) -> Job:
        """Ingest a batch of contacts as one job with every record pending."""
        now = utcnow()
        job = Job(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            filename=filename,
            status=JobStatus.pending,
            total_records=len(contacts),
            processed_records=0,
            failed_records=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        for i, contact in enumerate(contacts):
            self.db.add(
                Record(
                    id=str(uuid.uuid4()),
                    job_id=job.id,
                    status=RecordStatus.pending,
                    attempt_count=0,
                    # keep upload order stable for oldest-first selection
                    created_at=now + timedelta(microseconds=i),
                    updated_at=now,
                    **contact.model_dump(),
                )
            )
        self.db.commit()
        return job

    def get(self, job_id: str) -> Job | None:
        return self.db.get(Job, job_id, populate_existing=True)

    def unsettled_ids(self, limit: int = 50) -> list[str]:
        """Open jobs with no pending or claimed records left, i.e. awaiting a final reconcile."""
        open_records = (
            select(Record.id)
            .where(
                Record.job_id == Job.id,
                Record.status.in_([RecordStatus.pending, RecordStatus.claimed]),
            )
            .exists()
        )
        stmt = (
            select(Job.id)
            .where(Job.status.in_([JobStatus.pending, JobStatus.processing]), ~open_records)
            .order_by(Job.updated_at)
            .limit(limit)
        )
        return list(self.db.scalars(stmt))

    def write_aggregates(
        self,
        job_id: str,
        status: JobStatus,
        total: int,
        processed: int,
        failed: int,
    ) -> bool:
        """Store recomputed aggregates unless the job already reached a terminal status."""
        result = self.db.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status.not_in([JobStatus.completed, JobStatus.failed]),
                )
            )
            .values(
                status=status,
                total_records=total,
                processed_records=processed,
                failed_records=failed,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1
