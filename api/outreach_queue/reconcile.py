import logging

from sqlalchemy.orm import Session

from .models import Job, JobStatus, RecordStatus
from .store import JobStore, RecordStore

log = logging.getLogger("reconcile")

def derive_job_status(
    counts: dict[RecordStatus, int],
    current: JobStatus = JobStatus.pending,
    attempted: int = 0,
) -> JobStatus:
    """Status implied by record counts. An open job never moves back to pending."""
    total = sum(counts.values())
    completed = counts[RecordStatus.completed]
    failed = counts[RecordStatus.failed]

    if completed == total:
        return JobStatus.completed
    if completed + failed == total:
        return JobStatus.failed
    if current == JobStatus.processing or attempted > 0 or counts[RecordStatus.pending] < total:
        return JobStatus.processing
    return JobStatus.pending

class JobReconciler:
    """Recomputes a job's aggregates from its records.

    Counts are always rebuilt from record state, never incremented, so two
    cycles reconciling the same job concurrently converge on the same row.
    Terminal jobs are left untouched.
    """

    def __init__(self, db: Session):
        self.records = RecordStore(db)
        self.jobs = JobStore(db)

    def reconcile(self, job_id: str) -> Job | None:
        job = self.jobs.get(job_id)
        if job is None:
            log.warning("job not found in db", extra={"job_id": job_id, "event": "job_missing_db"})
            return None
        if job.status.terminal:
            return job

        counts = self.records.count_by_status(job_id)
        status = derive_job_status(counts, job.status, self.records.attempted_count(job_id))
        written = self.jobs.write_aggregates(
            job_id,
            status=status,
            total=sum(counts.values()),
            processed=counts[RecordStatus.completed],
            failed=counts[RecordStatus.failed],
        )
        if written:
            log.info(
                f"job reconciled: {counts[RecordStatus.completed]} completed, "
                f"{counts[RecordStatus.failed]} failed of {sum(counts.values())}, status {status.value}",
                extra={"job_id": job_id, "event": "job_reconciled"},
            )
        return self.jobs.get(job_id)
