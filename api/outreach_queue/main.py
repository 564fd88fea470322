import csv
import io
import logging
import time
import uuid
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from .auth import require_owner, require_trigger_secret
from .db import Base, SessionLocal, engine
from .generator import GenerationError, GenerationService, build_generator
from .logging_utils import setup_logging
from .models import Job, Record, RecordStatus
from .processor import BatchProcessor
from .redis_client import get_redis, push_dead_letter
from .schemas import JobCreate, JobOut, RecordCorrection, RecordOut, RegenerateRequest
from .settings import settings
from .store import ClaimedRecord, JobStore, RecordStore
from .trigger import CRON_PATH

setup_logging(settings.log_level)
log = logging.getLogger("api")

app = FastAPI(title="OutreachQueue API", version="0.3.0")

Base.metadata.create_all(bind=engine)

EXPORT_COLUMNS = (
    "company_name", "first_name", "last_name", "title", "profile_url",
    "status", "message1", "message2", "message3", "tone", "last_error",
)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

@lru_cache
def get_generation() -> GenerationService:
    generator = build_generator(settings.openai_api_key, settings.openai_model, settings.generation_timeout_seconds)
    return GenerationService(generator, timeout_seconds=settings.generation_timeout_seconds)

@lru_cache
def get_processor() -> BatchProcessor:
    return BatchProcessor(
        SessionLocal,
        get_generation(),
        lease_seconds=settings.lease_seconds,
        cycle_deadline_seconds=settings.cycle_deadline_seconds,
        concurrency=settings.generation_concurrency,
        dead_letter=push_dead_letter,
    )

@app.middleware("http")
async def request_id_mw(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.monotonic()
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    if request.url.path not in ("/healthz", "/readyz"):
        log.info(
            f"{request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "event": "http_request",
                "status_code": response.status_code,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
    return response

@app.get("/healthz")
def healthz(request: Request):
    log.info("health ok", extra={"request_id": request.state.request_id, "event": "healthz"})
    return {"ok": True}

@app.get("/readyz")
def readyz(request: Request, db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    r = get_redis()
    r.ping()
    log.info("ready ok", extra={"request_id": request.state.request_id, "event": "readyz"})
    return {"ready": True}

@app.api_route(CRON_PATH, methods=["GET", "POST"], dependencies=[Depends(require_trigger_secret)])
def process_pending(request: Request, processor: BatchProcessor = Depends(get_processor)):
    try:
        result = processor.run_cycle(settings.batch_size, settings.max_attempts)
    except Exception as e:
        log.error(
            "error processing records",
            extra={"request_id": request.state.request_id, "event": "cycle_failed"},
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error", "message": str(e)})

    return {
        "success": True,
        "jobsProcessed": result.jobs_processed,
        "recordsProcessed": result.records_processed,
        "recordsFailed": result.records_failed,
        "timestamp": result.timestamp.isoformat(),
    }

def owned_job(db: Session, job_id: str, owner_id: str) -> Job:
    job = JobStore(db).get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    if job.owner_id != owner_id:
        raise HTTPException(status_code=403, detail="forbidden")
    return job

@app.post("/jobs", response_model=JobOut, status_code=201)
def create_job(
    req: JobCreate,
    request: Request,
    owner_id: str = Depends(require_owner),
    db: Session = Depends(get_db),
):
    job = JobStore(db).create(owner_id, req.contacts, filename=req.filename)
    log.info(
        f"job queued with {job.total_records} records",
        extra={"request_id": request.state.request_id, "job_id": job.id, "event": "job_queued"},
    )
    return JobOut.model_validate(job)

@app.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str, owner_id: str = Depends(require_owner), db: Session = Depends(get_db)):
    return JobOut.model_validate(owned_job(db, job_id, owner_id))

@app.get("/jobs/{job_id}/records", response_model=list[RecordOut])
def list_records(job_id: str, owner_id: str = Depends(require_owner), db: Session = Depends(get_db)):
    owned_job(db, job_id, owner_id)
    return [RecordOut.model_validate(r) for r in RecordStore(db).list_for_job(job_id)]

@app.get("/jobs/{job_id}/export", response_class=PlainTextResponse)
def export_job(job_id: str, owner_id: str = Depends(require_owner), db: Session = Depends(get_db)):
    job = owned_job(db, job_id, owner_id)

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    for r in RecordStore(db).list_for_job(job.id):
        row = [getattr(r, c) for c in EXPORT_COLUMNS]
        row[EXPORT_COLUMNS.index("status")] = r.status.value
        writer.writerow(["" if v is None else v for v in row])

    resp = PlainTextResponse(buf.getvalue(), media_type="text/csv")
    resp.headers["Content-Disposition"] = f'attachment; filename="{job.id}.csv"'
    return resp

def completed_record(db: Session, record_id: str, owner_id: str) -> Record:
    record = RecordStore(db).get(record_id)
    if not record:
        raise HTTPException(status_code=404, detail="record not found")
    owned_job(db, record.job_id, owner_id)
    if record.status != RecordStatus.completed:
        raise HTTPException(status_code=409, detail="record not completed yet")
    return record

@app.patch("/records/{record_id}", response_model=RecordOut)
def correct_record(
    record_id: str,
    req: RecordCorrection,
    request: Request,
    owner_id: str = Depends(require_owner),
    db: Session = Depends(get_db),
):
    if not req.model_dump(exclude_none=True):
        raise HTTPException(status_code=400, detail="at least one of message1, message2, message3 or tone is required")
    record = completed_record(db, record_id, owner_id)

    record = RecordStore(db).correct(record, req)
    log.info(
        "record corrected",
        extra={"request_id": request.state.request_id, "record_id": record.id, "job_id": record.job_id, "event": "record_corrected"},
    )
    return RecordOut.model_validate(record)

@app.post("/records/{record_id}/regenerate", response_model=RecordOut)
def regenerate_record(
    record_id: str,
    req: RegenerateRequest,
    request: Request,
    owner_id: str = Depends(require_owner),
    db: Session = Depends(get_db),
    generation: GenerationService = Depends(get_generation),
):
    record = completed_record(db, record_id, owner_id)
    extra = {"request_id": request.state.request_id, "record_id": record.id, "job_id": record.job_id}

    try:
        content = generation.generate(ClaimedRecord.from_record(record))
    except GenerationError as e:
        log.warning("regeneration failed", extra={**extra, "event": "record_regenerate_failed"}, exc_info=True)
        raise HTTPException(status_code=502, detail=str(e))

    if req.message_number == "all":
        correction = RecordCorrection(**content.model_dump())
    else:
        field = f"message{req.message_number}"
        correction = RecordCorrection(**{field: getattr(content, field)})

    record = RecordStore(db).correct(record, correction)
    log.info(
        f"record regenerated ({req.message_number})",
        extra={**extra, "event": "record_regenerated"},
    )
    return RecordOut.model_validate(record)
