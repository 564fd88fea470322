from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .models import JobStatus, RecordStatus

class ContactIn(BaseModel):
    company_name: str = Field(min_length=1, max_length=500)
    first_name: str = Field(min_length=1, max_length=200)
    last_name: str = Field(min_length=1, max_length=200)
    profile_url: str | None = Field(default=None, max_length=2_000)
    title: str | None = Field(default=None, max_length=500)

class JobCreate(BaseModel):
    filename: str | None = Field(default=None, max_length=255)
    contacts: list[ContactIn] = Field(min_length=1, max_length=5_000)

class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    filename: str | None = None
    status: JobStatus
    total_records: int
    processed_records: int
    failed_records: int
    created_at: datetime
    updated_at: datetime

class RecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    status: RecordStatus
    company_name: str
    profile_url: str | None = None
    first_name: str
    last_name: str
    title: str | None = None
    message1: str | None = None
    message2: str | None = None
    message3: str | None = None
    tone: str | None = None
    attempt_count: int
    last_error: str | None = None

class RecordCorrection(BaseModel):
    message1: str | None = Field(default=None, max_length=10_000)
    message2: str | None = Field(default=None, max_length=10_000)
    message3: str | None = Field(default=None, max_length=10_000)
    tone: str | None = Field(default=None, max_length=64)

class RegenerateRequest(BaseModel):
    message_number: Literal[1, 2, 3, "all"] = "all"

class GeneratedContent(BaseModel):
    message1: str
    message2: str
    message3: str
    tone: str

class CycleResult(BaseModel):
    jobs_processed: int = 0
    records_processed: int = 0
    records_failed: int = 0
    records_retried: int = 0
    records_recovered: int = 0
    timestamp: datetime
