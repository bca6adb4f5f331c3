"""
Job, ledger and progress schemas plus API request / response envelopes.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SourceKind(str, Enum):
    TEXT = "text"
    SPREADSHEET = "spreadsheet"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class LedgerEntry(BaseModel):
    bill_no: Optional[str] = None
    store_name: Optional[str] = None
    source_index: int = 0
    reason: Optional[str] = None


class IngestionLedger(BaseModel):
    created: list[LedgerEntry] = Field(default_factory=list)
    skipped: list[LedgerEntry] = Field(default_factory=list)
    failed: list[LedgerEntry] = Field(default_factory=list)


class IngestionStats(BaseModel):
    total_rows: int = 0
    bills_extracted: int = 0
    bills_created: int = 0
    bills_skipped: int = 0
    bills_failed: int = 0
    items_created: int = 0
    processing_time_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class ProgressEvent(BaseModel):
    progress: float
    status: Optional[str] = None
    stats: Optional[dict] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# API request / response envelopes
# ---------------------------------------------------------------------------

class JobResponse(BaseModel):
    job_id: str
    file_name: Optional[str] = None
    source_kind: str
    source_ref: Optional[str] = None
    status: str
    progress_percent: float = 0.0
    stats: Optional[dict] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class UploadAccepted(BaseModel):
    job_id: str
    status: str = Field(..., description="queued | running")


class IngestionReport(BaseModel):
    job: JobResponse
    ledger: IngestionLedger


class DailyBillRequest(BaseModel):
    bill: str


class RemoteSourceRequest(BaseModel):
    url: str
    source_kind: SourceKind = SourceKind.SPREADSHEET
    file_name: Optional[str] = None
