"""
Ingestion orchestrator.

Accepts a payload, records an ``IngestionJob`` and runs parse + persist on a
background worker thread while progress goes out through the broadcaster.

Job lifecycle::

    queued → running → completed | failed

The terminal state is written once; a bill that cannot be persisted lands
in the ledger, it does not fail the job.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterator, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.config import settings
from app.sales.jobs.broadcaster import ProgressBroadcaster
from app.sales.jobs.registry import JobHandle, JobRegistry
from app.sales.jobs.repository import BillRepository
from app.sales.models import IngestionJobModel
from app.sales.pipeline import parse_source
from app.sales.pipeline.customers import resolve_customer_identity
from app.sales.pipeline.workbook import looks_like_xlsx
from app.sales.schemas import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    DraftBill,
    IngestionLedger,
    IngestionReport,
    IngestionStats,
    JobResponse,
    JobStatus,
    LedgerEntry,
    ParseResult,
    ProgressEvent,
    SourceKind,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Job cancelled"
INTERRUPTED_MESSAGE = "Interrupted by service restart"


class InvalidSourceError(ValueError):
    """The payload cannot be ingested at all (checked before a job exists)."""


class JobNotFound(LookupError):
    pass


class JobCancelled(Exception):
    pass


class DownloadError(RuntimeError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _signed(amount: Decimal, is_return: bool) -> Decimal:
    """Returns are stored negative whatever sign the source printed."""
    return -abs(amount) if is_return else amount


def to_job_response(job: IngestionJobModel) -> JobResponse:
    return JobResponse(
        job_id=job.id,
        file_name=job.file_name,
        source_kind=job.source_kind,
        source_ref=job.source_ref,
        status=job.status,
        progress_percent=job.progress_percent or 0.0,
        stats=job.stats_json,
        error=job.error,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class ProgressTracker:
    """Maps parse and persist units onto 0–100.

    Parsing covers ``0..share`` and persistence ``share..100``.  Values are
    rounded to one decimal and emitted only when they advance by at least
    *step* or the phase reaches its last unit; they never go backwards.
    """

    def __init__(
        self,
        emit: Callable[[float], None],
        share: Optional[float] = None,
        step: Optional[float] = None,
    ) -> None:
        self.emit = emit
        self.share = settings.PARSE_PROGRESS_SHARE if share is None else share
        self.step = settings.PROGRESS_STEP if step is None else step
        self.last: Optional[float] = None

    def parse(self, done: int, total: int) -> None:
        if total > 0:
            self._advance(self.share * done / total, done >= total)

    def persist(self, done: int, total: int) -> None:
        if total > 0:
            self._advance(self.share + (100.0 - self.share) * done / total, done >= total)

    def _advance(self, value: float, final: bool) -> None:
        value = round(min(100.0, value), 1)
        if self.last is not None:
            if value < self.last:
                return
            if value - self.last < self.step - 1e-9 and not (final and value > self.last):
                return
        self.last = value
        self.emit(value)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class IngestionOrchestrator:
    def __init__(
        self,
        session_factory,
        broadcaster: Optional[ProgressBroadcaster] = None,
        registry: Optional[JobRegistry] = None,
        repository_factory: Callable = BillRepository,
        http_client_factory: Optional[Callable[[], httpx.Client]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.registry = registry or JobRegistry()
        self.repository_factory = repository_factory
        self.http_client_factory = http_client_factory or (
            lambda: httpx.Client(timeout=settings.DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True)
        )

    # ---------------------------------------------------------------------
    # Submission
    # ---------------------------------------------------------------------

    @staticmethod
    def validate_source(data: bytes, kind, file_name: Optional[str] = None) -> SourceKind:
        try:
            kind = SourceKind(kind)
        except ValueError:
            raise InvalidSourceError(f"Unknown source kind: {kind!r}") from None
        if not data:
            raise InvalidSourceError("Empty payload")
        if len(data) > settings.MAX_UPLOAD_BYTES:
            raise InvalidSourceError(
                f"Payload of {len(data)} bytes exceeds the {settings.MAX_UPLOAD_BYTES} byte limit"
            )
        if kind == SourceKind.SPREADSHEET:
            if file_name and file_name.lower().endswith(".xls"):
                raise InvalidSourceError("Legacy .xls workbooks are not supported, save the file as .xlsx")
            if not looks_like_xlsx(data):
                raise InvalidSourceError("Payload is not an .xlsx workbook")
        return kind

    def submit(self, data: bytes, kind, file_name: Optional[str] = None) -> str:
        """Start a background ingestion and return its job id immediately."""
        kind = self.validate_source(data, kind, file_name)
        job_id = self._create_job(kind, file_name)
        self._start_worker(job_id, lambda handle: (data, kind))
        return job_id

    def submit_url(self, url: str, kind=SourceKind.SPREADSHEET, file_name: Optional[str] = None) -> str:
        """Start a background ingestion of a file fetched from *url*."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidSourceError(f"Unsupported source URL: {url!r}")
        try:
            kind = SourceKind(kind)
        except ValueError:
            raise InvalidSourceError(f"Unknown source kind: {kind!r}") from None
        file_name = file_name or parsed.path.rsplit("/", 1)[-1] or None

        def load(handle: JobHandle) -> tuple[bytes, SourceKind]:
            data = self._download(url, handle)
            return data, self.validate_source(data, kind, file_name)

        job_id = self._create_job(kind, file_name, source_ref=url)
        self._start_worker(job_id, load)
        return job_id

    def run_sync(self, data: bytes, kind, file_name: Optional[str] = None) -> IngestionReport:
        """Ingest inline and return the finished job with its ledger."""
        kind = self.validate_source(data, kind, file_name)
        job_id = self._create_job(kind, file_name)
        handle = self.registry.register(job_id)
        self._mark_running(job_id)
        try:
            self._run(job_id, handle, lambda h: (data, kind))
        finally:
            self.registry.discard(job_id)
        return self.get_report(job_id)

    # ---------------------------------------------------------------------
    # Control
    # ---------------------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """Ask a live worker to stop. Jobs without a worker are failed directly."""
        handle = self.registry.cancel(job_id)
        if handle is not None:
            logger.info("Cancellation requested for job %s", job_id)
            return True
        job = self.get_job(job_id)
        if job is not None and job.status in ACTIVE_STATUSES:
            return self._finish(job_id, JobStatus.FAILED, error=CANCELLED_MESSAGE)
        return False

    def delete_job(self, job_id: str) -> bool:
        """Stop the job's worker if it is still running and remove the job row."""
        handle = self.registry.cancel(job_id)
        if handle is not None and not handle.join(settings.CANCEL_GRACE_SECONDS):
            logger.warning("Worker for job %s still running after cancellation", job_id)
        self.registry.sweep()
        session = self.session_factory()
        try:
            deleted = session.query(IngestionJobModel).filter(IngestionJobModel.id == job_id).delete()
            session.commit()
        finally:
            session.close()
        self.broadcaster.forget(job_id)
        return bool(deleted)

    def delete_all_jobs(self) -> int:
        for handle in self.registry.cancel_all():
            handle.join(settings.CANCEL_GRACE_SECONDS)
        self.registry.sweep()
        session = self.session_factory()
        try:
            job_ids = [row.id for row in session.query(IngestionJobModel.id).all()]
            session.query(IngestionJobModel).delete()
            session.commit()
        finally:
            session.close()
        for job_id in job_ids:
            self.broadcaster.forget(job_id)
        logger.info("Deleted %d ingestion jobs", len(job_ids))
        return len(job_ids)

    def recover_orphans(self) -> int:
        """Fail jobs left queued/running by a previous process."""
        session = self.session_factory()
        try:
            orphans = [
                job.id
                for job in session.query(IngestionJobModel)
                .filter(IngestionJobModel.status.in_(ACTIVE_STATUSES))
                .all()
                if self.registry.get(job.id) is None
            ]
        finally:
            session.close()
        for job_id in orphans:
            self._finish(job_id, JobStatus.FAILED, error=INTERRUPTED_MESSAGE)
        if orphans:
            logger.warning("Marked %d interrupted jobs as failed", len(orphans))
        return len(orphans)

    def shutdown(self) -> None:
        handles = self.registry.cancel_all()
        for handle in handles:
            handle.join(settings.CANCEL_GRACE_SECONDS)
        self.broadcaster.close_all()
        logger.info("Orchestrator stopped (%d workers cancelled)", len(handles))

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[JobResponse]:
        session = self.session_factory()
        try:
            job = session.get(IngestionJobModel, job_id)
            return to_job_response(job) if job is not None else None
        finally:
            session.close()

    def get_report(self, job_id: str) -> IngestionReport:
        session = self.session_factory()
        try:
            job = session.get(IngestionJobModel, job_id)
            if job is None:
                raise JobNotFound(job_id)
            ledger = IngestionLedger(**(job.ledger_json or {}))
            return IngestionReport(job=to_job_response(job), ledger=ledger)
        finally:
            session.close()

    def list_jobs(self) -> list[JobResponse]:
        session = self.session_factory()
        try:
            jobs = (
                session.query(IngestionJobModel)
                .order_by(IngestionJobModel.created_at.desc())
                .all()
            )
            return [to_job_response(job) for job in jobs]
        finally:
            session.close()

    def watch(self, job_id: str) -> Iterator[Optional[ProgressEvent]]:
        """Progress stream for one observer.

        Subscribes before looking at the stored status so a job finishing in
        between is still seen; a finished job yields only its terminal event.
        ``None`` items are keep‑alive ticks.
        """
        sub = self.broadcaster.subscribe(job_id)
        job = self.get_job(job_id)
        if job is None:
            sub.close()
            raise JobNotFound(job_id)
        if job.status in TERMINAL_STATUSES:
            sub.close()
            return iter([
                ProgressEvent(progress=100.0, status=job.status, stats=job.stats, error=job.error)
            ])
        return sub.events(keepalive=settings.SSE_KEEPALIVE_SECONDS)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobResponse]:
        """Block until the job's worker exits (or *timeout*) and return the job."""
        handle = self.registry.get(job_id)
        if handle is not None:
            handle.join(timeout)
        return self.get_job(job_id)

    # ---------------------------------------------------------------------
    # Worker
    # ---------------------------------------------------------------------

    def _create_job(
        self, kind: SourceKind, file_name: Optional[str], source_ref: Optional[str] = None
    ) -> str:
        job_id = str(uuid.uuid4())
        session = self.session_factory()
        try:
            session.add(IngestionJobModel(
                id=job_id,
                file_name=file_name,
                source_kind=kind.value,
                source_ref=source_ref,
                status=JobStatus.QUEUED.value,
                progress_percent=0.0,
            ))
            session.commit()
        finally:
            session.close()
        logger.info("Created %s ingestion job %s (%s)", kind.value, job_id, file_name or "inline")
        return job_id

    def _start_worker(self, job_id: str, load) -> None:
        self.registry.sweep()
        handle = self.registry.register(job_id)
        self._mark_running(job_id)

        def target() -> None:
            try:
                self._run(job_id, handle, load)
            finally:
                self.registry.discard(job_id)

        handle.thread = threading.Thread(target=target, name=f"ingest-{job_id[:8]}", daemon=True)
        handle.thread.start()

    def _mark_running(self, job_id: str) -> None:
        self._update_job(job_id, status=JobStatus.RUNNING.value)

    def _run(self, job_id: str, handle: JobHandle, load) -> None:
        started = time.monotonic()
        ledger = IngestionLedger()
        stats = IngestionStats()
        tracker = ProgressTracker(lambda value: self._emit(job_id, handle, value))

        def on_parse(done: int, total: int) -> None:
            self._check(handle)
            tracker.parse(done, total)

        try:
            self._check(handle)
            data, kind = load(handle)
            self._check(handle)
            result = parse_source(data, kind, on_parse)
            self._persist(job_id, handle, result, tracker, ledger, stats)
        except JobCancelled:
            logger.info("Job %s cancelled", job_id)
            self._finish(job_id, JobStatus.FAILED, stats, ledger, CANCELLED_MESSAGE, started)
        except Exception as exc:
            logger.error("Ingestion job %s crashed: %s", job_id, exc, exc_info=True)
            self._finish(job_id, JobStatus.FAILED, stats, ledger, str(exc) or type(exc).__name__, started)
        else:
            self._finish(job_id, JobStatus.COMPLETED, stats, ledger, None, started)

    def _persist(
        self,
        job_id: str,
        handle: JobHandle,
        result: ParseResult,
        tracker: ProgressTracker,
        ledger: IngestionLedger,
        stats: IngestionStats,
    ) -> None:
        stats.total_rows = result.total_units
        stats.bills_extracted = len(result.bills) + len(result.rejected)
        for rejection in result.rejected:
            ledger.failed.append(LedgerEntry(
                bill_no=rejection.bill_no,
                source_index=rejection.source_index,
                reason=rejection.reason,
            ))
        stats.bills_failed = len(ledger.failed)

        session = self.session_factory()
        try:
            repo = self.repository_factory(session)
            total = len(result.bills)
            for done, draft in enumerate(result.bills, 1):
                self._check(handle)
                self._persist_bill(repo, session, job_id, draft, ledger, stats)
                tracker.persist(done, total)
        finally:
            session.close()
        tracker.persist(1, 1)

    def _persist_bill(self, repo, session, job_id, draft: DraftBill, ledger, stats) -> None:
        entry = LedgerEntry(
            bill_no=draft.bill_no, store_name=draft.store_name, source_index=draft.source_index
        )
        store = None
        try:
            identity = resolve_customer_identity(draft.customer_name, draft.customer_phone)
            customer = repo.upsert_customer(identity.phone, identity.name, identity.is_cashlist)
            store = repo.upsert_store(
                draft.store_name, draft.store_address, draft.store_phone, draft.store_email
            )
            if repo.find_bill(draft.bill_no, store.id) is not None:
                self._skip(entry, ledger, stats)
                return
            repo.create_bill(
                bill_no=draft.bill_no,
                store_id=store.id,
                customer_id=customer.id,
                date=draft.date,
                is_return=draft.is_return,
                payment_type=draft.payment_type,
                net_amount=_signed(draft.total_amount, draft.is_return),
                net_discount=_signed(draft.net_discount, draft.is_return),
                amount_paid=_signed(draft.amount_paid, draft.is_return),
                credit_amount=_signed(draft.credit_amount, draft.is_return),
                items=draft.items,
                job_id=job_id,
            )
        except IntegrityError as exc:
            session.rollback()
            if store is not None and repo.find_bill(draft.bill_no, store.id) is not None:
                # lost an insert race against another worker
                self._skip(entry, ledger, stats)
            else:
                self._fail(job_id, entry, exc, ledger, stats)
        except SQLAlchemyError as exc:
            session.rollback()
            self._fail(job_id, entry, exc, ledger, stats)
        else:
            ledger.created.append(entry)
            stats.bills_created += 1
            stats.items_created += len(draft.items)

    @staticmethod
    def _skip(entry: LedgerEntry, ledger: IngestionLedger, stats: IngestionStats) -> None:
        entry.reason = "already exists"
        ledger.skipped.append(entry)
        stats.bills_skipped += 1

    @staticmethod
    def _fail(
        job_id: str, entry: LedgerEntry, exc: Exception, ledger: IngestionLedger, stats: IngestionStats
    ) -> None:
        logger.warning("Job %s: bill %s failed: %s", job_id, entry.bill_no, exc)
        entry.reason = f"database error: {type(exc).__name__}"
        ledger.failed.append(entry)
        stats.bills_failed += 1

    @staticmethod
    def _check(handle: JobHandle) -> None:
        if handle.cancelled:
            raise JobCancelled(handle.job_id)

    def _emit(self, job_id: str, handle: JobHandle, value: float) -> None:
        self._check(handle)
        self.broadcaster.publish(job_id, value)
        whole = int(value)
        if whole > handle.stored_percent:
            handle.stored_percent = whole
            self._update_job(job_id, progress_percent=value)

    def _download(self, url: str, handle: JobHandle) -> bytes:
        retries = max(1, settings.DOWNLOAD_RETRIES)
        last_error: Optional[Exception] = None
        with self.http_client_factory() as client:
            for attempt in range(1, retries + 1):
                self._check(handle)
                try:
                    response = client.get(url)
                    response.raise_for_status()
                    logger.info("Downloaded %d bytes from %s", len(response.content), url)
                    return response.content
                except httpx.TransportError as exc:
                    last_error = exc
                    logger.warning("Download attempt %d/%d for %s failed: %s", attempt, retries, url, exc)
                    if attempt < retries:
                        handle.cancel_event.wait(attempt)
        raise DownloadError(f"Download failed after {retries} attempts: {last_error}")

    def _update_job(self, job_id: str, **values) -> None:
        session = self.session_factory()
        try:
            job = session.get(IngestionJobModel, job_id)
            if job is None:
                return
            for key, value in values.items():
                setattr(job, key, value)
            session.commit()
        finally:
            session.close()

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        stats: Optional[IngestionStats] = None,
        ledger: Optional[IngestionLedger] = None,
        error: Optional[str] = None,
        started: Optional[float] = None,
    ) -> bool:
        """Write the terminal state and announce it. ``False`` if already terminal."""
        stats = stats or IngestionStats()
        if started is not None:
            stats.processing_time_seconds = round(time.monotonic() - started, 3)
        stats_dict = stats.model_dump()

        session = self.session_factory()
        try:
            job = session.get(IngestionJobModel, job_id)
            if job is not None:
                if job.status in TERMINAL_STATUSES:
                    return False
                job.status = status.value
                if status == JobStatus.COMPLETED:
                    job.progress_percent = 100.0
                job.stats_json = stats_dict
                job.ledger_json = (ledger or IngestionLedger()).model_dump()
                job.error = error
                job.finished_at = _utcnow()
                session.commit()
        finally:
            session.close()

        self.broadcaster.publish_terminal(job_id, status.value, stats_dict, error)
        self.broadcaster.sweep()
        logger.info(
            "Job %s %s: created=%d skipped=%d failed=%d",
            job_id, status.value, stats.bills_created, stats.bills_skipped, stats.bills_failed,
        )
        return True
