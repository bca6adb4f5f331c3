from app.sales.schemas.base import (  # noqa: F401
    ClassifiedLine,
    DraftBill,
    DraftItem,
    ParseResult,
    RawLine,
    Rejection,
    Role,
)
from app.sales.schemas.jobs import (  # noqa: F401
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    DailyBillRequest,
    IngestionLedger,
    IngestionReport,
    IngestionStats,
    JobResponse,
    JobStatus,
    LedgerEntry,
    ProgressEvent,
    RemoteSourceRequest,
    SourceKind,
    UploadAccepted,
)
