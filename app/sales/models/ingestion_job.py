"""
SQLAlchemy model for ingestion job history.
"""
from sqlalchemy import Column, DateTime, Float, JSON, String, Text

from app.sales.models.billing import _utcnow
from app.sales.database import Base


class IngestionJobModel(Base):
    __tablename__ = "ingestion_jobs"

    id = Column(String, primary_key=True)
    file_name = Column(String)
    source_kind = Column(String, nullable=False)  # text | spreadsheet
    source_ref = Column(String)  # URL when the source was fetched remotely
    status = Column(String, nullable=False, default="queued", index=True)
    progress_percent = Column(Float, nullable=False, default=0.0)
    stats_json = Column(JSON)
    ledger_json = Column(JSON)
    error = Column(Text)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    finished_at = Column(DateTime)
