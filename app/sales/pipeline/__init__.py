"""
Sales ingestion pipeline.

Turns a raw payload into validated drafts:
receipt text → classify → assemble, or workbook → read rows → segment,
followed by the validity gate that keeps incomplete drafts away from
persistence.
"""
import logging
from typing import Callable, Optional

from app.sales.schemas import DraftBill, ParseResult, Rejection, SourceKind
from app.sales.pipeline.assembler import assemble_bills, split_submissions
from app.sales.pipeline.segmenter import segment_rows
from app.sales.pipeline.workbook import read_rows

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def apply_validity_gate(drafts: list[DraftBill]) -> ParseResult:
    """Split drafts into persistable bills and rejections."""
    result = ParseResult()
    for draft in drafts:
        missing = draft.missing_fields()
        if missing:
            logger.info(
                "Rejecting draft at %d (bill_no=%s): missing %s",
                draft.source_index, draft.bill_no, ", ".join(missing),
            )
            result.rejected.append(
                Rejection(bill_no=draft.bill_no, source_index=draft.source_index, missing=missing)
            )
        else:
            result.bills.append(draft)
    return result


def parse_receipt_text(
    raw_text: str, on_progress: Optional[ProgressCallback] = None
) -> ParseResult:
    logger.info("Pipeline start: assemble receipt text")
    drafts = assemble_bills(raw_text, on_segment=on_progress)
    result = apply_validity_gate(drafts)
    result.total_units = len(split_submissions(raw_text))
    logger.info("Assembled %d drafts, %d valid", len(drafts), len(result.bills))
    return result


def parse_workbook(
    data: bytes, on_progress: Optional[ProgressCallback] = None
) -> ParseResult:
    logger.info("Pipeline start: read workbook")
    rows = read_rows(data)
    logger.info("Pipeline: segment %d rows", len(rows))
    drafts = segment_rows(rows, on_row=on_progress)
    result = apply_validity_gate(drafts)
    result.total_units = len(rows)
    logger.info("Segmented %d drafts, %d valid", len(drafts), len(result.bills))
    return result


def parse_source(
    data: bytes,
    kind: SourceKind,
    on_progress: Optional[ProgressCallback] = None,
) -> ParseResult:
    """Dispatch a payload to the parser for its source kind."""
    if kind == SourceKind.SPREADSHEET:
        return parse_workbook(data, on_progress)
    return parse_receipt_text(data.decode("utf-8", errors="replace"), on_progress)
