from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

import structlog

from apkllama.record import RequestRecord
from apkllama.schemas import FindingsDocument, ReportDocument, ReportEntry, ReportSummary
from apkllama.types import Finding, RequestStatus

logger = structlog.get_logger(__name__)


def load_findings(path: Path) -> list[Finding]:
    document = FindingsDocument.model_validate_json(path.read_bytes())
    findings = [item.to_finding() for item in document.findings]
    if document.total is not None and document.total != len(findings):
        logger.warning("findings_total_mismatch", declared=document.total, parsed=len(findings))
    logger.info("findings_loaded", path=str(path), count=len(findings))
    return findings


def build_report(records: Sequence[RequestRecord], model: str) -> ReportDocument:
    entries = [ReportEntry.model_validate(record.to_dict()) for record in records]
    completed = sum(1 for record in records if record.status is RequestStatus.COMPLETED)
    total = len(records)
    return ReportDocument(
        model=model,
        generated_at=datetime.now(timezone.utc),
        summary=ReportSummary(
            total=total,
            completed=completed,
            failed=sum(1 for record in records if record.status.is_retryable),
            cancelled=sum(1 for record in records if record.status is RequestStatus.CANCELLED),
            percent=int(completed * 100 / total) if total else 0,
        ),
        entries=entries,
    )


def write_report(path: Path, records: Sequence[RequestRecord], model: str) -> ReportDocument:
    report = build_report(records, model)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    logger.info("report_written", path=str(path), entries=len(report.entries))
    return report
