from __future__ import annotations

import anyio
import structlog

from apkllama.client import InferenceClient
from apkllama.config import get_settings
from apkllama.findings import load_findings, write_report
from apkllama.logging_setup import configure_logging
from apkllama.orchestrator import AnalysisOrchestrator
from apkllama.prompts import load_template
from apkllama.runner import BatchRunner

logger = structlog.get_logger(__name__)


async def _main() -> None:
    settings = get_settings()
    configure_logging(service="apkllama", level=settings.log_level, fmt=settings.log_format)

    if settings.findings_path is None:
        logger.error("findings_path_missing", hint="set FINDINGS_PATH to the analyzer's findings JSON")
        raise SystemExit(2)

    findings = load_findings(settings.findings_path)
    template = load_template(settings.prompt_template_path)

    client = InferenceClient(settings)
    orchestrator = AnalysisOrchestrator(client, settings)
    try:
        runner = BatchRunner(settings=settings, client=client, orchestrator=orchestrator)
        records = await runner.run(findings, template)
        write_report(settings.report_path, records, model=client.model)
    finally:
        orchestrator.shutdown()


if __name__ == "__main__":
    anyio.run(_main)
