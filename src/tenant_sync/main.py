"""Process entry point for scheduled tenant reconciliation.

Transport adapters (Exchange Online, Graph) are supplied by the
deployment as TenantJob collaborators; this module wires logging, runs
the jobs and turns the reports into an exit code for the scheduler.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from datetime import UTC, datetime

from .engine import DEFAULT_MAX_PARALLEL_TENANTS, TenantJob, TenantReport, sync_tenants

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_ABORTED = 2

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def exit_code(reports: Sequence[TenantReport]) -> int:
    """Map tenant reports to a process exit code.

    EXIT_ABORTED if any tenant run aborted (unexpected error or failed
    initial listing), EXIT_PARTIAL if any item failed or a deadline cut a
    run short, EXIT_OK otherwise.
    """
    code = EXIT_OK
    for report in reports:
        parts = [p.result for p in (report.rules, report.grants) if p is not None]
        if report.error is not None or any(r.error is not None for r in parts):
            return EXIT_ABORTED
        if not report.success:
            code = EXIT_PARTIAL
    return code


async def main(
    jobs: Sequence[TenantJob],
    max_parallel: int = DEFAULT_MAX_PARALLEL_TENANTS,
) -> int:
    """Run all tenant jobs and return the exit code."""
    logger = logging.getLogger(__name__)
    logger.info("Starting tenant sync", extra={"tenants": len(jobs), "max_parallel": max_parallel})

    reports = await sync_tenants(jobs, max_parallel=max_parallel)

    for report in reports:
        for line in report.messages:
            logger.info(line, extra={"tenant_id": report.tenant_id, "success": report.success})

    code = exit_code(reports)
    logger.info("Tenant sync finished", extra={"exit_code": code})
    return code


def run(jobs: Sequence[TenantJob], max_parallel: int = DEFAULT_MAX_PARALLEL_TENANTS) -> None:
    """Blocking entry point for schedulers."""
    setup_logging()
    sys.exit(asyncio.run(main(jobs, max_parallel=max_parallel)))
