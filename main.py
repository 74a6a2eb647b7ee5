#!/usr/bin/env python3
"""
FlowQi Ledger Service

Runs the Exact Online sync jobs on a schedule for every configured
organization, serves the HTTP API, and offers one-off runs and Excel imports
from the command line.
"""

import argparse
import importlib
import logging
import signal
import sys
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from flowqi.config.loader import (
    cfg,
    get_job_config,
    get_sync_organizations,
    is_job_enabled,
    load_config,
    validate_config,
)
from flowqi.server import record_job_error, record_job_start, record_job_success, set_scheduler_running
from flowqi.utils.time_windows import format_duration, utc_now

JOBS = ("gl_accounts", "transactions")


def setup_logging():
    """Setup structured logging based on configuration."""
    log_level = cfg("global.log_level", "INFO")
    log_format = cfg("global.log_format", "text")

    if log_format == "json":
        import structlog

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        formatter = structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
            ],
        )
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logging.basicConfig(level=getattr(logging, log_level.upper()), handlers=[handler])
    else:
        logging.basicConfig(
            level=getattr(logging, log_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )


logger = logging.getLogger(__name__)

scheduler: BackgroundScheduler | None = None


def create_job_runner(job: str, organization_id: str) -> Callable:
    """
    Create a runner for one Exact sync job and organization.

    Args:
        job: Job name ("gl_accounts" or "transactions")
        organization_id: Organization to sync

    Returns:
        Callable job runner function
    """
    domain = f"exact_{job}"

    def run_job():
        """Execute the ETL job with metrics and logging."""
        start_time = record_job_start(domain)
        logger.info(f"Starting job {domain} for organization {organization_id}")

        try:
            module = importlib.import_module(f"flowqi.jobs.{domain}")
            etl_function = getattr(module, f"run_{domain}_etl")

            kwargs = {"organization_id": organization_id}
            job_config = get_job_config(job)
            if "lookback_days" in job_config:
                kwargs["lookback_days"] = job_config["lookback_days"]

            result = etl_function(**kwargs)
            record_job_success(domain, start_time, result)

            duration = utc_now() - datetime.fromtimestamp(start_time, UTC)
            logger.info(
                f"Job {domain} completed successfully for organization {organization_id}",
                extra={
                    "domain": domain,
                    "organization_id": organization_id,
                    "duration": format_duration(duration),
                    "result": result,
                },
            )
            return result

        except Exception as e:
            record_job_error(domain, start_time, str(e))

            duration = utc_now() - datetime.fromtimestamp(start_time, UTC)
            logger.error(
                f"Job {domain} failed for organization {organization_id}: {e}",
                extra={
                    "domain": domain,
                    "organization_id": organization_id,
                    "duration": format_duration(duration),
                    "error": str(e),
                },
                exc_info=True,
            )
            # Don't re-raise - the scheduler keeps running other jobs
            return None

    return run_job


def purge_token_history_job():
    from flowqi.db.exact_tokens import purge_token_history

    days = cfg("exact.tokens.history_retention_days", 90)
    deleted = purge_token_history(days)
    logger.info(f"Purged {deleted} Exact token history rows older than {days} days")


def setup_job_scheduler() -> BackgroundScheduler:
    """Setup and configure the job scheduler."""
    scheduler = BackgroundScheduler(
        timezone=cfg("global.timezone", "Europe/Amsterdam"),
        job_defaults=cfg(
            "scheduler.job_defaults",
            {"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
        ),
    )

    def job_listener(event: JobExecutionEvent):
        if event.exception:
            logger.error(f"Job {event.job_id} failed: {event.exception}")
        else:
            logger.info(f"Job {event.job_id} completed")

    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
    return scheduler


def register_jobs(scheduler: BackgroundScheduler) -> int:
    """
    Register every enabled job for every configured organization.

    Returns:
        Number of jobs registered
    """
    if not cfg("exact.enabled", True):
        logger.info("Exact Online integration disabled, skipping jobs")
        return 0

    organizations = get_sync_organizations()
    if not organizations:
        logger.warning("No organizations configured under exact.organizations")

    timezone = cfg("global.timezone", "Europe/Amsterdam")
    jobs_registered = 0

    for job in JOBS:
        if not is_job_enabled(job):
            logger.info(f"Job {job} disabled, skipping")
            continue

        schedule = get_job_config(job).get("schedule")
        if not schedule:
            logger.warning(f"No schedule configured for exact.jobs.{job}")
            continue

        for organization_id in organizations:
            job_id = f"exact_{job}_{organization_id}"
            try:
                scheduler.add_job(
                    func=create_job_runner(job, organization_id),
                    trigger=CronTrigger.from_crontab(schedule, timezone=timezone),
                    id=job_id,
                    name=f"Exact {job.replace('_', ' ').title()} ETL ({organization_id})",
                    replace_existing=True,
                )
                jobs_registered += 1
                logger.info(f"Registered job: {job_id} with schedule: {schedule}")
            except Exception as e:
                logger.error(f"Failed to register job {job_id}: {e}")

    if jobs_registered:
        scheduler.add_job(
            func=purge_token_history_job,
            trigger=CronTrigger.from_crontab("0 3 * * 0", timezone=timezone),
            id="exact_token_history_purge",
            name="Exact token history purge",
            replace_existing=True,
        )

    return jobs_registered


def run_single_job(job: str, organization_id: str) -> int:
    """
    Run a single job once and exit.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    if job.startswith("exact_"):
        job = job[len("exact_") :]
    if job not in JOBS:
        logger.error(f"Unknown job: {job}. Choose from: {', '.join(JOBS)}")
        return 1

    logger.info(f"Running single job: {job} for organization {organization_id}")
    result = create_job_runner(job, organization_id)()
    if result is None:
        return 1

    logger.info(f"Single job {job} completed: {result}")
    return 0


def run_excel_import(path: str, organization_id: str) -> int:
    from flowqi.importers.excel_gl_accounts import ExcelImportError, import_gl_accounts

    try:
        result = import_gl_accounts(path, organization_id)
    except ExcelImportError as e:
        logger.error(f"Excel import failed: {e}")
        return 1

    for row_error in result.row_errors:
        logger.warning(
            f"Row {row_error['row']} ({row_error['code']}) not imported: {row_error['reason']}"
        )
    print(f"Excel import result: {result.to_dict()}")
    return 0 if result.errors == 0 else 1


def start_api_server() -> threading.Thread | None:
    """Serve the HTTP API (including /healthz and /metrics) in a background thread."""
    if not cfg("observability.metrics.enabled", True):
        logger.info("API server disabled by configuration")
        return None

    import uvicorn

    from flowqi.server import app

    port = cfg("observability.metrics.port", 8000)
    thread = threading.Thread(
        target=uvicorn.run,
        kwargs={"app": app, "host": "0.0.0.0", "port": port, "log_config": None},
        daemon=True,
    )
    thread.start()
    logger.info(f"API server listening on port {port}")
    return thread


def handle_shutdown(signum, frame):
    """Handle graceful shutdown signals."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")

    if scheduler:
        set_scheduler_running(False)
        scheduler.shutdown(wait=True)
        logger.info("Scheduler shut down complete")

    sys.exit(0)


def main():
    """Main entrypoint for the FlowQi ledger service."""
    global scheduler

    parser = argparse.ArgumentParser(description="FlowQi Ledger Service")
    parser.add_argument("--run", help="Run a single job once (gl_accounts or transactions)")
    parser.add_argument("--org", help="Organization ID for --run and --import-excel")
    parser.add_argument("--import-excel", metavar="PATH", help="Import GL accounts from a workbook")
    parser.add_argument("--config", default="config/app.yaml", help="Configuration file path")
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration and exit"
    )

    args = parser.parse_args()

    load_config(args.config)
    setup_logging()
    logger.info("Starting FlowQi Ledger Service")

    try:
        validate_config()
        if args.validate_config:
            logger.info("Configuration is valid")
            return 0

        if args.run or args.import_excel:
            if not args.org:
                logger.error("--org is required with --run and --import-excel")
                return 1
            if args.import_excel:
                return run_excel_import(args.import_excel, args.org)
            return run_single_job(args.run, args.org)

        signal.signal(signal.SIGTERM, handle_shutdown)
        signal.signal(signal.SIGINT, handle_shutdown)

        start_api_server()

        scheduler = setup_job_scheduler()
        jobs_count = register_jobs(scheduler)
        if jobs_count == 0:
            logger.warning("No sync jobs registered. Check your configuration.")

        set_scheduler_running(True)
        scheduler.start()
        logger.info(f"Scheduler started with {jobs_count} sync jobs. Press Ctrl+C to stop.")

        while True:
            time.sleep(1)

    except KeyboardInterrupt:
        handle_shutdown(signal.SIGINT, None)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    exit(main())
