import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from rdbatch.accounts import AccountDirectory
from rdbatch.config import Settings
from rdbatch.database import build_session_factory
from rdbatch.orchestrator import BatchOrchestrator, NoInputProvider
from rdbatch.processor import BatchProcessor
from rdbatch.run_store import RunStateStore
from rdbatch.schemas import ProcessMode


logger = logging.getLogger(__name__)


def _run_saved_lot(settings: Settings) -> None:
    if not settings.lot_snapshot_path.exists():
        logger.info("no saved lot, scheduled run skipped", extra={"path": str(settings.lot_snapshot_path)})
        return

    orchestrator = BatchOrchestrator(
        settings,
        AccountDirectory(build_session_factory(settings.database_url)),
        RunStateStore(settings.run_state_path),
        BatchProcessor(settings.processor_command, settings.processor_workdir),
        inputs=NoInputProvider(),
    )
    if not orchestrator.reload_lot():
        logger.error("scheduled run could not reload lot", extra={"status": orchestrator.status})
        return

    result = orchestrator.process_batch(ProcessMode.ALL)
    orchestrator.save_lot()
    if result.status in ("failed", "completed_with_issues", "cancelled"):
        logger.error(
            "scheduled batch run did not complete cleanly",
            extra={"result_status": result.status, "succeeded": result.succeeded, "failed": result.failed},
        )
        return
    logger.info(
        "scheduled batch run finished",
        extra={"result_status": result.status, "succeeded": result.succeeded, "selected": result.selected},
    )


def start_scheduler(settings: Settings, *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_saved_lot,
        "cron",
        args=[settings],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_lot",
        replace_existing=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_saved_lot(settings)

    scheduler.start()
