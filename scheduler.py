import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import LedgerAuditService, all_budget_ids


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.default_timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"ledger_audit: source={source}")
        with session_scope() as session:
            budget_ids = all_budget_ids(session)
            drifted = 0
            for budget_id in budget_ids:
                # report only; repairs are an explicit operator call
                drift = LedgerAuditService(session, budget_id).find_drift()
                if drift:
                    drifted += 1
                    logger.warning(
                        f"ledger_audit: budget={budget_id} drift={len(drift)} "
                        f"repair with POST /budgets/{budget_id}/audit/repair"
                    )
        logger.info(
            f"ledger_audit: source={source} budgets={len(budget_ids)} drifted={drifted}"
        )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.audit_hour, minute=self.settings.audit_minute
        )
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily"],
            id="ledger_audit_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily ledger audit at "
            f"{self.settings.audit_hour:02d}:{self.settings.audit_minute:02d}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
