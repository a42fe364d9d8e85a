from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from pydantic import BaseModel

from .config import Settings
from .exceptions import GatewayUnavailable
from .gateway import PayoutGateway
from .logger import payments_logger as logger
from .models import AttemptState, OPEN_STATES
from .orchestrator import WithdrawalOrchestrator
from .store import LedgerStore


class SweepReport(BaseModel):
    started_at: datetime
    expired: int = 0
    recovered: int = 0
    resubmitted: int = 0
    settled: int = 0
    failed: int = 0
    resolved: int = 0
    skipped: int = 0
    errors: list[str] = []


class ReconciliationSweep:
    """
    Periodic pass over withdrawal attempts that the request path left open.

    Each step goes through the orchestrator's compare-and-swap transitions,
    so several sweep workers may run at once without double-applying.
    """

    def __init__(self, store: LedgerStore, orchestrator: WithdrawalOrchestrator,
                 gateway: PayoutGateway, settings: Optional[Settings] = None):
        self.store = store
        self.orchestrator = orchestrator
        self.gateway = gateway
        self.settings = settings or Settings()
        self._scheduler: Optional[BackgroundScheduler] = None

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.store.clock()
        report = SweepReport(started_at=now)
        retry_cutoff = now - timedelta(seconds=self.settings.submit_retry_seconds)
        poll_cutoff = now - timedelta(seconds=self.settings.poll_seconds)

        for attempt in self.store.list_attempts(states=OPEN_STATES):
            if attempt.expires_at <= now and attempt.state != AttemptState.PENDING_HOLD:
                result = self.orchestrator.expire(attempt.id)
                if result.applied:
                    report.expired += 1
                else:
                    report.skipped += 1
                continue

            if attempt.state == AttemptState.PENDING_HOLD:
                if attempt.updated_at <= retry_cutoff:
                    result = self.orchestrator.recover_pending(attempt.id)
                    report.recovered += int(result.applied)
                else:
                    report.skipped += 1

            elif attempt.state == AttemptState.HELD:
                if attempt.updated_at > retry_cutoff:
                    report.skipped += 1
                    continue
                result = self.orchestrator.submit(attempt.id)
                self._tally(report, result)
                if result.attempt and result.attempt.state == AttemptState.GATEWAY_SUBMITTED:
                    report.resubmitted += 1

            elif attempt.state == AttemptState.GATEWAY_SUBMITTED:
                if attempt.updated_at > poll_cutoff:
                    report.skipped += 1
                    continue
                try:
                    status = self.gateway.query_status(attempt.gateway_reference or attempt.hold_reference)
                except GatewayUnavailable as e:
                    logger.warning(f"Sweep could not poll {attempt.id}: {e}")
                    report.errors.append(f"{attempt.id}: {e}")
                    continue
                self._tally(report, self.orchestrator.apply_gateway_status(attempt.id, status))

        for attempt in self.store.list_attempts(states=[AttemptState.EXPIRED]):
            if not attempt.gateway_reference and attempt.submit_attempts == 0:
                continue
            result = self.orchestrator.resolve_expired(attempt.id)
            if result.applied:
                report.resolved += 1
            elif result.error:
                report.errors.append(f"{attempt.id}: {result.message}")

        logger.info(
            f"Sweep finished: expired={report.expired} recovered={report.recovered} "
            f"resubmitted={report.resubmitted} settled={report.settled} failed={report.failed} "
            f"resolved={report.resolved} skipped={report.skipped} errors={len(report.errors)}"
        )
        return report

    @staticmethod
    def _tally(report: SweepReport, result) -> None:
        if result.error and result.retryable:
            report.errors.append(f"{result.attempt.id if result.attempt else '?'}: {result.message}")
        if not result.applied or result.attempt is None:
            return
        if result.attempt.state == AttemptState.SUCCEEDED:
            report.settled += 1
        elif result.attempt.state == AttemptState.FAILED:
            report.failed += 1

    def _safe_run(self) -> None:
        try:
            self.run_once()
        except Exception as e:
            # keep the scheduler alive; the next pass retries the same attempts
            logger.error(f"Reconciliation sweep crashed: {e}", exc_info=True)

    def start(self) -> BackgroundScheduler:
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler()
            self._scheduler.add_job(
                self._safe_run, "interval", seconds=self.settings.sweep_interval_seconds,
                id="wallet_reconciliation_sweep", replace_existing=True, max_instances=1, coalesce=True,
            )
            self._scheduler.start()
            logger.info(f"Reconciliation sweep scheduled every {self.settings.sweep_interval_seconds}s")
        return self._scheduler

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Reconciliation sweep stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None
