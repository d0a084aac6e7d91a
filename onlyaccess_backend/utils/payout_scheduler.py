"""
Payout Scheduler
Periodic jobs for withdrawals, subscription expiry and payment reconciliation using APScheduler
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime
import logging

from services.reconciliation import expire_subscriptions, reconcile_stale_payments
from services.withdrawals import process_due_withdrawals

logger = logging.getLogger(__name__)


class PayoutScheduler:
    """
    Runs the background sweeps for one app instance.
    """

    def __init__(self, mongo, settings, gateway, push_service=None):
        self.mongo = mongo
        self.settings = settings
        self.gateway = gateway
        self.push_service = push_service
        self.scheduler = BackgroundScheduler()
        self.is_running = False

    def _run_withdrawal_sweep(self):
        try:
            process_due_withdrawals(self.mongo, self.settings, self.gateway)
        except Exception:
            logger.exception("Withdrawal sweep failed")

    def _run_subscription_expiry(self):
        try:
            expire_subscriptions(self.mongo)
        except Exception:
            logger.exception("Subscription expiry sweep failed")

    def _run_payment_reconciliation(self):
        try:
            reconcile_stale_payments(self.mongo, self.settings, self.gateway, push_service=self.push_service)
        except Exception:
            logger.exception("Payment reconciliation failed")

    def start(self):
        """Start the scheduler with all payout-related jobs"""
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        # Job 1: Pay out due scheduled withdrawals
        self.scheduler.add_job(
            func=self._run_withdrawal_sweep,
            trigger=IntervalTrigger(minutes=self.settings.WITHDRAWAL_SWEEP_MINUTES),
            id='process_due_withdrawals',
            name='Process Due Withdrawals',
            replace_existing=True,
            max_instances=1
        )

        # Job 2: Expire lapsed subscriptions (hourly, on the hour)
        self.scheduler.add_job(
            func=self._run_subscription_expiry,
            trigger=CronTrigger(minute=0),
            id='expire_subscriptions',
            name='Expire Subscriptions',
            replace_existing=True,
            max_instances=1
        )

        # Job 3: Settle or fail stale pending payments
        self.scheduler.add_job(
            func=self._run_payment_reconciliation,
            trigger=IntervalTrigger(minutes=self.settings.RECONCILE_INTERVAL_MINUTES),
            id='reconcile_stale_payments',
            name='Reconcile Stale Payments',
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        self.is_running = True
        logger.info("Payout scheduler started successfully")

    def stop(self):
        """Stop the scheduler"""
        if not self.is_running:
            return
        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Payout scheduler stopped")

    def get_scheduler_status(self):
        """Get current scheduler status"""
        jobs = []
        if self.is_running:
            for job in self.scheduler.get_jobs():
                jobs.append({
                    'id': job.id,
                    'name': job.name,
                    'next_run': job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            'is_running': self.is_running,
            'jobs': jobs,
            'timestamp': datetime.utcnow().isoformat()
        }
