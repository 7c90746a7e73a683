"""
Background job scheduler for conversation maintenance.
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta, timezone

from config import Settings, settings as default_settings
from models.errors import PersistenceFailure
from observability import trace_logger
from store import ConversationStore


class JobScheduler:
    """Background job scheduler."""

    def __init__(self, store: ConversationStore, settings: Settings = None):
        self.store = store
        self.settings = settings or default_settings
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def start(self):
        """Start the scheduler."""
        if not self.settings.enable_background_jobs:
            trace_logger.info("Background jobs disabled")
            return

        self.scheduler.add_job(
            func=self.close_idle_conversations,
            trigger=IntervalTrigger(
                minutes=self.settings.idle_check_interval_minutes
            ),
            id="close_idle_conversations",
            name="Close idle conversations",
            replace_existing=True
        )

        self.scheduler.start()
        trace_logger.info("Job scheduler started")

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            trace_logger.info("Job scheduler stopped")

    def close_idle_conversations(self) -> int:
        """Close open conversations idle longer than the configured number of days."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.settings.idle_conversation_days)
        try:
            closed = self.store.close_idle(cutoff)
        except PersistenceFailure as e:
            trace_logger.error_occurred(
                error_type="idle_sweep_error",
                error_message=str(e)
            )
            return 0

        trace_logger.info(
            "Idle conversations closed",
            closed=closed,
            cutoff=cutoff.isoformat()
        )
        return closed
