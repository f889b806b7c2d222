from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import Settings
from .models import ProcessorSummary
from .processor import NotificationDispatchProcessor

logger = logging.getLogger(__name__)

POLLER_BATCH_LIMIT = 5
POLLER_JOB_ID = "whatsapp-dispatch-poller"


class LocalDispatchPoller:
    """In-process fallback for deployments without an external cron trigger.

    Ticks never overlap: a tick that finds the previous one still running is
    skipped instead of queued.
    """

    def __init__(
        self,
        *,
        processor: NotificationDispatchProcessor,
        settings: Settings,
        interval_seconds: int | None = None,
        batch_limit: int = POLLER_BATCH_LIMIT,
    ) -> None:
        self._processor = processor
        self._settings = settings
        self._interval_seconds = interval_seconds or settings.effective_poller_interval_seconds
        self._batch_limit = batch_limit
        self._run_lock = threading.Lock()
        self._scheduler: BackgroundScheduler | None = None

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self._interval_seconds, timezone=timezone.utc),
            id=POLLER_JOB_ID,
            name="WhatsApp dispatch poller",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "whatsapp dispatch poller started interval=%ss batch_limit=%s",
            self._interval_seconds,
            self._batch_limit,
        )

    def stop(self, wait: bool = True) -> None:
        scheduler = self._scheduler
        if scheduler is None:
            return
        self._scheduler = None
        if scheduler.running:
            scheduler.shutdown(wait=wait)
        logger.info("whatsapp dispatch poller stopped")

    def run_once(self) -> ProcessorSummary | None:
        if self._settings.automation_mode == "disabled":
            return None
        if not self._run_lock.acquire(blocking=False):
            return None
        try:
            summary = self._processor.process_pending(limit=self._batch_limit)
        except Exception:
            logger.exception("whatsapp dispatch poller tick failed")
            return None
        finally:
            self._run_lock.release()
        if summary.sent or summary.failed:
            logger.info(
                "whatsapp dispatch poller processed scanned=%s sent=%s failed=%s skipped=%s",
                summary.total_scanned,
                summary.sent,
                summary.failed,
                summary.skipped,
            )
        return summary
