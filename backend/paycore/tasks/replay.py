"""Background task that drains the anomaly queue and releases held earnings"""
import asyncio
import logging
from typing import Callable, Dict, List, Tuple

from sqlalchemy.orm import Session

from paycore.core.config import settings
from paycore.services.anomaly_service import replay_failed_events
from paycore.services.ledger_service import release_matured_earnings
from paycore.services.notification_service import Notification, emit_notifications

replay_logger = logging.getLogger("replay")


def run_replay_cycle(session_factory: Callable[[], Session]) -> Tuple[Dict[str, int], List[Notification]]:
    """One pass: re-run retryable anomalies, then release matured credits.

    Returns the pass summary and the notifications owed for events that
    applied during the replay.
    """
    db = session_factory()
    try:
        report = replay_failed_events(db)
        released = 0
        if settings.EARNINGS_HOLD_DAYS > 0:
            released = release_matured_earnings(db)
        summary = dict(report.as_dict(), released=released)
        if report.attempted or released:
            replay_logger.info(f"Replay cycle finished: {summary}")
        return summary, report.notifications
    finally:
        db.close()


async def anomaly_replay_task(session_factory: Callable[[], Session], interval_seconds: int = None):
    """Runs forever; each cycle executes in a worker thread so the event loop stays free"""
    interval = interval_seconds or settings.ANOMALY_REPLAY_INTERVAL_SECONDS
    replay_logger.info(f"Anomaly replay task started (every {interval}s)")

    while True:
        await asyncio.sleep(interval)
        try:
            _, notifications = await asyncio.to_thread(run_replay_cycle, session_factory)
            if notifications:
                await emit_notifications(notifications)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            replay_logger.error(f"Anomaly replay cycle failed: {e}", exc_info=True)
