from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Optional

from services.email_sender import templates
from services.models import Notifier
from services.tracker_store import FailedRecord, TrackerStore

logger = logging.getLogger(__name__)


class AdminAlerter:
    """Sends operator alerts; a failing alert is logged, never raised."""

    def __init__(self, notifier: Optional[Notifier], admin_email: str):
        self.notifier = notifier
        self.admin_email = (admin_email or "").strip()

    def send_html(self, subject: str, html: str) -> bool:
        if self.notifier is None or not self.admin_email:
            logger.warning("admin alert not sent (ADMIN_EMAIL not configured): %s", subject)
            return False
        try:
            self.notifier.send(self.admin_email, subject, html)
        except Exception as e:
            logger.error("admin alert failed subject=%r: %s", subject, e)
            return False
        return True

    def __call__(self, subject: str, message: str) -> bool:
        subj, html = templates.plain_alert(subject, message)
        return self.send_html(subj, html)


class FailurePolicy:
    """Failure bookkeeping, alert de-duplication and the daily summary.

    Every failure is written to the failed-orders record (attempt counter,
    reason, timestamp). At most one alert per key is sent per day; the
    suppression set lives in memory and is emptied by ``reset_daily_failures``.
    """

    def __init__(
        self,
        tracker: TrackerStore,
        alerter: AdminAlerter,
        *,
        max_attempts: int = 0,
        now: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.tracker = tracker
        self.alerter = alerter
        self.max_attempts = max_attempts
        self.tz = tz
        self._now = now or (lambda: datetime.now(timezone.utc).astimezone(tz))
        self._alerted_today: set[str] = set()
        self._lock = threading.Lock()
        self.last_error: Optional[Dict[str, str]] = None

    def _today(self) -> str:
        # same calendar day as the midnight reset
        now = self._now()
        if self.tz is not None:
            now = now.astimezone(self.tz)
        return now.date().isoformat()

    def record_error(self, message: str) -> None:
        self.last_error = {"message": message, "time": self._now().isoformat()}

    def _claim_alert(self, key: str) -> bool:
        cache_key = f"{key}-{self._today()}"
        with self._lock:
            if cache_key in self._alerted_today:
                return False
            self._alerted_today.add(cache_key)
            return True

    def log_daily_error(
        self,
        order_id: str,
        message: str,
        *,
        file_name: str = "",
        requires_human: bool = False,
    ) -> bool:
        """Record a failure; return True when an alert went out for it."""
        stamp = self._now().isoformat()

        def mutate(record: FailedRecord) -> bool:
            entry = record.get(order_id) or {}
            try:
                count = int(entry.get("count") or 0)
            except (TypeError, ValueError):
                count = 0
            entry.update(
                {
                    "reason": message[:500],
                    "count": count + 1,
                    "last_failed_at": stamp,
                    "requires_human": bool(requires_human),
                }
            )
            entry.setdefault("first_failed_at", stamp)
            if file_name:
                entry["file"] = file_name
            record[order_id] = entry
            return True

        self.tracker.update_failed(mutate)
        self.record_error(f"{order_id}: {message}")

        if not self._claim_alert(order_id):
            logger.info("order_id=%s already alerted today; skipping duplicate alert", order_id)
            return False
        subject, html = templates.failure_alert(order_id, message, requires_human=requires_human)
        return self.alerter.send_html(subject, html)

    def alert_once(self, key: str, subject: str, message: str) -> bool:
        if not self._claim_alert(key):
            logger.info("alert key=%s already sent today", key)
            return False
        return self.alerter(subject, message)

    def is_dead_lettered(self, order_id: str, failed: Optional[FailedRecord] = None) -> bool:
        if self.max_attempts <= 0:
            return False
        record = failed if failed is not None else self.tracker.load_failed()
        entry = record.get(order_id)
        if not isinstance(entry, dict):
            return False
        try:
            return int(entry.get("count") or 0) >= self.max_attempts
        except (TypeError, ValueError):
            return False

    def clear_succeeded(self, order_id: str) -> bool:
        removed = self.tracker.remove_failed(order_id)
        if removed:
            logger.info("order_id=%s succeeded; removed from failed record", order_id)
        return removed

    def send_daily_summary(self) -> bool:
        failed = self.tracker.load_failed()
        if not failed:
            logger.info("daily summary: no failed orders, nothing sent")
            return False
        subject, html = templates.daily_summary(failed)
        sent = self.alerter.send_html(subject, html)
        logger.info("daily summary sent=%s entries=%d", sent, len(failed))
        return sent

    def reset_daily_failures(self) -> None:
        with self._lock:
            self._alerted_today.clear()
        logger.info("daily alert suppression reset")

    def status(self) -> Dict[str, Any]:
        return {"lastError": self.last_error}
