from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from services.errors import NotifierError

T = TypeVar("T")

logger = logging.getLogger(__name__)


def send_with_retries(
    send: Callable[[], T],
    *,
    attempts: int,
    delay_sec: float,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``send`` up to ``attempts`` times with a fixed delay between tries."""
    attempts = max(1, attempts)
    last_err: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            logger.info("mail attempt=%d/%d to=%s", attempt, attempts, label)
            result = send()
            logger.info("mail sent to=%s", label)
            return result
        except Exception as e:
            last_err = e
            logger.warning("mail attempt=%d/%d to=%s failed: %s", attempt, attempts, label, e)
            if attempt < attempts:
                sleep(delay_sec)
    raise NotifierError(f"Failed to send email after {attempts} attempts: {last_err}") from last_err
