"""Retry decisions and exponential backoff for failed steps."""

from __future__ import annotations

from datetime import datetime, timedelta

from flowforge.config.schema import OnFailConfig
from flowforge.core.run import StepRun


class RetryPolicy:
    """Wraps a step's ``on_fail`` block.

    Retry counts start at 0 and are compared with ``<`` against
    ``max_retries``, so ``max_retries: 0`` never retries.
    """

    def __init__(self, step_id: str, on_fail: OnFailConfig | None):
        self.step_id = step_id
        self.on_fail = on_fail

    @property
    def max_retries(self) -> int:
        return self.on_fail.max_retries if self.on_fail else 0

    @property
    def target(self) -> str:
        if self.on_fail and self.on_fail.retry_step:
            return self.on_fail.retry_step
        return self.step_id

    def should_retry(self, record: StepRun) -> bool:
        return record.retries < self.max_retries

    def delay(self, retry_number: int) -> float:
        if self.on_fail is None or self.on_fail.backoff is None:
            return 0.0
        return self.on_fail.backoff.delay_for(retry_number)

    def not_before(self, retry_number: int, now: datetime) -> datetime | None:
        delay = self.delay(retry_number)
        if delay <= 0:
            return None
        return now + timedelta(seconds=delay)
