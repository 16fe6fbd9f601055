import time
from enum import Enum
from typing import Callable

from tenantctl.config import Settings
from tenantctl.models import StackOutcome


class PollDecision(str, Enum):
    CONTINUE = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


class PollingPolicy:
    """Poll cadence and attempt ceiling for the reconciliation loop."""

    def __init__(self, interval_seconds: int = 30, max_attempts: int = 60, sleep: Callable[[float], None] = time.sleep):
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, sleep: Callable[[float], None] = time.sleep) -> "PollingPolicy":
        return cls(settings.poll_interval_seconds, settings.max_poll_attempts, sleep)

    def decide(self, outcome: StackOutcome, attempts: int) -> PollDecision:
        if outcome == StackOutcome.SUCCEEDED:
            return PollDecision.COMPLETE
        if outcome == StackOutcome.FAILED:
            return PollDecision.FAILED
        if attempts >= self.max_attempts:
            return PollDecision.TIMEOUT
        return PollDecision.CONTINUE

    def wait(self) -> None:
        self.sleep(self.interval_seconds)


class RetryPolicy:
    """Bounded exponential backoff for retryable store writes."""

    def __init__(self, max_retries: int = 3, base_delay: float = 0.1, sleep: Callable[[float], None] = time.sleep):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(settings.batch_max_retries, settings.batch_base_delay, sleep)

    def delay(self, retry: int) -> float:
        return (2 ** retry) * self.base_delay

    def backoff(self, retry: int) -> None:
        self.sleep(self.delay(retry))
