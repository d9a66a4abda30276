"""Centralized retry policy and slippage escalation schedule."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Literal, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from signal_cycle.config import Settings
from signal_cycle.utils.logging import get_logger

T = TypeVar("T")

_logger = get_logger("signal_cycle.execution.retry")


@dataclass(slots=True)
class RetryPolicy:
    """Bounded attempts, exponential backoff, retryable-error predicate."""

    max_attempts: int = 3
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 8.0
    retry_on: tuple[type[BaseException], ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        retry_on: tuple[type[BaseException], ...],
    ) -> RetryPolicy:
        return cls(
            max_attempts=settings.request_max_attempts,
            backoff_min=settings.request_backoff_min,
            backoff_max=settings.request_backoff_max,
            retry_on=retry_on,
        )

    def retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(self.retry_on),
            wait=wait_exponential(
                multiplier=self.backoff_multiplier,
                min=self.backoff_min,
                max=self.backoff_max,
            ),
            stop=stop_after_attempt(self.max_attempts),
            before_sleep=_log_retry,
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
        """Run ``fn`` under this policy; the last error is re-raised."""
        return self.retrying()(fn, *args, **kwargs)


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    _logger.warning(
        "request_retry",
        attempt=retry_state.attempt_number,
        error=str(error) if error is not None else None,
        fn=getattr(retry_state.fn, "__name__", None),
    )


@dataclass(slots=True)
class SlippageSchedule:
    """Acceptable slippage per attempt, escalating up to a cap (percent)."""

    start_pct: float = 0.01
    max_pct: float = 8.0
    mode: Literal["geometric", "linear"] = "geometric"
    step: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SlippageSchedule:
        return cls(
            start_pct=settings.slippage_start_pct,
            max_pct=settings.slippage_max_pct,
            mode=settings.slippage_escalation,
            step=settings.slippage_step,
        )

    def tolerances(self) -> Iterator[float]:
        """Yield increasing tolerances; the cap is always the final value."""
        if self.mode == "geometric" and self.step <= 1.0:
            raise ValueError("geometric_slippage_step_must_exceed_1")
        current = min(self.start_pct, self.max_pct)
        while True:
            yield current
            if current >= self.max_pct:
                return
            if self.mode == "geometric":
                following = current * self.step
            else:
                following = current + self.step
            current = min(following, self.max_pct)
