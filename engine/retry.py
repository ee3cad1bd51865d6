"""
OpenClaw - Step Retry Backoff

Workflow ErrorPolicy declares only how many retries a failure class gets.
The delay between attempts comes from RetrySettings:

  - Exponential backoff: base * 2^attempt
  - Fixed cap on any single delay
  - ±jitter randomization so concurrent runs don't retry in lockstep

Usage:
    from engine.retry import RetrySettings, calculate_backoff

    settings = RetrySettings.from_config(get_config())
    delay = calculate_backoff(attempt=0, settings=settings)
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("openclaw.retry")


@dataclass(frozen=True)
class RetrySettings:
    """Backoff configuration shared by every retry in the engine."""
    backoff_base: float = 0.5       # seconds; delay = base * 2^attempt ± jitter
    backoff_max: float = 30.0       # cap on delay between retries
    jitter: float = 0.2             # ±20% randomization on backoff

    @classmethod
    def from_config(cls, config: Any) -> RetrySettings:
        """
        Build from a ConfigLoader.

        Config format:
            retry:
              backoff_base_seconds: 0.5
              backoff_max_seconds: 30
              jitter: 0.2
        """
        return cls(
            backoff_base=float(config.get("retry.backoff_base_seconds", cls.backoff_base)),
            backoff_max=float(config.get("retry.backoff_max_seconds", cls.backoff_max)),
            jitter=float(config.get("retry.jitter", cls.jitter)),
        )


NO_DELAY = RetrySettings(backoff_base=0.0, backoff_max=0.0, jitter=0.0)


def calculate_backoff(
    attempt: int,
    settings: RetrySettings,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number attempt+1 (attempt is 0-indexed)."""
    base_delay = settings.backoff_base * (2 ** attempt)
    capped = min(base_delay, settings.backoff_max)
    jitter_range = capped * settings.jitter
    uniform = (rng or random).uniform
    actual = capped + uniform(-jitter_range, jitter_range)
    return max(0.0, min(actual, settings.backoff_max))
