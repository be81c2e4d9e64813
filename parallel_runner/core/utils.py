"""Shared utility functions for parallel_runner core modules."""

import logging
import random
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    jitter: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool],
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Run ``fn`` until it succeeds or ``policy.max_attempts`` is exhausted.

    Non-retryable exceptions propagate immediately. The last retryable
    exception is re-raised once attempts run out.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return fn()
        except Exception as e:
            if not is_retryable(e) or attempt == attempts - 1:
                raise
            delay = policy.get_delay(attempt)
            logger.debug(
                f"{description} failed (attempt {attempt + 1}/{attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)
    raise AssertionError("unreachable")


def slugify(raw: str) -> str:
    """Reduce an agent id to a lowercase ``[a-z0-9-]`` slug.

    Runs of other characters collapse to a single dash; an id with no usable
    characters becomes ``agent``.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", raw.lower()).strip("-")
    return slug[:64].rstrip("-") or "agent"


def unique_slugs(agent_ids: list[str]) -> list[str]:
    """Slugify each id, suffixing repeats with -2, -3, ... in order."""
    used: set[str] = set()
    slugs = []
    for agent_id in agent_ids:
        base = slugify(agent_id)
        slug = base
        n = 1
        while slug in used:
            n += 1
            slug = f"{base}-{n}"
        used.add(slug)
        slugs.append(slug)
    return slugs


def truncate_output(output: str, max_length: int = 2000) -> str:
    """Truncate output keeping the tail, where failures are usually reported."""
    if len(output) <= max_length:
        return output
    if max_length <= 3:
        return output[-max_length:]
    return "..." + output[-(max_length - 3) :]
