"""Bounded-time, bounded-attempt calls to the generation service.

Every attempt runs under its own timeout. Timeouts and transport errors are
retried with exponential backoff; once attempts run out a GenerationError is
raised, which the orchestrator turns into a stage failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from storyforge.llm import LLM, LLMError

logger = logging.getLogger(__name__)


class GenerationError(LLMError):
    """Raised when a generation request fails after all retries."""

    def __init__(self, stage: str, attempts: int, message: str) -> None:
        super().__init__(message, retryable=False)
        self.stage = stage
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and retry settings for one generation request.

    Args:
        timeout:       Seconds allowed per attempt.
        max_attempts:  Total attempts, including the first.
        base_delay:    Backoff before the second attempt; doubles each retry.
        max_delay:     Upper bound on any single backoff.
        timeout_floor: Minimum per-call time the backend needs. The effective
                       timeout never drops below it.
    """

    timeout: float = 120.0
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    timeout_floor: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("backoff delays must not be negative")

    @property
    def effective_timeout(self) -> float:
        return max(self.timeout, self.timeout_floor)

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def generate_with_retry(
    llm: LLM,
    stage: str,
    prompt: str,
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Call `llm` for `stage`, retrying on timeouts and transport errors.

    Raises:
        GenerationError: all attempts failed, or a non-retryable error occurred.
    """
    policy = policy or RetryPolicy()
    timeout = policy.effective_timeout
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        logger.debug(
            "generate attempt %d/%d stage=%s timeout=%.1fs",
            attempt, policy.max_attempts, stage, timeout,
        )
        try:
            return await asyncio.wait_for(llm(stage, prompt), timeout=timeout)
        except asyncio.TimeoutError as e:
            last_error = e
            logger.warning(
                "stage=%s attempt %d/%d timed out after %.1fs",
                stage, attempt, policy.max_attempts, timeout,
            )
        except LLMError as e:
            last_error = e
            if not e.retryable:
                logger.error("stage=%s failed with non-retryable error: %s", stage, e)
                raise GenerationError(stage, attempt, str(e)) from e
            logger.warning(
                "stage=%s attempt %d/%d failed: %s", stage, attempt, policy.max_attempts, e
            )
        except Exception as e:
            # opaque generator: treat unknown failures as transport errors
            last_error = e
            logger.warning(
                "stage=%s attempt %d/%d failed: %r", stage, attempt, policy.max_attempts, e
            )

        if attempt < policy.max_attempts:
            delay = policy.backoff(attempt)
            logger.debug("waiting %.2fs before retry", delay)
            await sleep(delay)

    if isinstance(last_error, asyncio.TimeoutError):
        message = f"timed out after {policy.max_attempts} attempt(s) of {timeout:.1f}s"
    else:
        message = f"failed after {policy.max_attempts} attempt(s): {last_error}"
    raise GenerationError(stage, policy.max_attempts, message) from last_error
