"""
Retry decisions for failed probe attempts.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Stateless retry decision.

    ``max_retries`` counts retries after the first attempt, so a task that
    keeps failing is dispatched ``max_retries + 1`` times. The delay before a
    retry is the constant ``retry_delay`` unless ``backoff_factor`` is raised
    above 1.0, in which case it grows per retry up to ``max_delay``.
    """
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_factor: float = 1.0
    max_delay: float = 60.0

    @staticmethod
    def retries_used(attempts: int) -> int:
        return max(0, attempts - 1)

    def should_retry(self, attempts: int) -> bool:
        """
        Args:
            attempts: Dispatches made so far, including the one that just failed
        """
        return self.retries_used(attempts) < self.max_retries

    def delay_for(self, attempts: int) -> float:
        """Seconds to wait before the task becomes dispatchable again."""
        if self.backoff_factor == 1.0:
            return self.retry_delay
        delay = self.retry_delay * (self.backoff_factor ** self.retries_used(attempts))
        return min(delay, max(self.max_delay, self.retry_delay))

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            backoff_factor=config.backoff_factor,
            max_delay=config.max_retry_delay,
        )
