from dataclasses import dataclass

from .settings import Settings

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: delay(n) = base_delay * multiplier ** (n - 1), capped."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.multiplier < 1 or self.max_delay < 0:
            raise ValueError("backoff parameters must be non-negative, multiplier >= 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the attempt that follows failed attempt number ``attempt``."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    @classmethod
    def from_settings(cls, s: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=s.retry_max_attempts,
            base_delay=s.retry_base_delay,
            multiplier=s.retry_multiplier,
            max_delay=s.retry_max_delay,
        )
