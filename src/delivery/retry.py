import random


class BackoffPolicy:
    """Exponential retry delay with a cap and additive jitter.

    ``delay(n) = min(cap, base * 2**(n-1)) + uniform(0, base)`` where ``n``
    is the number of attempts made so far (1 after the first failure).
    """

    DEFAULT_BASE = 30.0  # seconds
    DEFAULT_CAP = 7200.0  # 2h

    def __init__(
        self,
        base: float = DEFAULT_BASE,
        cap: float = DEFAULT_CAP,
        jitter: bool = True,
        rng: random.Random | None = None,
    ):
        if base <= 0:
            raise ValueError("base must be positive")
        if cap < base:
            raise ValueError("cap must be >= base")
        self.base = base
        self.cap = cap
        self.jitter = jitter
        self._rng = rng or random.Random()

    def exponential(self, attempt: int) -> float:
        """Deterministic part of the delay."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        # 2**(n-1) overflows float range long before it matters; stop at the cap.
        if attempt > 64:
            return self.cap
        return min(self.cap, self.base * 2 ** (attempt - 1))

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait before retrying after the ``attempt``-th failure."""
        delay = self.exponential(attempt)
        if self.jitter:
            delay += self._rng.uniform(0, self.base)
        return delay

    def __call__(self, attempt: int) -> float:
        return self.next_delay(attempt)

    @property
    def max_delay(self) -> float:
        return self.cap + (self.base if self.jitter else 0.0)
