class Backoff:
    """Exponential reconnect delays: base, base*factor, ... capped at ``cap`` seconds."""

    def __init__(self, base: float = 1.0, factor: float = 2.0, cap: float = 30.0) -> None:
        if base <= 0 or factor < 1 or cap < base:
            raise ValueError("backoff needs base > 0, factor >= 1 and cap >= base")
        self.base = base
        self.factor = factor
        self.cap = cap
        self.attempt = 0

    def next_delay(self) -> float:
        delay = min(self.cap, self.base * self.factor**self.attempt)
        if delay < self.cap:
            self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0
