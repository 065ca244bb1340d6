import time
import threading


class TokenBucket:
    def __init__(self, rate_per_minute=8, capacity=None, clock=time.monotonic, sleep=time.sleep):
        self.rate = rate_per_minute / 60.0  # tokens per second
        self.capacity = capacity or rate_per_minute
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self.last = clock()
        self.lock = threading.Lock()

    def acquire(self, tokens=1):
        with self.lock:
            now = self._clock()
            # refill
            self.tokens = min(self.capacity, self.tokens + (now - self.last) * self.rate)
            self.last = now
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            return False

    def wait(self, tokens=1):
        while True:
            if self.acquire(tokens):
                return
            self._sleep(0.05)
