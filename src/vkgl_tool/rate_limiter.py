"""Token bucket rate limiting for the normalization services."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""
    requests_per_second: float
    burst_size: Optional[int] = None  # Max tokens in bucket
    
    def __post_init__(self):
        if self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if self.burst_size is None:
            self.burst_size = max(1, int(self.requests_per_second))


class TokenBucket:
    """Token bucket for one service.
    
    The pipeline is single threaded, so the bucket only tracks time; the
    clock and sleep functions can be replaced in tests.
    """
    
    def __init__(self,
                 config: RateLimitConfig,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.tokens = float(config.burst_size)
        self.last_update = clock()
        
        # Stats
        self.total_requests = 0
        self.total_wait_time = 0.0
    
    def acquire(self, tokens: int = 1) -> float:
        """
        Take tokens from the bucket, sleeping until they are available.
        
        Returns:
            Seconds spent waiting
        """
        self._refill()
        wait_time = 0.0
        if self.tokens < tokens:
            wait_time = (tokens - self.tokens) / self.config.requests_per_second
            logger.debug(f"Rate limit: waiting {wait_time:.2f}s for {tokens} tokens")
            self.sleep(wait_time)
            self.total_wait_time += wait_time
            self._refill()
        self.tokens = max(0.0, self.tokens - tokens)
        self.total_requests += 1
        return wait_time
    
    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self.last_update)
        self.tokens = min(float(self.config.burst_size),
                          self.tokens + elapsed * self.config.requests_per_second)
        self.last_update = now
    
    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        return {
            'total_requests': self.total_requests,
            'total_wait_time': self.total_wait_time,
            'average_wait_time': self.total_wait_time / self.total_requests if self.total_requests > 0 else 0,
            'current_tokens': self.tokens,
            'max_tokens': self.config.burst_size
        }
