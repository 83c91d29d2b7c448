# apps/utils/resilience.py
import logging
import time
from functools import wraps
from django.core.cache import cache

logger = logging.getLogger(__name__)


class CircuitBreakerOpenException(Exception):
    pass


class CircuitBreaker:
    """
    Prevents cascading failures by stopping requests to a failing service.
    """
    def __init__(self, service_name, failure_threshold=5, recovery_timeout=60):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.key_failures = f"cb:fails:{service_name}"
        self.key_open = f"cb:open:{service_name}"

    def __call__(self, func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            # 1. Check Circuit State (Fail Open if cache errors)
            try:
                if cache.get(self.key_open):
                    logger.warning(f"Circuit OPEN: {self.service_name}. Fast failing.")
                    raise CircuitBreakerOpenException(f"{self.service_name} is temporarily down")
            except CircuitBreakerOpenException:
                raise
            except Exception as e:
                logger.error(f"CircuitBreaker cache check failed: {e}")

            # 2. Attempt Execution
            try:
                return func(*args, **kwargs)
            except Exception:
                # 3. Record Failure
                self._safe_record_failure()
                raise

        return wrapper

    def _safe_record_failure(self):
        try:
            # add() seeds the counter with a TTL; incr() keeps the TTL on every backend
            cache.add(self.key_failures, 0, timeout=self.recovery_timeout)
            fails = cache.incr(self.key_failures)

            # Trip Circuit
            if fails >= self.failure_threshold:
                logger.critical(f"Circuit TRIPPED for {self.service_name}!")
                cache.set(self.key_open, "OPEN", timeout=self.recovery_timeout)
                cache.delete(self.key_failures)
        except Exception as e:
            logger.error(f"CircuitBreaker failure bookkeeping failed: {e}")


def with_retry(operation, max_attempts=2, is_retryable=lambda exc: False, delay=0.0, label=None):
    """
    Runs `operation()` up to `max_attempts` times.

    Only exceptions for which `is_retryable(exc)` is true are retried; anything
    else propagates on the first attempt. The last retryable error propagates
    once attempts are exhausted. Idempotency is the operation's job, not ours.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    name = label or getattr(operation, "__name__", "operation")
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_attempts:
                raise
            logger.warning(
                f"Retrying {name} after attempt {attempt}/{max_attempts} failed: {exc}"
            )
            attempt += 1
            if delay:
                time.sleep(delay)
