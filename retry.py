"""
Retry policy for remote mutating calls

Bounded exponential backoff on transport failures only. A received HTTP
response, whatever its status, is never retried here: status handling is
explicit in the sync engine.
"""

import time
import logging
from typing import Callable, Dict, Tuple, Type, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from exceptions import ScimTransportError


logger = logging.getLogger(__name__)
T = TypeVar('T')

DEFAULT_MAX_ATTEMPTS = 10


class RetryPolicy:
    """
    Registry of retriers keyed by operation and resource (e.g. "create-<localId>"),
    so backoff state and statistics never leak between unrelated resources.
    """

    def __init__(self,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 initial_wait: float = 0.5,
                 max_wait: float = 30.0,
                 retry_on: Tuple[Type[BaseException], ...] = (ScimTransportError,),
                 sleep: Callable[[float], None] = time.sleep):
        self.max_attempts = max_attempts
        self.initial_wait = initial_wait
        self.max_wait = max_wait
        self.retry_on = retry_on
        self.sleep = sleep
        self._registry: Dict[str, Retrying] = {}

    def retrier(self, name: str) -> Retrying:
        """Return the retrier registered under name, creating it on first use."""
        if name not in self._registry:
            self._registry[name] = Retrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.initial_wait, max=self.max_wait),
                retry=retry_if_exception_type(self.retry_on),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                sleep=self.sleep,
                reraise=True,
            )
        return self._registry[name]

    def call(self, name: str, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run fn under the retrier for name; the last transport error is re-raised."""
        return self.retrier(name)(fn, *args, **kwargs)

    def attempts(self, name: str) -> int:
        """Attempts made by the most recent call under name (0 if never called)."""
        if name not in self._registry:
            return 0
        return self._registry[name].statistics.get("attempt_number", 0)
