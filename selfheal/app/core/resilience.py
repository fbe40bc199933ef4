"""
Resilience Patterns Module.

Circuit breaker and timeout wrapping for external collaborators. Every failure
that crosses a collaborator boundary surfaces as ExternalServiceError.
"""

import asyncio
import inspect
import time
from typing import Callable, Any, Optional

from selfheal.app.core.errors import ExternalServiceError
from selfheal.app.core.logging import get_logger

logger = get_logger(__name__)


class CircuitBreakerOpenException(Exception):
    """Raised when the circuit is open and calls are blocked."""
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.

    States:
    - CLOSED: Normal operation, calls function.
    - OPEN: Fails fast, raises CircuitBreakerOpenException.
    - HALF-OPEN: Allows one trial call to check if service recovered.
    """

    def __init__(self, name: str = "default", failure_threshold: int = 5, recovery_timeout: int = 30,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF-OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if self._clock() - self.last_failure_time > self.recovery_timeout:
                self.state = "HALF-OPEN"
                logger.info(f"Circuit '{self.name}' changed to HALF-OPEN. Attempting recovery.")
            else:
                raise CircuitBreakerOpenException(
                    f"Circuit '{self.name}' is OPEN. Failures: {self.failure_count}"
                )

        try:
            result = await func(*args, **kwargs)
            if self.state == "HALF-OPEN":
                logger.info(f"Circuit '{self.name}' changed to CLOSED. Recovery successful.")
            self.state = "CLOSED"
            self.failure_count = 0
            return result

        except Exception as e:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            logger.error(
                f"Circuit '{self.name}' failure ({self.failure_count}/{self.failure_threshold}): {e}"
            )

            if self.state == "HALF-OPEN" or self.failure_count >= self.failure_threshold:
                self.state = "OPEN"
                logger.warning(
                    f"Circuit '{self.name}' changed to OPEN. Blocking calls for {self.recovery_timeout}s."
                )

            raise


class ResilientProvider:
    """
    Wraps a collaborator so each method call gets a timeout and a circuit breaker.

    Attribute access is forwarded to the wrapped object. Callables come back
    guarded; plain attributes come back untouched. Any failure, including a
    timeout or an open circuit, is re-raised as ExternalServiceError so the
    orchestrator only ever has one exception type to escalate on.
    """

    def __init__(self, name: str, target: Any, timeout: Optional[float] = None,
                 breaker: Optional[CircuitBreaker] = None):
        self._name = name
        self._target = target
        self._timeout = timeout
        self._breaker = breaker or CircuitBreaker(name=name)

    @property
    def wrapped(self) -> Any:
        return self._target

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def __getattr__(self, attr: str) -> Any:
        value = getattr(self._target, attr)
        if not callable(value):
            return value

        async def guarded(*args, **kwargs):
            return await self._guarded_call(attr, value, *args, **kwargs)

        guarded.__name__ = attr
        return guarded

    async def _invoke(self, func: Callable, *args, **kwargs) -> Any:
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            if self._timeout is None:
                return await result
            return await asyncio.wait_for(result, timeout=self._timeout)
        return result

    async def _guarded_call(self, method: str, func: Callable, *args, **kwargs) -> Any:
        try:
            return await self._breaker.call(self._invoke, func, *args, **kwargs)
        except ExternalServiceError:
            raise
        except CircuitBreakerOpenException as e:
            raise ExternalServiceError(self._name, str(e), e) from e
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(
                self._name, f"{method} timed out after {self._timeout}s", e
            ) from e
        except Exception as e:
            raise ExternalServiceError(self._name, f"{method} failed: {str(e) or type(e).__name__}", e) from e


def guard(name: str, target: Any, timeout: Optional[float] = None,
          failure_threshold: int = 5, recovery_timeout: int = 30) -> Any:
    """Wrap a collaborator unless it is absent or already wrapped."""
    if target is None or isinstance(target, ResilientProvider):
        return target
    breaker = CircuitBreaker(name=name, failure_threshold=failure_threshold, recovery_timeout=recovery_timeout)
    return ResilientProvider(name, target, timeout=timeout, breaker=breaker)
