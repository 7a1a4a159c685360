"""Error taxonomy and collaborator protection.

This module implements:
- The exception hierarchy used across the core
- Circuit breakers for the embedding provider
- Exponential backoff with jitter for store writes
- Aggregation of absorbed collaborator failures
"""

import asyncio
import random
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Callable, Any, Dict

from loguru import logger


class DevMindError(Exception):
    """Base class for all core errors."""


class InputError(DevMindError):
    """Malformed or missing input. Never partially applied."""


class CollaboratorError(DevMindError):
    """An external collaborator (embedder, diff provider, store) failed."""


class CircuitOpenError(CollaboratorError):
    """Raised when a circuit breaker is refusing calls."""


class InvariantViolation(DevMindError):
    """Internal bookkeeping went out of bounds."""


class ServiceState(Enum):
    """Service health states."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CIRCUIT_OPEN = "circuit_open"


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass
class ErrorEvent:
    """Represents an absorbed error."""
    timestamp: datetime
    service: str
    error_type: str
    message: str
    severity: ErrorSeverity
    traceback: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls,
                       service: str,
                       error: BaseException,
                       severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                       **context) -> "ErrorEvent":
        return cls(
            timestamp=datetime.now(),
            service=service,
            error_type=type(error).__name__,
            message=str(error),
            severity=severity,
            traceback=''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            context=context,
        )

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'service': self.service,
            'error_type': self.error_type,
            'message': self.message,
            'severity': self.severity.value,
            'context': self.context
        }


@dataclass
class ServiceHealth:
    """Tracks health of a collaborator."""
    name: str
    state: ServiceState = ServiceState.HEALTHY
    error_count: int = 0
    success_count: int = 0
    last_error: Optional[ErrorEvent] = None
    last_success: Optional[datetime] = None
    consecutive_failures: int = 0
    circuit_opened_at: Optional[datetime] = None

    @property
    def error_rate(self) -> float:
        total = self.error_count + self.success_count
        if total == 0:
            return 0.0
        return self.error_count / total

    @property
    def is_available(self) -> bool:
        return self.state not in [ServiceState.CIRCUIT_OPEN, ServiceState.UNHEALTHY]

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'state': self.state.value,
            'error_count': self.error_count,
            'success_count': self.success_count,
            'consecutive_failures': self.consecutive_failures,
            'error_rate': self.error_rate,
        }


class CircuitBreaker:
    """Circuit breaker for collaborator protection."""

    def __init__(self,
                 name: str,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60,
                 expected_exception: type = Exception):
        """
        Initialize circuit breaker.

        Args:
            name: Collaborator name
            failure_threshold: Consecutive failures before opening circuit
            recovery_timeout: Seconds before attempting recovery
            expected_exception: Exception type counted as a failure
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self.health = ServiceHealth(name=name)
        self.recovery_attempts = 0

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Call function with circuit breaker protection.

        Accepts plain functions, coroutine functions and callables that
        return awaitables.

        Raises:
            CircuitOpenError: If the circuit is open
        """
        if self.health.state == ServiceState.CIRCUIT_OPEN:
            if self._should_attempt_recovery():
                logger.info(f"Circuit breaker {self.name}: Attempting recovery")
                self.recovery_attempts += 1
            else:
                raise CircuitOpenError(f"Circuit breaker {self.name} is open")

        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                result = await result

            self._record_success()
            return result

        except self.expected_exception as e:
            self._record_failure(e)

            if self.health.consecutive_failures >= self.failure_threshold:
                self._open_circuit()

            raise

    def _record_success(self):
        self.health.success_count += 1
        self.health.consecutive_failures = 0
        self.health.last_success = datetime.now()

        if self.health.state == ServiceState.CIRCUIT_OPEN:
            logger.info(f"Circuit breaker {self.name}: Circuit closed after recovery")
            self.health.state = ServiceState.HEALTHY
            self.recovery_attempts = 0
        elif self.health.state == ServiceState.DEGRADED:
            if self.health.error_rate < 0.1:
                self.health.state = ServiceState.HEALTHY

    def _record_failure(self, error: Exception):
        self.health.error_count += 1
        self.health.consecutive_failures += 1

        self.health.last_error = ErrorEvent.from_exception(
            self.name,
            error,
            severity=ErrorSeverity.HIGH if self.health.consecutive_failures > 3 else ErrorSeverity.MEDIUM,
        )

        if self.health.state == ServiceState.CIRCUIT_OPEN:
            # Failed recovery probe, restart the backoff window
            self.health.circuit_opened_at = datetime.now()
        elif self.health.error_rate > 0.5:
            self.health.state = ServiceState.UNHEALTHY
        elif self.health.error_rate > 0.2:
            self.health.state = ServiceState.DEGRADED

    def _open_circuit(self):
        if self.health.state != ServiceState.CIRCUIT_OPEN:
            logger.warning(
                f"Circuit breaker {self.name}: Opening circuit after "
                f"{self.health.consecutive_failures} failures"
            )
        self.health.state = ServiceState.CIRCUIT_OPEN
        self.health.circuit_opened_at = datetime.now()

    def _should_attempt_recovery(self) -> bool:
        if not self.health.circuit_opened_at:
            return True

        elapsed = (datetime.now() - self.health.circuit_opened_at).total_seconds()

        # Exponential backoff between recovery attempts
        backoff = self.recovery_timeout * (2 ** min(self.recovery_attempts, 5))

        return elapsed >= backoff

    def reset(self):
        """Reset circuit breaker."""
        self.health = ServiceHealth(name=self.name)
        self.recovery_attempts = 0


class RetryPolicy:
    """Retry policy with exponential backoff."""

    def __init__(self,
                 max_retries: int = 3,
                 base_delay: float = 0.05,
                 max_delay: float = 2.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for attempt.

        Args:
            attempt: Attempt number (0-based)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay = delay * (0.5 + random.random())

        return delay

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute function with retry policy.

        Raises:
            Exception: The last failure once all retries are spent
        """
        last_exception = None

        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)
                if asyncio.iscoroutine(result):
                    result = await result
                return result

            except Exception as e:
                last_exception = e

                if attempt < self.max_retries:
                    delay = self.calculate_delay(attempt)
                    logger.debug(f"Retry {attempt + 1}/{self.max_retries} after {delay:.2f}s: {e}")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"All retries failed: {e}")

        raise last_exception


class ErrorAggregator:
    """Keeps a bounded window of absorbed collaborator failures."""

    def __init__(self, window_size: int = 100):
        self.window_size = window_size
        self.errors: deque = deque(maxlen=window_size)
        self.error_counts: Dict[str, int] = {}
        self.service_health: Dict[str, ServiceHealth] = {}

    def record_error(self, error_event: ErrorEvent):
        """Record an error event."""
        self.errors.append(error_event)

        key = f"{error_event.service}:{error_event.error_type}"
        self.error_counts[key] = self.error_counts.get(key, 0) + 1

        if error_event.service not in self.service_health:
            self.service_health[error_event.service] = ServiceHealth(name=error_event.service)

        health = self.service_health[error_event.service]
        health.error_count += 1
        health.last_error = error_event
        health.consecutive_failures += 1

        if error_event.severity == ErrorSeverity.CRITICAL:
            health.state = ServiceState.UNHEALTHY
        elif health.consecutive_failures > 3:
            health.state = ServiceState.DEGRADED

    def record_success(self, service: str):
        """Record a successful operation."""
        if service in self.service_health:
            health = self.service_health[service]
            health.success_count += 1
            health.consecutive_failures = 0
            health.last_success = datetime.now()

            if health.error_rate < 0.1:
                health.state = ServiceState.HEALTHY

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary."""
        return {
            'total_errors': len(self.errors),
            'error_counts': dict(self.error_counts),
            'services': {
                name: health.to_dict()
                for name, health in self.service_health.items()
            },
            'recent': [e.to_dict() for e in list(self.errors)[-10:]],
        }
