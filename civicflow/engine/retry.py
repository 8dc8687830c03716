"""Retry/Backoff Scheduler - one delayed-retry mechanism for every failure path

Used by:
- Routing (fixed 5 minute interval, department-outage scale)
- Persistence writes and draft submissions (exponential, network-blip scale)
"""
import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple, Type
from pydantic import BaseModel, ConfigDict, Field

from ..domain.enums import AttemptOutcome, DelayStrategy
from ..domain.errors import RetryExhaustedError
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

Operation = Callable[[int], Awaitable[Any]]
AttemptHook = Callable[["AttemptRecord"], Awaitable[None]]
ExhaustedHook = Callable[["RetryOutcome"], Awaitable[None]]


class RetryPolicy(BaseModel):
    """How many times to run an operation and how long to wait in between"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    max_attempts: int = Field(..., ge=1)
    strategy: DelayStrategy
    base_delay: float = Field(..., ge=0, description="Seconds before the second attempt")
    factor: float = Field(default=1.0, ge=1.0)
    attempt_timeout: Optional[float] = Field(default=None, gt=0)
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    @classmethod
    def exponential(
        cls,
        base: float = 1.0,
        factor: float = 2.0,
        max_attempts: int = 3,
        attempt_timeout: Optional[float] = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            strategy=DelayStrategy.EXPONENTIAL,
            base_delay=base,
            factor=factor,
            attempt_timeout=attempt_timeout,
            retry_on=retry_on,
        )

    @classmethod
    def fixed_interval(
        cls,
        delay: float = 300.0,
        max_attempts: int = 3,
        attempt_timeout: Optional[float] = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            strategy=DelayStrategy.FIXED_INTERVAL,
            base_delay=delay,
            attempt_timeout=attempt_timeout,
            retry_on=retry_on,
        )

    def delay_before(self, attempt_number: int) -> float:
        """
        Seconds to wait before attempt `attempt_number` (1-based)

        Exponential with base 1s and factor 2 gives 0, 1, 2, 4 ...
        Fixed interval gives 0, d, d ...
        """
        if attempt_number <= 1:
            return 0.0
        if self.strategy == DelayStrategy.EXPONENTIAL:
            return self.base_delay * (self.factor ** (attempt_number - 2))
        return self.base_delay

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, asyncio.TimeoutError):
            return True
        return isinstance(error, self.retry_on)


class AttemptRecord(BaseModel):
    """Outcome of one execution"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    attempt_number: int
    scheduled_at: datetime
    outcome: AttemptOutcome
    error: Optional[BaseException] = None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__


class RetryOutcome(BaseModel):
    """Eventual outcome of a scheduled operation"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    succeeded: bool
    result: Any = None
    attempts: List[AttemptRecord] = Field(default_factory=list)
    exhausted: bool = False
    last_error: Optional[BaseException] = None

    def unwrap(self) -> Any:
        """Return the result or raise the failure"""
        if self.succeeded:
            return self.result
        if self.exhausted:
            raise RetryExhaustedError(
                f"{self.name} failed after {len(self.attempts)} attempts",
                details={"operation": self.name, "last_error": str(self.last_error)}
            ) from self.last_error
        # Non-retryable failure: surface the original error
        raise self.last_error  # type: ignore[misc]


class RetryScheduler:
    """
    Runs operations under a RetryPolicy

    Guarantees:
    - At most policy.max_attempts executions per scheduled operation
    - Attempts are sequential; each outcome is observed before the next delay
    - Each attempt is bounded by policy.attempt_timeout; a timeout counts as a
      failed attempt
    - Exhaustion is reported exactly once, through the returned outcome and the
      optional on_exhausted hook
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now
    ):
        self._sleep = sleep
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()

    def schedule(
        self,
        operation: Operation,
        policy: RetryPolicy,
        name: str = "operation",
        on_attempt: Optional[AttemptHook] = None,
        on_exhausted: Optional[ExhaustedHook] = None
    ) -> "asyncio.Task[RetryOutcome]":
        """Start the operation in the background and return its eventual outcome"""
        task = asyncio.ensure_future(
            self._execute(operation, policy, name, on_attempt, on_exhausted)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(
        self,
        operation: Operation,
        policy: RetryPolicy,
        name: str = "operation",
        on_attempt: Optional[AttemptHook] = None,
        on_exhausted: Optional[ExhaustedHook] = None
    ) -> RetryOutcome:
        """Schedule and wait for the outcome"""
        return await self.schedule(operation, policy, name, on_attempt, on_exhausted)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled operation to settle"""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _execute(
        self,
        operation: Operation,
        policy: RetryPolicy,
        name: str,
        on_attempt: Optional[AttemptHook],
        on_exhausted: Optional[ExhaustedHook]
    ) -> RetryOutcome:
        attempts: List[AttemptRecord] = []
        last_error: Optional[BaseException] = None

        for attempt_number in range(1, policy.max_attempts + 1):
            delay = policy.delay_before(attempt_number)
            if delay > 0:
                logger.info(
                    f"Retrying {name} in {delay:g}s",
                    extra={"attempt": attempt_number}
                )
                await self._sleep(delay)

            scheduled_at = self._clock()
            try:
                if policy.attempt_timeout is not None:
                    result = await asyncio.wait_for(operation(attempt_number), policy.attempt_timeout)
                else:
                    result = await operation(attempt_number)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                timed_out = isinstance(e, asyncio.TimeoutError)
                record = AttemptRecord(
                    attempt_number=attempt_number,
                    scheduled_at=scheduled_at,
                    outcome=AttemptOutcome.TIMED_OUT if timed_out else AttemptOutcome.FAILED,
                    error=e,
                )
                attempts.append(record)
                logger.warning(
                    f"{name} attempt {attempt_number}/{policy.max_attempts} failed: {record.error_message}",
                    extra={"attempt": attempt_number}
                )
                if on_attempt is not None:
                    await on_attempt(record)
                if not policy.is_retryable(e):
                    return RetryOutcome(
                        name=name, succeeded=False, attempts=attempts, last_error=e
                    )
                continue

            record = AttemptRecord(
                attempt_number=attempt_number,
                scheduled_at=scheduled_at,
                outcome=AttemptOutcome.SUCCEEDED,
            )
            attempts.append(record)
            if on_attempt is not None:
                await on_attempt(record)
            return RetryOutcome(name=name, succeeded=True, result=result, attempts=attempts)

        outcome = RetryOutcome(
            name=name,
            succeeded=False,
            attempts=attempts,
            exhausted=True,
            last_error=last_error,
        )
        logger.error(
            f"{name} exhausted after {len(attempts)} attempts",
            extra={"attempt": len(attempts)}
        )
        if on_exhausted is not None:
            await on_exhausted(outcome)
        return outcome
