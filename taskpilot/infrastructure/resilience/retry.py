# bounded backoff for calls to services that may be briefly unavailable
from typing import Awaitable, Callable, Optional, Type, Tuple
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from taskpilot.domain.models.results import Fail, Result

logger = structlog.get_logger(__name__)


class RetryPolicy:
    """
    Retry settings shared by the fast path, the tool executor and model calls.
    Only transient failures are retried: ``Fail(unavailable)`` results, or the given exception types.
    """
    def __init__(self, attempts: int = 3, wait_min: float = 0.2, wait_max: float = 2.0):
        self.attempts = max(1, attempts)
        self.wait_min = wait_min
        self.wait_max = wait_max

    def _retrying(self, **kwargs) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.wait_min, min=self.wait_min, max=self.wait_max),
            **kwargs,
        )

    async def run_result(self, operation: Callable[[], Awaitable[Result]], name: str = "operation") -> Result:
        """
        Call an operation returning ``Ok`` / ``Fail`` until it stops being unavailable.
        Returns the last result when attempts run out.
        """
        retrying = self._retrying(
            retry=retry_if_result(lambda result: isinstance(result, Fail) and result.retryable),
            before_sleep=lambda state: logger.warning(
                "Retrying unavailable service", operation=name, attempt=state.attempt_number
            ),
        )
        result: Optional[Result] = None
        try:
            async for attempt in retrying:
                with attempt:
                    result = await operation()
                # the attempt context records None on success, the retry predicate needs the real result
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(result)
        except RetryError as e:
            # exhausted, surface the last Fail as-is
            return e.last_attempt.result()
        return result

    async def run(
        self,
        operation: Callable[[], Awaitable],
        retry_on: Tuple[Type[BaseException], ...],
        name: str = "operation",
    ):
        """Call an operation, retrying the given exception types, re-raising the last one"""

        retrying = self._retrying(
            retry=retry_if_exception_type(retry_on),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Retrying failed call", operation=name, attempt=state.attempt_number
            ),
        )
        async for attempt in retrying:
            with attempt:
                return await operation()


def policy_from_settings(settings) -> RetryPolicy:
    return RetryPolicy(
        attempts=settings.RETRY_ATTEMPTS,
        wait_min=settings.RETRY_WAIT_MIN,
        wait_max=settings.RETRY_WAIT_MAX,
    )
