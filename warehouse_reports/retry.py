from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from azure.core.exceptions import HttpResponseError, ServiceRequestError, ServiceResponseError
from sqlalchemy import exc as sa_exc

from warehouse_reports.errors import TransientError

LOG = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_BACKOFF_S = 20.0

RETRYABLE_STATUS = frozenset({408, 429})


class FaultKind(enum.Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


def classify_fault(exc: BaseException) -> FaultKind:
    """
    Decide whether a failure is worth another attempt.

    Transient: lost or invalidated warehouse connections, pool timeouts,
    network faults, throttling and 5xx from storage. Anything else (bad SQL,
    bad data, invariant violations, 4xx) would fail the same way again.
    """
    if isinstance(exc, (TransientError, TimeoutError, ConnectionError)):
        return FaultKind.TRANSIENT
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError)):
        return FaultKind.TRANSIENT
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return FaultKind.TRANSIENT
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return FaultKind.TRANSIENT
    if isinstance(exc, HttpResponseError):
        status = exc.status_code or 0
        if status in RETRYABLE_STATUS or 500 <= status <= 599:
            return FaultKind.TRANSIENT
    return FaultKind.FATAL


def should_retry(kind: FaultKind, attempt: int, max_attempts: int) -> bool:
    """attempt is 1-based: the number of invocations made so far."""
    return kind is FaultKind.TRANSIENT and attempt < max_attempts


class RetryExecutor:
    """
    Runs a unit of work up to max_attempts times.

    Between attempts the recovery hook runs (the warehouse pool reset) and the
    worker sleeps a fixed backoff. The whole action is redone, not just the
    step that failed. Once attempts are exhausted, or for a fatal fault, the
    original exception propagates.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_s: float = DEFAULT_BACKOFF_S,
        recover: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self._recover = recover
        self._sleep = sleep

    async def run(
        self,
        action: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        label: str = "",
    ) -> T:
        limit = self.max_attempts if max_attempts is None else max_attempts
        if limit < 1:
            raise ValueError("max_attempts must be >= 1")
        attempt = 0
        while True:
            attempt += 1
            try:
                return await action()
            except Exception as e:
                kind = classify_fault(e)
                if not should_retry(kind, attempt, limit):
                    if kind is FaultKind.TRANSIENT:
                        LOG.error("%s failed after %d attempt(s): %s", label or "action", attempt, e)
                    raise
                if self._recover is not None:
                    # Closing pooled driver connections blocks; keep it off the event loop.
                    await asyncio.to_thread(self._recover)
                LOG.info(
                    "%s failed (%s: %s). Retry attempts remaining %d",
                    label or "action",
                    type(e).__name__,
                    e,
                    limit - attempt,
                )
                await self._sleep(self.backoff_s)
