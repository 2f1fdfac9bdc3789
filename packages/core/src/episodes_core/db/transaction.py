"""Bounded-retry transactions for batched writes.

Only transient data-layer failures (dropped connections, deadlocks, serialization
failures, lock timeouts) are retried. Anything else is raised on the first attempt.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, OperationalError)


def _log_retry(logger: structlog.BoundLogger | None) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        if logger is None:
            return
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "transaction.retry",
            attempt=retry_state.attempt_number,
            error=str(exc) if exc else None,
            error_class=type(exc).__name__ if exc else None,
        )

    return before_sleep


def run_in_transaction(
    session: Session,
    work: Callable[[Session], T],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    wait_s: float = 0.1,
    wait_max_s: float = 2.0,
    logger: structlog.BoundLogger | None = None,
) -> T:
    """
    Run `work(session)` and commit, retrying the whole unit on transient failures.

    The session is rolled back before each retry, so `work` must reload anything it
    writes to (e.g. via `session.get`). It must not perform expensive preparation:
    callers build their payload first and only hand the write to this function.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=wait_s, max=wait_max_s),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry(logger),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            try:
                result = work(session)
                session.commit()
            except BaseException:
                session.rollback()
                raise
    return result
