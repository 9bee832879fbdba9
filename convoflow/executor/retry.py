import time
from typing import Callable, Optional, Tuple, TypeVar

import structlog
import tenacity

from convoflow.errors import FatalNodeError, TransientExternalError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    logger.warning(
        "retrying_external_call",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(retry_state.outcome.exception()),
    )


def call_with_retry(
    fn: Callable[[], T],
    max_attempts: int,
    backoff_seconds: float,
    node_id: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[T, int]:
    """
    Call ``fn`` until it stops raising TransientExternalError, waiting
    ``backoff_seconds * 2 ** (n - 1)`` after the n-th failed attempt.

    Returns ``(result, attempts)``. Exhausting the attempts raises
    FatalNodeError carrying the attempt count; any other exception from ``fn``
    propagates on the first occurrence.
    """
    attempts = 0

    def _attempt() -> T:
        nonlocal attempts
        attempts += 1
        return fn()

    retrying = tenacity.Retrying(
        retry=tenacity.retry_if_exception_type(TransientExternalError),
        stop=tenacity.stop_after_attempt(max(1, max_attempts)),
        wait=tenacity.wait_exponential(multiplier=backoff_seconds, min=0),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        result = retrying(_attempt)
    except TransientExternalError as exc:
        logger.warning("retries_exhausted", node_id=node_id, attempts=attempts, error=str(exc))
        raise FatalNodeError(
            f"{exc.message} (gave up after {attempts} attempts)", node_id=node_id, attempts=attempts
        ) from exc
    return result, attempts
