"""
Sequential first-success resolution over an ordered list of model candidates.

Candidates are tried one at a time in the given order (most capable first). The first
call that returns a usable result wins and nothing after it is called. Errors from
intermediate candidates are logged and dropped; only the last one is reported.
Provider calls are billed, so attempts are never made concurrently.
"""

import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from .errors import (
    DeadlineExceeded,
    EmptyOutputError,
    ProviderError,
    ProviderHTTPError,
    ProviderUnavailableError,
    UnparsableResponseError,
    UpstreamFault,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Succeeded(Generic[T]):
    index: int
    candidate: str
    result: T
    attempts: int


@dataclass(frozen=True)
class Exhausted:
    last_error: Optional[ProviderError]
    attempts: int
    last_candidate: Optional[str] = None
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def raise_for_outcome(self, step: str) -> None:
        """Raise ProviderUnavailableError describing why `step` could not be completed."""
        if self.last_candidate is None:
            reason = str(self.last_error) if self.last_error else "no model candidates configured"
            raise ProviderUnavailableError(
                f"{step} failed: {reason}",
                step=step,
                candidate=None,
                attempts=self.attempts,
            ) from self.last_error
        raise ProviderUnavailableError(
            f"{step} failed after trying {self.attempts} model(s); "
            f"last candidate {self.last_candidate}: {self.last_error}",
            step=step,
            candidate=self.last_candidate,
            attempts=self.attempts,
        ) from self.last_error


def continue_on_any_error(error: ProviderError) -> bool:
    return True


def continue_unless_fatal(error: ProviderError) -> bool:
    """
    Policy for steps where the provider is already known to be reachable: an
    upstream fault (bad request, bad auth) or an unrecognizable success payload
    points at our request or parser, and another model will not fix it.
    """
    return not isinstance(error, (UpstreamFault, UnparsableResponseError))


def has_content(result: Any) -> bool:
    if result is None:
        return False
    if isinstance(result, str):
        return bool(result.strip())
    if isinstance(result, (bytes, list, tuple, dict)):
        return bool(result)
    return True


async def first_success(
    candidates: Sequence[str],
    attempt: Callable[[str], Awaitable[T]],
    *,
    is_usable: Callable[[T], bool] = has_content,
    should_continue: Callable[[ProviderError], bool] = continue_on_any_error,
    call_timeout: Optional[float] = None,
    deadline: Optional[float] = None,
) -> "Succeeded[T] | Exhausted":
    """
    Try `attempt(candidate)` for each candidate until one returns a usable result.

    Args:
        candidates: model identifiers in priority order.
        attempt: coroutine function issuing one provider call.
        is_usable: an unusable result is treated as an EmptyOutputError.
        should_continue: decides whether an error moves on to the next candidate;
            when it returns False the error is re-raised immediately.
        call_timeout: per-call timeout in seconds; a timed-out call counts as an error.
        deadline: time.monotonic() value after which no further call is started.

    Returns:
        Succeeded for the first usable result, or Exhausted carrying the last error.
    """
    attempts = 0
    last_error: Optional[ProviderError] = None
    last_candidate: Optional[str] = None
    failures: List[Tuple[str, str]] = []

    for index, candidate in enumerate(candidates):
        timeout = call_timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                last_error = DeadlineExceeded(f"request deadline passed before trying {candidate}")
                logger.warning(f"Deadline reached after {attempts} attempt(s); not trying {candidate}")
                break
            timeout = remaining if timeout is None else min(timeout, remaining)

        attempts += 1
        last_candidate = candidate
        logger.info(f"Attempt {attempts}/{len(candidates)} - model {candidate}")
        try:
            if timeout is None:
                result = await attempt(candidate)
            else:
                result = await asyncio.wait_for(attempt(candidate), timeout=timeout)
        except asyncio.TimeoutError:
            error: ProviderError = ProviderHTTPError(f"{candidate} timed out after {timeout:.1f}s")
        except ProviderError as e:
            error = e
        else:
            if is_usable(result):
                logger.info(f"✅ Model {candidate} succeeded on attempt {attempts}")
                return Succeeded(index=index, candidate=candidate, result=result, attempts=attempts)
            error = EmptyOutputError(f"{candidate} returned an empty result")

        last_error = error
        failures.append((candidate, f"{type(error).__name__}: {error}"))
        if not should_continue(error):
            logger.error(f"Model {candidate} failed with {type(error).__name__}, aborting fallback: {error}")
            raise error
        logger.warning(f"Model {candidate} failed ({type(error).__name__}: {error}); trying next candidate")

    return Exhausted(last_error=last_error, attempts=attempts, last_candidate=last_candidate, failures=failures)
