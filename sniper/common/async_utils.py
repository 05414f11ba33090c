from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from .logging import log_event

T = TypeVar("T")


class PollTimeoutError(TimeoutError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class PollStoppedError(RuntimeError):
    pass


class RaceFailedError(RuntimeError):
    def __init__(self, errors: list[BaseException]) -> None:
        summary = "; ".join(f"{type(error).__name__}: {error}" for error in errors) or "no contenders"
        super().__init__(f"All contenders failed: {summary}")
        self.errors = errors


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    reraise: bool = False,
    **fields: Any,
) -> T | None:
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            **fields,
        )
        if reraise:
            raise
        return default


async def wait_with_stop(stop_event: asyncio.Event | None, timeout_seconds: float) -> None:
    if timeout_seconds <= 0:
        return

    if stop_event is None:
        await asyncio.sleep(timeout_seconds)
        return

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        pass


async def poll_until(
    action: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    interval_seconds: float,
    deadline_seconds: float | None = None,
    stop_event: asyncio.Event | None = None,
    on_miss: Callable[[T, int], None] | None = None,
) -> T:
    """Call ``action`` until ``predicate`` accepts its result.

    Sleeps ``interval_seconds`` between misses. Without a deadline or stop
    event this waits forever. Raises ``PollTimeoutError`` once the next sleep
    would cross the deadline and ``PollStoppedError`` when ``stop_event`` is set.
    """
    loop = asyncio.get_running_loop()
    started_at = loop.time()
    attempts = 0

    while True:
        if stop_event is not None and stop_event.is_set():
            raise PollStoppedError(f"Polling stopped after {attempts} attempts")

        attempts += 1
        value = await action()
        if predicate(value):
            return value

        if on_miss is not None:
            on_miss(value, attempts)

        if deadline_seconds is not None:
            elapsed = loop.time() - started_at
            if elapsed + interval_seconds > deadline_seconds:
                raise PollTimeoutError(
                    f"Condition not met within {deadline_seconds}s",
                    attempts=attempts,
                )

        await wait_with_stop(stop_event, interval_seconds)


async def first_success(contenders: Sequence[Callable[[], Awaitable[T]]]) -> T:
    """Run all contenders concurrently and return the first successful result.

    Remaining contenders are cancelled as soon as one succeeds. Raises
    ``RaceFailedError`` carrying every error when none succeeds.
    """
    tasks = [asyncio.ensure_future(contender()) for contender in contenders]
    errors: list[BaseException] = []
    try:
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in tasks:
                if task not in done or task.cancelled():
                    continue
                error = task.exception()
                if error is None:
                    return task.result()
                if error not in errors:
                    errors.append(error)
        raise RaceFailedError(errors)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
