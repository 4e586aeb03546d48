from __future__ import annotations

from typing import Callable, Optional, TypeVar


T = TypeVar("T")


def poll_until(
    predicate: Callable[[], Optional[T]],
    *,
    attempts: int,
    interval_ms: int,
    sleep: Callable[[int], None],
) -> Optional[T]:
    """
    Call `predicate` up to `attempts` times, sleeping `interval_ms` after every miss.

    Returns the first truthy value produced by `predicate`, or None once the budget is spent.
    `sleep` receives milliseconds; inside a browser flow pass `session.wait` so the browser keeps
    dispatching events while we wait, in tests pass a fake that records the calls.
    """
    for _ in range(max(1, int(attempts))):
        result = predicate()
        if result:
            return result
        sleep(interval_ms)
    return None
