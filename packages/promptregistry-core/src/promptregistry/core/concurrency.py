from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class TaskOutcome(Generic[T, R]):
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_thread_pool(
    items: Iterable[T],
    fn: Callable[[T], R],
    *,
    workers: int = 4,
    fail_fast: bool = True,
) -> List[TaskOutcome[T, R]]:
    """Run ``fn`` over ``items`` in a thread pool, keeping input order in the result.

    With ``fail_fast`` the first error cancels pending tasks and is re-raised
    unchanged; otherwise every outcome (result or error) is returned.
    """
    items = list(items)
    if not items:
        return []

    outcomes: List[TaskOutcome[T, R]] = [TaskOutcome(item=it) for it in items]

    with ThreadPoolExecutor(max_workers=max(1, min(int(workers), len(items)))) as ex:
        fut_map = {ex.submit(fn, item): idx for idx, item in enumerate(items)}
        for fut in as_completed(fut_map):
            idx = fut_map[fut]
            try:
                outcomes[idx].result = fut.result()
            except Exception as e:
                outcomes[idx].error = e
                if fail_fast:
                    for f in fut_map:
                        if not f.done():
                            f.cancel()
                    raise

    return outcomes
