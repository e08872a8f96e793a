"""
Isolated fan-out of per-contract work over a thread pool.
"""

import logging
from typing import Callable, Iterable, List, TypeVar

from joblib import Parallel, delayed
from tqdm import tqdm

from farol_analyzer.utils.result import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_isolated(
    func: Callable[[T], Result],
    items: Iterable[T],
    workers: int = 4,
    error_code: str = "UNKNOWN_ERROR",
    desc: str = "Processing",
    show_progress: bool = False,
) -> List[Result]:
    """
    Apply func to every item on a thread pool, one Result per item.

    An exception raised for one item becomes a failed Result for that item
    only; the other items still run.

    Args:
        func: Unit of work, returning a Result
        items: Work items
        workers: Pool size; 1 runs inline
        error_code: Code used for failures built from exceptions
        desc: Progress bar label
        show_progress: Show a tqdm bar

    Returns:
        Results in the order of items
    """
    items = list(items)
    if not items:
        return []

    def guarded(item):
        try:
            return func(item)
        except Exception as e:
            logger.error(f"Unhandled error for {item}: {e}")
            return Result.failure(error_code, str(e), details={"item": str(item)})

    return Parallel(n_jobs=max(1, workers), prefer="threads")(
        delayed(guarded)(item) for item in tqdm(items, desc=desc, disable=not show_progress)
    )
