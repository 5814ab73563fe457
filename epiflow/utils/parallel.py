import logging
import multiprocessing as mp
import traceback
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


MAX_WORKERS = max(mp.cpu_count() - 1, 1)
# How often to check the abort signal while waiting for tasks, in seconds.
ABORT_POLL_INTERVAL = 0.1


def run_parallel_tasks(
    func: Callable,
    arg_list: List[tuple],
    max_workers: Optional[int] = None,
    abort: Optional[Any] = None,
) -> List[Any]:
    """
    Runs func once for each set of args in a pool of worker processes.

    Results are returned in the same order as the args, regardless of the order the tasks finish in.
    If the abort signal (any object with an ``is_set`` method, eg. ``multiprocessing.Event``) is set,
    tasks which have not started are cancelled and their results are None. Tasks which are already
    running are allowed to finish.
    """
    if len(arg_list) == 1:
        if abort is not None and abort.is_set():
            return [None]
        return [func(*arg_list[0])]

    results = [None] * len(arg_list)
    failure_exceptions = []
    with ProcessPoolExecutor(max_workers=max_workers or MAX_WORKERS) as executor:
        futures = {executor.submit(func, *args): idx for idx, args in enumerate(arg_list)}
        pending = set(futures.keys())
        is_aborted = False
        while pending:
            done, pending = wait(pending, timeout=ABORT_POLL_INTERVAL, return_when=FIRST_COMPLETED)
            for future in done:
                if future.cancelled():
                    continue

                exception = future.exception()
                if exception:
                    logger.info("Parallel task failed.")
                    failure_exceptions.append(exception)
                    continue

                results[futures[future]] = future.result()
                logger.debug("Parallel task %s completed.", futures[future])

            if abort is not None and abort.is_set() and not is_aborted:
                is_aborted = True
                num_cancelled = sum(future.cancel() for future in pending)
                logger.warning("Abort requested, cancelled %s parallel tasks.", num_cancelled)

    for e in failure_exceptions:
        start = "\n\n===== Exception when running a parallel task =====\n"
        end = "\n================ End of error message ================\n"
        error_message = "".join(traceback.format_exception(e.__class__, e, e.__traceback__))
        logger.error(start + error_message + end)

    if failure_exceptions:
        logger.error("%s / %s parallel tasks failed.", len(failure_exceptions), len(arg_list))
        raise failure_exceptions[0]

    return results
