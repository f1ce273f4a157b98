import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)


async def cancel_tasks(tasks: Iterable[asyncio.Task]) -> None:
    task_list: List[asyncio.Task] = [t for t in tasks if t is not None]
    for t in task_list:
        if not t.done():
            t.cancel()
    if task_list:
        await asyncio.gather(*task_list, return_exceptions=True)


async def run_periodic(
    interval_s: float,
    job: Callable[[], Awaitable[None]],
    name: str,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run ``job`` every ``interval_s`` seconds until cancelled or ``stop_event`` is set.

    Failures are logged and the loop continues; periodic maintenance must not
    take the trading loop down with it.
    """
    while stop_event is None or not stop_event.is_set():
        try:
            if stop_event is None:
                await asyncio.sleep(interval_s)
            else:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
                break
        except asyncio.TimeoutError:
            pass
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic job %s failed", name)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        logger.info("Task group cancelled")
    finally:
        await cancel_tasks(task_list)
        if cleanup is not None:
            await cleanup()
