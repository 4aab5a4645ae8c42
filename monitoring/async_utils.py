import asyncio
from typing import Awaitable, Callable, Dict, Optional, Tuple


async def run_until_first_exit(
    tasks: Dict[str, asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> Tuple[str, asyncio.Task]:
    """Wait for the first task to finish, cancel the rest, then run ``cleanup``.

    Returns the name and task object of the task that finished first. Its
    result or exception is left for the caller to inspect.
    """
    names = {task: name for name, task in tasks.items()}
    try:
        done, _ = await asyncio.wait(names, return_when=asyncio.FIRST_COMPLETED)
        # deterministic pick when several finished in the same iteration
        first = next(task for task in tasks.values() if task in done)
        return names[first], first
    finally:
        for task in names:
            if not task.done():
                task.cancel()
        await asyncio.gather(*names, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
