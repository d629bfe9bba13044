import os
import asyncio
import functools
import logging
import threading
from typing import Any, Callable, Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)

OPERATION_TIMEOUT_SECONDS = float(os.getenv("OPERATION_TIMEOUT_SECONDS", "30"))


async def run_guarded(func: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
    """Run blocking ``func`` in a worker thread with a deadline.

    ``func`` receives a ``cancel`` event; it is set when the deadline passes
    or the request goes away, and the worker checks it between phases. The
    request does not wait for the worker once the deadline has passed.
    """
    cancel = threading.Event()
    limit = OPERATION_TIMEOUT_SECONDS if timeout is None else timeout
    loop = asyncio.get_running_loop()
    job = loop.run_in_executor(None, functools.partial(func, *args, cancel=cancel, **kwargs))
    try:
        return await asyncio.wait_for(job, timeout=limit)
    except asyncio.TimeoutError:
        cancel.set()
        logger.warning("%s timed out after %.1fs", getattr(func, "__name__", func), limit)
        raise HTTPException(status_code=504, detail="La operación excedió el tiempo límite (timed out)")
    except asyncio.CancelledError:
        cancel.set()
        raise
