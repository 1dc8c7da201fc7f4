"""
voicepipe.utils.callbacks — Invoke user callbacks that may be sync or async.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


async def invoke_callback(callback: Optional[Callable[..., Any]], *args) -> bool:
    """Call `callback(*args)`, awaiting the result if it is awaitable.

    A raising callback is logged and reported as False; it never
    propagates into the pipeline that invoked it.
    """
    if callback is None:
        return True
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
        return True
    except Exception as e:
        logger.error(
            "Callback %s raised: %s", getattr(callback, "__qualname__", repr(callback)), e
        )
        return False
