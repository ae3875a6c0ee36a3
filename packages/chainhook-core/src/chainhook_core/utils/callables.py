"""Helpers for invoking caller-supplied callbacks."""

import inspect
from collections.abc import Callable
from typing import Any


async def call_handler(func: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable and return its (awaited) result."""
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
