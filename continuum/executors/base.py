"""Executor protocol and the callable adapter."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Dict, Protocol


class Executor(Protocol):
    """Business logic run by an activity, selected by its executor code."""

    async def execute(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Turn a resolved input map into an output map."""


class FunctionExecutor:
    """Adapt a plain callable to :class:`Executor`.

    Coroutine functions are awaited; regular functions run in a worker
    thread. A result that is not a mapping is returned as ``{"result": value}``.
    """

    def __init__(self, func: Callable[[Dict[str, Any]], Any]) -> None:
        self._func = func
        self.__name__ = getattr(func, "__name__", type(func).__name__)

    async def execute(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if inspect.iscoroutinefunction(self._func):
            result = await self._func(data)
        else:
            result = await asyncio.to_thread(self._func, data)
        if result is None:
            return {}
        if isinstance(result, dict):
            return result
        return {"result": result}

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"FunctionExecutor({self.__name__})"
