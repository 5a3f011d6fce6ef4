"""Executor registry mapping executor codes to business logic."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, TypeVar

from .base import Executor, FunctionExecutor

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class ExecutorNotFoundError(LookupError):
    """Raised when no executor is registered under a code."""

    def __init__(self, code: str) -> None:
        super().__init__(f"executor '{code}' is not registered")
        self.code = code


class ExecutorRegistry:
    """Lookup from executor code to :class:`Executor`."""

    def __init__(self) -> None:
        self._executors: Dict[str, Executor] = {}

    def register(self, code: str, impl: Executor | Callable[..., Any]) -> None:
        """Register ``impl`` under ``code``, replacing any previous entry.

        Objects without an ``execute`` method are wrapped in
        :class:`FunctionExecutor`.
        """
        if not code:
            raise ValueError("executor code must be a non-empty string")
        if not hasattr(impl, "execute"):
            impl = FunctionExecutor(impl)
        if code in self._executors:
            logger.warning(f"Replacing executor registered under '{code}'")
        self._executors[code] = impl

    def get_executor(self, code: str) -> Executor:
        try:
            return self._executors[code]
        except KeyError:
            raise ExecutorNotFoundError(code) from None

    def unregister(self, code: str) -> None:
        self._executors.pop(code, None)

    def codes(self) -> list[str]:
        return sorted(self._executors)

    def __contains__(self, code: object) -> bool:
        return code in self._executors

    def __iter__(self) -> Iterator[str]:
        return iter(self.codes())

    def __len__(self) -> int:
        return len(self._executors)


# Process-wide registry. Executors register themselves at import time through
# ``@executor``; the engine falls back to it when no registry is injected.
REGISTRY = ExecutorRegistry()


def register_executor(code: str, impl: Executor | Callable[..., Any]) -> None:
    """Add ``impl`` to ``REGISTRY`` under ``code``."""
    REGISTRY.register(code, impl)


def executor(code: str) -> Callable[[F], F]:
    """Decorator registering a function in ``REGISTRY`` under ``code``."""

    def decorator(func: F) -> F:
        register_executor(code, func)
        return func

    return decorator


from . import builtin  # noqa: E402,F401  registers the core.* executors

__all__ = [
    "Executor",
    "ExecutorNotFoundError",
    "ExecutorRegistry",
    "FunctionExecutor",
    "REGISTRY",
    "executor",
    "register_executor",
]
