"""Executors shipped with continuum."""

from __future__ import annotations

from typing import Any, Dict

from . import executor


@executor("core.echo")
async def echo(data: Dict[str, Any]) -> Dict[str, Any]:
    """Return the resolved input unchanged."""
    return dict(data)


@executor("core.noop")
async def noop(data: Dict[str, Any]) -> Dict[str, Any]:
    return {}
