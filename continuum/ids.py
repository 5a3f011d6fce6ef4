"""Identifier generation for workflow instances."""

from __future__ import annotations

import uuid
from typing import Protocol


class IdGenerator(Protocol):
    def new_id(self) -> str:
        """Return a fresh, unique identifier."""


class UUIDGenerator:
    """Generate random UUID4 identifiers."""

    def new_id(self) -> str:
        return str(uuid.uuid4())
