"""Terminal outcome of a diff review."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Accepted:
    """The proposal was approved; ``content`` is what the reviewer kept."""

    content: str

    @property
    def type(self) -> str:
        return "accepted"


@dataclass(frozen=True)
class Rejected:
    """The proposal was turned down or withdrawn."""

    @property
    def type(self) -> str:
        return "rejected"


Outcome = Union[Accepted, Rejected]
