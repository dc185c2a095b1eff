"""Typed outcome for per-message decode steps that may be skipped."""

from dataclasses import dataclass
from typing import Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Skipped:
    """
    A single record that was not processed. Batch loops keep going.

    Attributes:
        reason: Short human-readable cause
        record_id: Transport record id, when the relay supplied one
    """
    reason: str
    record_id: Optional[str] = None


Outcome = Union[T, Skipped]
