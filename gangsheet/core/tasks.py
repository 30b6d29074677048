"""
Cooperative chunking helpers.

Long operations are written as generators that yield a ``Continue`` token
after each chunk. A UI can step them from its own event loop (one ``next()``
per idle callback); everything else simply drains them with ``run_task``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generator, Iterator, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class Continue:
    stage: str
    done: int = 0
    total: int = 0


Task = Generator[Continue, None, R]


def run_task(task: Task, on_step: Optional[Callable[[Continue], None]] = None):
    """Drive a cooperative task to completion and return its result."""
    while True:
        try:
            token = next(task)
        except StopIteration as stop:
            return stop.value
        if on_step is not None:
            on_step(token)


def chunked(items: Sequence[T], size: int) -> Iterator[Tuple[int, List[T]]]:
    """Yield ``(start_index, chunk)`` pairs of at most ``size`` items."""
    step = max(1, int(size))
    for i in range(0, len(items), step):
        yield i, list(items[i:i + step])
