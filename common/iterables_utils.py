"""
common/iterables_utils.py
=========================

Helpers for working with in-memory iterables.

Exported symbols
────────────────
• chunked(iterable, size) → Iterator[list[T]]
"""

from __future__ import annotations

import itertools
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

T = TypeVar("T")


def chunked[T](iterable: Iterable[T], size: int) -> Iterator[list[T]]:
    """
    Lazily split `iterable` into lists of at most `size` items.

    >>> list(chunked("abcde", 2))
    [['a', 'b'], ['c', 'd'], ['e']]
    """
    if size <= 0:
        msg = "size must be a positive integer"
        raise ValueError(msg)
    it = iter(iterable)
    while chunk := list(itertools.islice(it, size)):
        yield chunk
