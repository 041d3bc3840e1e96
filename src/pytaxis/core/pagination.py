"""Offset-based page tokens shared by every listing operation.

A page token is the decimal offset of the next page's first item. An empty
token means "first page" on input and "no further pages" on output.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from pytaxis.models import Page

__all__ = ["DEFAULT_PAGE_SIZE", "decode_page_token", "fetch_page"]

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20


def decode_page_token(page_token: str | None) -> int:
    """Offset encoded in ``page_token`` (0 for the first page).

    Raises:
        ValueError: If the token is not a non-negative integer
    """
    if not page_token:
        return 0
    try:
        offset = int(page_token)
    except ValueError:
        raise ValueError(f"Invalid page token: {page_token!r}") from None
    if offset < 0:
        raise ValueError(f"Invalid page token: {page_token!r}")
    return offset


async def fetch_page(
    query: Callable[[int, int], Awaitable[tuple[list[T], int]]],
    page_size: int | None = None,
    page_token: str | None = None,
) -> Page[T]:
    """Run ``query(offset, limit)`` and wrap the result in a Page."""
    limit = page_size if page_size and page_size > 0 else DEFAULT_PAGE_SIZE
    offset = decode_page_token(page_token)
    items, total = await query(offset, limit)
    next_token = str(offset + limit) if offset + limit < total else ""
    return Page(items=items, next_page_token=next_token, total_count=total)
