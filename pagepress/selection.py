"""Page range parsing shared by the document tools."""

from __future__ import annotations

from typing import List, Set, Tuple


def parse_ranges(value: str, total_pages: int) -> List[Tuple[int, int]]:
    """Parse a comma-separated list of page ranges such as ``"1-3,5"``."""
    ranges: List[Tuple[int, int]] = []
    for part in value.split(","):
        cleaned = part.strip()
        if not cleaned:
            continue
        if "-" in cleaned:
            start, end = cleaned.split("-", 1)
        else:
            start, end = cleaned, cleaned
        try:
            start_i = max(1, int(start))
            end_i = min(total_pages, int(end))
        except ValueError:
            continue
        if start_i <= end_i:
            ranges.append((start_i, end_i))
    return ranges


def parse_page_list(value: str, total_pages: int) -> List[int]:
    """
    Expand a range string into page numbers in the order given.

    Pages are clamped to ``1..total_pages``; overlapping ranges may produce
    duplicates.
    """
    pages: List[int] = []
    for start, end in parse_ranges(value, total_pages):
        pages.extend(range(start, end + 1))
    return pages


def resolve_page_selection(pages: str | None, total_pages: int) -> Set[int] | None:
    """Return a validated set of target pages, or ``None`` for all pages."""
    if pages is None:
        return None
    value = str(pages).strip()
    if not value:
        return None
    selection = parse_page_list(value, total_pages)
    if not selection:
        raise ValueError("No valid pages selected")
    return set(selection)
