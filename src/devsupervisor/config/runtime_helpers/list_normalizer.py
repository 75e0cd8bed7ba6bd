"""Normalization for delimited environment values such as port lists."""

from __future__ import annotations

from typing import Iterable, Sequence


class ListNormalizer:
    """Splits delimited values and removes blanks and repeats."""

    @staticmethod
    def split_and_normalize(raw_value: str, separator: str, strip_items: bool) -> list[str]:
        """
        Split ``raw_value`` on ``separator``.

        An empty separator keeps the value whole. With ``strip_items`` each
        item is stripped and blank items are dropped.
        """
        parts: Iterable[str] = raw_value.split(separator) if separator else [raw_value]
        items: list[str] = []
        for part in parts:
            candidate = part.strip() if strip_items else part
            if strip_items and not candidate:
                continue
            items.append(candidate)
        return items

    @staticmethod
    def deduplicate_preserving_order(items: Sequence[str]) -> tuple[str, ...]:
        """Drop repeated items, keeping the first occurrence."""
        return tuple(dict.fromkeys(items))
