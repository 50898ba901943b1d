"""Persisted per-book balloon index.

File format (one JSON object per book)::

    {"bookId": "...", "updatedAt": "...",
     "pages": [{"pageNumber": 3, "pageWidth": 1200, "pageHeight": 1800,
                "balloons": [{"index": 0,
                              "rect": {"left": .., "top": .., "right": .., "bottom": ..},
                              "normalizedRect": {...}, "confidence": 0.91}]}]}

A missing or unparsable file is a cache miss, never an error.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .types import Balloon, PageBalloons, Rect
from .utils import load_json, sanitize_identifier, utc_now_iso, write_json_atomic
from .workspace import WorkspacePaths

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalloonIndex:
    book_id: str
    pages: dict[int, PageBalloons] = field(default_factory=dict)

    def get(self, page_number: int) -> PageBalloons | None:
        return self.pages.get(page_number)

    def __contains__(self, page_number: object) -> bool:
        return page_number in self.pages

    def __len__(self) -> int:
        return len(self.pages)

    def page_numbers(self) -> list[int]:
        return sorted(self.pages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bookId": self.book_id,
            "updatedAt": utc_now_iso(),
            "pages": [_page_to_dict(self.pages[n]) for n in self.page_numbers()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, book_id: str | None = None) -> "BalloonIndex":
        pages: dict[int, PageBalloons] = {}
        for raw in data.get("pages") or []:
            page = _page_from_dict(raw)
            pages[page.page_index] = page
        return cls(book_id=book_id or str(data.get("bookId") or ""), pages=pages)


def _page_to_dict(page: PageBalloons) -> dict[str, Any]:
    return {
        "pageNumber": page.page_index,
        "pageWidth": page.page_width,
        "pageHeight": page.page_height,
        "balloons": [
            {
                "index": b.index,
                "rect": b.rect.to_dict(),
                "normalizedRect": b.normalized_rect.to_dict(),
                "confidence": b.confidence,
            }
            for b in page.balloons
        ],
    }


def _page_from_dict(raw: dict[str, Any]) -> PageBalloons:
    width = int(raw["pageWidth"])
    height = int(raw["pageHeight"])
    balloons = []
    for b in raw.get("balloons") or []:
        normalized = Rect.from_dict(b["normalizedRect"])
        balloons.append(
            Balloon(
                index=int(b["index"]),
                # Pixel rect always follows the normalized one.
                rect=normalized.scaled(width, height),
                normalized_rect=normalized,
                confidence=float(b["confidence"]),
            )
        )
    balloons.sort(key=lambda b: b.index)
    return PageBalloons(page_index=int(raw["pageNumber"]), balloons=tuple(balloons), page_width=width, page_height=height)


def merge_page(index: BalloonIndex, page: PageBalloons) -> BalloonIndex:
    """New index with ``page`` replacing any previous entry for its page number."""
    pages = dict(index.pages)
    pages[page.page_index] = page
    return BalloonIndex(book_id=index.book_id, pages=pages)


def validate_index(index: BalloonIndex) -> list[str]:
    """Invariant violations of an index, as human readable strings."""
    problems: list[str] = []
    for number in index.page_numbers():
        page = index.pages[number]
        if page.page_index != number:
            problems.append(f"page {number}: keyed under a different page number ({page.page_index})")
        for i, b in enumerate(page.balloons):
            if b.index != i:
                problems.append(f"page {number}: balloon {i} has index {b.index}")
            r = b.normalized_rect
            if not all(0.0 <= v <= 1.0 for v in (r.left, r.top, r.right, r.bottom)):
                problems.append(f"page {number}: balloon {i} normalized rect outside [0,1]")
            if r.right < r.left or r.bottom < r.top:
                problems.append(f"page {number}: balloon {i} has an inverted rect")
    return problems


def count_page_records(path: str | Path) -> dict[int, int]:
    """Raw per-page record counts in a stored file (duplicates show as > 1)."""
    data = load_json(path)
    counts: dict[int, int] = {}
    for raw in data.get("pages") or []:
        n = int(raw["pageNumber"])
        counts[n] = counts.get(n, 0) + 1
    return counts


class BalloonIndexStore:
    def __init__(self, paths: WorkspacePaths):
        self.paths = paths

    def path_for(self, book_id: str) -> Path:
        return self.paths.index_dir / f"{sanitize_identifier(book_id)}.json"

    def load(self, book_id: str) -> BalloonIndex | None:
        path = self.path_for(book_id)
        if not path.exists():
            return None
        try:
            data = load_json(path)
            return BalloonIndex.from_dict(data, book_id=book_id)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("ignoring unreadable index %s: %s", path, e)
            return None

    def save(self, book_id: str, index: BalloonIndex) -> Path:
        """Atomically write the index. Raises OSError on failure."""
        path = self.path_for(book_id)
        write_json_atomic(path, index.to_dict())
        logger.debug("saved index %s (%d pages)", path, len(index))
        return path

    def clear(self, book_id: str) -> bool:
        path = self.path_for(book_id)
        if not path.exists():
            return False
        path.unlink()
        return True
